# tests/test_http_client.py
import pytest
from aioresponses import aioresponses, CallbackResult

from infra.http_client import HttpClient, HttpError, _build_query
from market.errors import AuthenticationError

BASE = "https://api.projectdiablo2.com"


def test_build_query_indices_style():
    q = _build_query({
        "$resolve": {"offers": {"user": True}},
        "$sort": {"bumped_at": -1},
        "ids": ["a", "b"],
        "q": "2 ist",
    })
    assert q == "?$resolve[offers][user]=true&$sort[bumped_at]=-1&ids[0]=a&ids[1]=b&q=2%20ist"
    assert _build_query({}) == ""
    assert _build_query(None) == ""


@pytest.mark.asyncio
async def test_get_sends_bearer_and_parses_json(http_client: HttpClient):
    def _assert_request(url, **kwargs):
        assert kwargs["headers"]["Authorization"] == "Bearer test-token"
        assert kwargs["headers"]["Accept"] == "application/json"
        return CallbackResult(status=200, payload={"data": [1]})

    with aioresponses() as m:
        m.get(f"{BASE}/market/listing", callback=_assert_request)
        assert await http_client.get("/market/listing") == {"data": [1]}


@pytest.mark.asyncio
async def test_empty_body_returns_none(http_client: HttpClient):
    with aioresponses() as m:
        m.delete(f"{BASE}/market/listing/L1", status=204, body="")
        assert await http_client.delete("/market/listing/L1") is None


@pytest.mark.asyncio
async def test_server_errors_are_retried(http_client: HttpClient):
    with aioresponses() as m:
        m.get(f"{BASE}/market/offer", status=503, body="busy")
        m.get(f"{BASE}/market/offer", status=200, payload={"data": []})
        assert await http_client.get("/market/offer") == {"data": []}


@pytest.mark.asyncio
async def test_client_errors_raise_http_error(http_client: HttpClient):
    with aioresponses() as m:
        m.patch(f"{BASE}/market/offer/of1", status=404, body='{"message":"Not Found"}')
        with pytest.raises(HttpError) as ei:
            await http_client.patch("/market/offer/of1", {"rejected": True})
    assert ei.value.status == 404


@pytest.mark.asyncio
async def test_401_raises_and_calls_back_once_per_window(test_cfg):
    calls = []
    async with HttpClient(test_cfg, token="stale", on_auth_error=lambda: calls.append(1)) as client:
        with aioresponses() as m:
            m.get(f"{BASE}/market/listing", status=401, body='{"message":"jwt expired"}', repeat=True)
            with pytest.raises(AuthenticationError) as ei:
                await client.get("/market/listing")
            with pytest.raises(AuthenticationError):
                await client.get("/market/listing")

    assert "jwt expired" in str(ei.value)
    assert ei.value.status == 401
    assert calls == [1]


@pytest.mark.asyncio
async def test_missing_token_fails_before_sending(test_cfg):
    test_cfg["pd2"]["token"] = ""
    async with HttpClient(test_cfg) as client:
        with pytest.raises(AuthenticationError):
            await client.get("/market/listing")
        client.set_token("fresh")
        with aioresponses() as m:
            m.get(f"{BASE}/market/listing", payload={"data": []})
            assert await client.get("/market/listing") == {"data": []}
