# tests/conftest.py
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import yaml
import pytest
import pytest_asyncio
from infra.http_client import HttpClient
from market.services.endpoints import make_endpoints_from_cfg

BASE = "https://api.projectdiablo2.com"


@pytest.fixture
def test_cfg():
    with open(Path(__file__).resolve().parents[1] / "config.yaml", "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    # no real credentials or slow backoff in tests
    cfg["pd2"]["token"] = "test-token"
    cfg["pd2"]["account"] = "MyAccount"
    cfg["retries"]["backoff_ms"] = 1
    return cfg


@pytest.fixture
def endpoints(test_cfg):
    return make_endpoints_from_cfg(test_cfg)


@pytest_asyncio.fixture
async def http_client(test_cfg):
    """HttpClient as an async context manager; the session is closed after each test."""
    async with HttpClient(test_cfg, token="test-token") as client:
        yield client
