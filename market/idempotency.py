# market/idempotency.py
import time, uuid

def now_ms() -> int:
    """Wall-clock milliseconds (for ids and created_at stamps)."""
    return int(time.time() * 1000)

def make_intent_id(prefix: str = "") -> str:
    """Opaque id for a queued intent: <ms>-<random>."""
    base = f"{now_ms()}-{uuid.uuid4().hex[:9]}"
    return f"{prefix}-{base}" if prefix else base
