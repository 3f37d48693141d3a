"""
Shared fixtures for the order sync engine tests.

Log and state directories point at a throwaway temp dir before config is
imported, so no test writes into the working tree.
"""

import os
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

_TMP_ROOT = tempfile.mkdtemp(prefix="order_sync_tests_")
os.environ.setdefault("ORDER_SYNC_LOG_DIR", os.path.join(_TMP_ROOT, "logs"))
os.environ.setdefault("ORDER_SYNC_STATE_DIR", os.path.join(_TMP_ROOT, "state"))
os.environ.setdefault("ORDER_SYNC_PERSIST", "0")

import pytest  # noqa: E402

import config  # noqa: E402
from core.models import Order, OrderStatus, Partner  # noqa: E402
from core.store import OrderStateStore  # noqa: E402
from services.backend import InMemoryBackend  # noqa: E402

CREDENTIALS = "secret-token"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture(autouse=True)
def fast_retries():
    """Keep backoff sleeps in the millisecond range."""
    config.set_config_override("RETRY_BASE_DELAY_S", 0.001)
    config.set_config_override("RETRY_MAX_DELAY_S", 0.005)
    yield
    config.clear_config_overrides()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return OrderStateStore(clock=clock)


@pytest.fixture
def backend():
    backend = InMemoryBackend(credentials={CREDENTIALS})
    for pid in ("P1", "P2", "P3"):
        backend.register_partner(pid, name=f"Partner {pid}")
    return backend


@pytest.fixture
def make_order():
    """Factory for Order records with sensible defaults."""
    def _make(order_id="O1", status=OrderStatus.PREP, partner=None, **fields):
        fields.setdefault("order_code", f"ORD-{order_id}")
        fields.setdefault("created_at", 1_000.0)
        return Order(id=order_id, status=status, assigned_partner=partner, **fields)
    return _make


@pytest.fixture
def make_partner():
    def _make(partner_id="P1", **fields):
        return Partner(id=partner_id, **fields)
    return _make


@pytest.fixture
def credentials():
    return CREDENTIALS
