"""
Pytest configuration file for Order Packer tests.

Puts the 'src' directory on sys.path so tests import modules the same way
the application does (`from payload_codec import ...`), and provides shared
fixtures for the ledger, engine and a controllable clock.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Get the repository root directory (parent of tests directory)
repo_root = Path(__file__).parent.parent

src_dir = repo_root / 'src'
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

from history_ledger import HistoryLedger  # noqa: E402
from kv_store import MemoryStore  # noqa: E402
from models import InvoiceLine, InvoiceManifest, PackedItem, PackedOrder  # noqa: E402
from payload_codec import encode_invoice  # noqa: E402
from reconciliation_engine import OperatorSession, ReconciliationEngine  # noqa: E402


class FakeClock:
    """Clock that advances one second per call, starting at a fixed instant."""

    def __init__(self, start=datetime(2025, 11, 5, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


def invoice_payload(order_id: str, *lines) -> str:
    """
    Build a PKG1: payload.

    Args:
        order_id: Order identifier
        lines: (sku, quantity) tuples
    """
    manifest = InvoiceManifest(
        order_id=order_id,
        lines=tuple(InvoiceLine(sku, qty) for sku, qty in lines),
    )
    return encode_invoice(manifest)


def packed_order(order_id: str, packed_at: datetime, items, operator_email="packer@example.com") -> PackedOrder:
    return PackedOrder(
        order_id=order_id,
        packed_at=packed_at,
        items=tuple(PackedItem(sku, qty) for sku, qty in items),
        operator_email=operator_email,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store):
    return HistoryLedger(store)


@pytest.fixture
def session():
    return OperatorSession(uid="uid-42", email="packer@example.com")


@pytest.fixture
def engine(ledger, session, clock):
    return ReconciliationEngine(ledger, session=session, clock=clock)
