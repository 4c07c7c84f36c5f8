"""
Tests for ReconciliationEngine: the scan state machine.

Covers the packing scenarios end to end (load, progress, completion,
re-scan protection), every rejection reason, signal emission, session
handling and the best-effort sync hand-off.
"""

import base64
import itertools
import random
import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from exceptions import LedgerError, NetworkError
from history_ledger import HistoryLedger
from kv_store import JsonFileStore, MemoryStore
from payload_codec import encode_item
from models import ItemIdentifier
from reconciliation_engine import (
    PENDING_SYNC_MESSAGE,
    EngineState,
    ItemProgressed,
    OperatorSession,
    OrderCompleted,
    OrderLoaded,
    ReconciliationEngine,
    RejectionReason,
    ScanRejected,
)
from sync_bridge import RemoteStore, SyncBridge

from conftest import FakeClock, invoice_payload, packed_order


def rejection(events):
    assert len(events) == 1 and isinstance(events[0], ScanRejected), events
    return events[0]


def raw_payload(prefix: str, body: bytes) -> str:
    return prefix + base64.urlsafe_b64encode(body).decode("ascii").rstrip("=")


# ============================================================================
# Packing scenarios
# ============================================================================

class TestPackingFlow:

    def test_load_progress_and_complete(self, engine, ledger):
        events = engine.scan(invoice_payload("A1", ("X", 2)))
        assert events == [OrderLoaded("A1")]
        assert engine.state == EngineState.ACTIVE_ORDER

        events = engine.scan("X")
        assert events == [ItemProgressed("X", 1, 2)]
        assert engine.current_progress().scanned_counts == {"X": 1}
        assert ledger.snapshot() == []

        events = engine.scan("X")
        assert events[0] == ItemProgressed("X", 2, 2)
        assert isinstance(events[1], OrderCompleted)
        packed = events[1].order
        assert packed.order_id == "A1"
        assert [(i.sku, i.quantity) for i in packed.items] == [("X", 2)]
        assert packed.operator_email == "packer@example.com"

        assert engine.state == EngineState.COMPLETED_ORDER
        assert engine.current_progress().completed_at == packed.packed_at
        assert ledger.snapshot() == [packed]
        assert "A1" in ledger.blocked_ids()

    def test_rescanning_packed_invoice_is_rejected(self, engine):
        payload = invoice_payload("A1", ("X", 1))
        engine.scan(payload)
        engine.scan("X")

        rejected = rejection(engine.scan(payload))

        assert rejected.reason == RejectionReason.ALREADY_PACKED
        assert rejected.message == "Order A1 already packed."
        assert engine.state == EngineState.COMPLETED_ORDER

    def test_sku_not_in_order_leaves_counts_unchanged(self, engine):
        engine.scan(invoice_payload("A1", ("X", 2)))
        engine.scan("X")

        rejected = rejection(engine.scan("Y"))

        assert rejected.reason == RejectionReason.SKU_NOT_IN_ORDER
        assert rejected.sku == "Y"
        assert rejected.message == "SKU Y not in order."
        assert engine.current_progress().scanned_counts == {"X": 1}

    def test_item_scan_without_order(self, engine):
        rejected = rejection(engine.scan("X"))
        assert rejected.reason == RejectionReason.NO_ACTIVE_ORDER
        assert rejected.message == "Scan invoice first."

    def test_truncated_invoice_is_invalid(self, engine):
        payload = invoice_payload("A1", ("X", 2))

        rejected = rejection(engine.scan(payload[:-6]))

        assert rejected.reason == RejectionReason.INVALID_INVOICE
        assert engine.state == EngineState.NO_ACTIVE_ORDER
        assert engine.current_progress() is None

    @pytest.mark.parametrize("body", [
        "{\"o\":\"A1\",\"i\":[[\"X\",\"\u00b2\"]]}".encode("utf-8"),
        b"[" * 3000,
    ], ids=["superscript-quantity", "deep-nesting"])
    def test_unreadable_invoice_body_is_invalid(self, engine, body):
        rejected = rejection(engine.scan(raw_payload("PKG1:", body)))

        assert rejected.reason == RejectionReason.INVALID_INVOICE
        assert engine.state == EngineState.NO_ACTIVE_ORDER

    def test_broken_invoice_is_never_retried_as_item(self, engine):
        engine.scan(invoice_payload("A1", ("PKG1:garbage", 1)))

        rejected = rejection(engine.scan("PKG1:garbage"))

        assert rejected.reason == RejectionReason.INVALID_INVOICE
        assert engine.current_progress().scanned_counts == {}

    def test_item_scan_after_completion_needs_new_invoice(self, engine):
        engine.scan(invoice_payload("A1", ("X", 1)))
        engine.scan("X")

        assert rejection(engine.scan("X")).reason == RejectionReason.NO_ACTIVE_ORDER

    def test_new_invoice_replaces_completed_order(self, engine):
        engine.scan(invoice_payload("A1", ("X", 1)))
        engine.scan("X")

        assert engine.scan(invoice_payload("A2", ("Y", 1))) == [OrderLoaded("A2")]
        progress = engine.current_progress()
        assert progress.order_id == "A2"
        assert progress.scanned_counts == {}
        assert progress.completed_at is None

    def test_new_invoice_cannot_interrupt_incomplete_order(self, engine):
        engine.scan(invoice_payload("A1", ("X", 2)))
        engine.scan("X")

        rejected = rejection(engine.scan(invoice_payload("A2", ("Y", 1))))

        assert rejected.reason == RejectionReason.ORDER_IN_PROGRESS
        assert rejected.message == "Finish current order first."
        assert engine.current_progress().order_id == "A1"
        assert engine.current_progress().scanned_counts == {"X": 1}

    def test_same_invoice_while_in_progress(self, engine):
        payload = invoice_payload("A1", ("X", 2))
        engine.scan(payload)
        engine.scan("X")

        assert rejection(engine.scan(payload)).reason == RejectionReason.ORDER_IN_PROGRESS
        assert engine.current_progress().scanned_counts == {"X": 1}

    def test_blocked_check_comes_before_in_progress_check(self, engine):
        engine.scan(invoice_payload("A1", ("X", 1)))
        engine.scan("X")
        engine.scan(invoice_payload("A2", ("Y", 2)))
        engine.scan("Y")

        assert rejection(engine.scan(invoice_payload("A1", ("X", 1)))).reason == RejectionReason.ALREADY_PACKED


# ============================================================================
# Item matching rules
# ============================================================================

class TestItemRules:

    def test_sku_match_is_case_insensitive(self, engine):
        engine.scan(invoice_payload("A1", ("Sku-Ab", 2)))

        events = engine.scan("sKU-aB")

        assert events == [ItemProgressed("Sku-Ab", 1, 2)]
        assert engine.current_progress().scanned_counts == {"Sku-Ab": 1}

    def test_structured_packet_scan(self, engine):
        engine.scan(invoice_payload("A1", ("X-1", 1)))

        events = engine.scan(encode_item(ItemIdentifier("X-1")))

        assert isinstance(events[-1], OrderCompleted)

    def test_malformed_packet_is_unsupported(self, engine):
        engine.scan(invoice_payload("A1", ("X", 1)))

        rejected = rejection(engine.scan("PKT1:@@@"))

        assert rejected.reason == RejectionReason.UNSUPPORTED_CODE
        assert rejected.message == "Unsupported code."

    def test_deeply_nested_packet_is_unsupported(self, engine):
        engine.scan(invoice_payload("A1", ("X", 1)))

        rejected = rejection(engine.scan(raw_payload("PKT1:", b"{\"s\":" + b"[" * 3000)))

        assert rejected.reason == RejectionReason.UNSUPPORTED_CODE
        assert engine.state == EngineState.ACTIVE_ORDER

    def test_overscan_is_inert(self, engine):
        engine.scan(invoice_payload("A1", ("X", 1), ("Y", 1)))
        engine.scan("X")

        rejected = rejection(engine.scan("x"))

        assert rejected.reason == RejectionReason.LINE_ALREADY_COMPLETE
        assert rejected.sku == "X"
        assert rejected.message == "SKU X already complete."
        assert engine.current_progress().scanned_counts == {"X": 1}
        assert engine.state == EngineState.ACTIVE_ORDER

    def test_duplicate_manifest_lines_are_merged(self, engine):
        engine.scan(invoice_payload("A1", ("X", 1), ("x", 1)))

        assert engine.current_progress().manifest.lines[0].required_quantity == 2
        assert engine.scan("X") == [ItemProgressed("X", 1, 2)]
        events = engine.scan("X")
        assert [(i.sku, i.quantity) for i in events[-1].order.items] == [("X", 2)]

    def test_oversized_scans_are_rejected_undecoded(self, ledger, session, clock):
        engine = ReconciliationEngine(ledger, session=session, clock=clock, max_scan_length=40)

        long_invoice = invoice_payload("A1", ("X" * 50, 1))
        assert rejection(engine.scan(long_invoice)).reason == RejectionReason.INVALID_INVOICE

        engine.scan(invoice_payload("A1", ("X", 1)))
        assert rejection(engine.scan("Z" * 41)).reason == RejectionReason.UNSUPPORTED_CODE

    def test_blank_scan_is_ignored(self, engine):
        listener = MagicMock()
        engine.event_emitted.connect(listener)

        assert engine.scan("   \n") == []
        listener.assert_not_called()


# ============================================================================
# Properties over many scan sequences
# ============================================================================

class TestScanProperties:

    def test_counts_never_exceed_target_and_complete_exactly_once(self, ledger, session):
        rng = random.Random(1234)
        lines = [("A", 3), ("B", 1), ("C", 2)]

        for round_number in range(25):
            engine = ReconciliationEngine(ledger, session=session, clock=FakeClock())
            engine.scan(invoice_payload(f"R{round_number}", *lines))

            # Every unit exactly once plus noise, shuffled
            scans = [sku for sku, qty in lines for _ in range(qty)] + ["A", "C", "NOPE"]
            rng.shuffle(scans)

            completions = 0
            for raw in scans:
                events = engine.scan(raw)
                completions += sum(isinstance(e, OrderCompleted) for e in events)
                progress = engine.current_progress()
                for sku, qty in lines:
                    assert progress.scanned(sku) <= qty

            assert completions == 1
            assert engine.state == EngineState.COMPLETED_ORDER

    def test_completion_happens_on_last_required_unit(self, session):
        lines = [("A", 2), ("B", 1)]
        units = ["A", "A", "B"]

        for ordering in set(itertools.permutations(units)):
            engine = ReconciliationEngine(HistoryLedger(MemoryStore()), session=session, clock=FakeClock())
            engine.scan(invoice_payload("P1", *lines))
            results = [engine.scan(sku) for sku in ordering]

            assert not any(isinstance(e, OrderCompleted) for events in results[:-1] for e in events)
            assert isinstance(results[-1][-1], OrderCompleted)

    def test_rejections_do_not_touch_ledger(self, engine, ledger, store):
        engine.scan(invoice_payload("A1", ("X", 2)))
        before = (store.get("packed_orders_history"), store.get("blocked_orders"))

        for raw in ["Y", "PKG1:bad", "PKT1:bad", invoice_payload("A2", ("Z", 1))]:
            engine.scan(raw)

        assert (store.get("packed_orders_history"), store.get("blocked_orders")) == before


# ============================================================================
# Durability across restarts
# ============================================================================

def test_blocked_order_survives_restart(tmp_path, session):
    path = tmp_path / "ledger.json"
    first = ReconciliationEngine(HistoryLedger(JsonFileStore(path)), session=session, clock=FakeClock())
    first.scan(invoice_payload("A1", ("X", 1)))
    first.scan("X")

    restarted = ReconciliationEngine(HistoryLedger(JsonFileStore(path)), session=session, clock=FakeClock())

    assert rejection(restarted.scan(invoice_payload("A1", ("X", 1)))).reason == RejectionReason.ALREADY_PACKED


def test_imported_blocked_ids_gate_invoices(engine, ledger):
    ledger.import_orders([packed_order("OLD-1", datetime(2025, 1, 1, tzinfo=timezone.utc), [("X", 1)])])

    assert rejection(engine.scan(invoice_payload("OLD-1", ("X", 1)))).reason == RejectionReason.ALREADY_PACKED


def test_ledger_failure_propagates(session, clock):
    ledger = MagicMock(spec=HistoryLedger)
    ledger.blocked_ids.return_value = set()
    ledger.append.side_effect = LedgerError("disk full")
    engine = ReconciliationEngine(ledger, session=session, clock=clock)
    engine.scan(invoice_payload("A1", ("X", 1)))

    with pytest.raises(LedgerError):
        engine.scan("X")
    assert engine.state == EngineState.ACTIVE_ORDER
    assert engine.current_progress().scanned_counts == {}


def test_rescan_completes_order_after_storage_recovers(ledger, store, session, clock):
    engine = ReconciliationEngine(ledger, session=session, clock=clock)
    engine.scan(invoice_payload("A1", ("X", 1), ("Y", 2)))
    engine.scan("X")
    engine.scan("Y")

    with patch.object(store, "put_many", side_effect=LedgerError("disk full")):
        with pytest.raises(LedgerError):
            engine.scan("Y")

    progress = engine.current_progress()
    assert engine.state == EngineState.ACTIVE_ORDER
    assert not progress.is_complete
    assert progress.scanned_counts == {"X": 1, "Y": 1}
    assert ledger.snapshot() == []

    events = engine.scan("Y")

    assert events[0] == ItemProgressed("Y", 2, 2)
    assert isinstance(events[1], OrderCompleted)
    assert engine.state == EngineState.COMPLETED_ORDER
    assert ledger.is_blocked("A1")


# ============================================================================
# Signals
# ============================================================================

class TestSignals:

    def test_signals_follow_events(self, engine):
        loaded, progressed, completed, rejected, states = (MagicMock() for _ in range(5))
        engine.order_loaded.connect(loaded)
        engine.item_progressed.connect(progressed)
        engine.order_completed.connect(completed)
        engine.scan_rejected.connect(rejected)
        engine.state_changed.connect(states)

        engine.scan(invoice_payload("A1", ("X", 1)))
        engine.scan("Y")
        engine.scan("X")

        loaded.assert_called_once_with("A1")
        progressed.assert_called_once_with("X", 1, 1)
        assert completed.call_count == 1
        assert completed.call_args[0][0].order_id == "A1"
        assert rejected.call_args[0][0].reason == RejectionReason.SKU_NOT_IN_ORDER
        last_snapshot = states.call_args[0][0]
        assert last_snapshot.completed_at is not None

    def test_event_stream_order(self, engine):
        seen = []
        engine.event_emitted.connect(seen.append)

        engine.scan(invoice_payload("A1", ("X", 1)))
        engine.scan("X")

        assert [type(e) for e in seen] == [OrderLoaded, ItemProgressed, OrderCompleted]

    def test_state_snapshot_is_a_copy(self, engine):
        engine.scan(invoice_payload("A1", ("X", 2)))
        snapshot = engine.current_progress()
        snapshot.scanned_counts["X"] = 2

        assert engine.current_progress().scanned_counts == {}


# ============================================================================
# Session handling
# ============================================================================

class TestSession:

    def test_scans_require_sign_in(self, ledger, clock):
        engine = ReconciliationEngine(ledger, clock=clock)

        rejected = rejection(engine.scan(invoice_payload("A1", ("X", 1))))

        assert rejected.reason == RejectionReason.NOT_SIGNED_IN
        assert rejected.message == "Sign in required."

    def test_sign_out_clears_active_order(self, engine):
        states = MagicMock()
        engine.state_changed.connect(states)
        engine.scan(invoice_payload("A1", ("X", 2)))

        engine.sign_out()

        assert engine.state == EngineState.NO_ACTIVE_ORDER
        assert engine.session is None
        states.assert_called_with(None)

    def test_operator_email_is_recorded(self, ledger, clock):
        engine = ReconciliationEngine(ledger, clock=clock)
        engine.sign_in(OperatorSession(uid="u1", email=None))
        engine.scan(invoice_payload("A1", ("X", 1)))

        completed = engine.scan("X")[-1]

        assert completed.order.operator_email is None


# ============================================================================
# Remote sync hand-off
# ============================================================================

class FailingStore(RemoteStore):
    def upload(self, order, owner_id):
        raise NetworkError("server offline")


class TestSync:

    def test_completed_order_is_uploaded_with_owner(self, ledger, session, clock):
        remote = MagicMock(spec=RemoteStore)
        engine = ReconciliationEngine(ledger, sync_bridge=SyncBridge(remote, sync_mode=True),
                                      session=session, clock=clock)
        engine.scan(invoice_payload("A1", ("X", 1)))

        packed = engine.scan("X")[-1].order

        remote.upload.assert_called_once_with(packed, "uid-42")
        assert not engine.sync_in_flight

    def test_sync_failure_is_an_advisory_only(self, ledger, session, clock):
        engine = ReconciliationEngine(ledger, sync_bridge=SyncBridge(FailingStore(), sync_mode=True),
                                      session=session, clock=clock)
        advisories = []
        order = []
        engine.advisory.connect(advisories.append)
        engine.event_emitted.connect(lambda e: order.append(type(e).__name__))
        engine.advisory.connect(lambda m: order.append("advisory"))
        engine.scan(invoice_payload("A1", ("X", 1)))

        events = engine.scan("X")

        assert isinstance(events[-1], OrderCompleted)
        assert advisories == [PENDING_SYNC_MESSAGE]
        assert order[-2:] == ["OrderCompleted", "advisory"]
        assert [o.order_id for o in ledger.snapshot()] == ["A1"]
        assert engine.state == EngineState.COMPLETED_ORDER

    def test_sync_runs_off_the_scan_path(self, ledger, session, clock):
        release = threading.Event()

        class SlowStore(RemoteStore):
            def upload(self, order, owner_id):
                release.wait(timeout=5)

        bridge = SyncBridge(SlowStore())
        engine = ReconciliationEngine(ledger, sync_bridge=bridge, session=session, clock=clock)
        engine.scan(invoice_payload("A1", ("X", 1)))
        engine.scan("X")

        # Scanning continues while the upload is blocked
        assert engine.scan(invoice_payload("A2", ("Y", 1))) == [OrderLoaded("A2")]
        assert engine.sync_in_flight

        release.set()
        assert bridge.flush(timeout=5)
        assert not engine.sync_in_flight
        engine.shutdown()
