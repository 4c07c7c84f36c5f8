"""
Order reconciliation engine.

Owns the single active order and applies scans to it:

    raw scan -> payload codec -> business rules -> events
                                        |
                                        +-> on completion: history ledger (must succeed)
                                                           sync bridge (best effort)

States:
    NO_ACTIVE_ORDER  - nothing loaded (start, after sign-out)
    ACTIVE_ORDER     - an invoice is loaded and not yet fully packed
    COMPLETED_ORDER  - the loaded invoice was fully packed; a new invoice may
                       replace it, item scans are rejected

Scans are applied strictly one at a time: scan() holds the engine lock for
the whole transition, including event emission. Wrap it in a ScanDispatcher
when scans arrive from several threads and must keep their arrival order.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from PySide6.QtCore import QObject, Signal

from config import DEFAULT_MAX_SCAN_LENGTH
from exceptions import DecodeError, LedgerError
from history_ledger import HistoryLedger
from logger import get_logger, set_operator_context, set_order_context, clear_logging_context
from models import InvoiceManifest, OrderProgress, PackedOrder
from payload_codec import decode_invoice, decode_item, is_invoice_payload
from sync_bridge import SyncBridge

logger = get_logger(__name__)

PENDING_SYNC_MESSAGE = "Synced locally. Remote sync pending."


class EngineState(Enum):
    NO_ACTIVE_ORDER = "no_active_order"
    ACTIVE_ORDER = "active_order"
    COMPLETED_ORDER = "completed_order"


class RejectionReason(Enum):
    """Why a scan was ignored. None of these change any state."""
    NOT_SIGNED_IN = "not_signed_in"
    INVALID_INVOICE = "invalid_invoice"
    ALREADY_PACKED = "already_packed"
    ORDER_IN_PROGRESS = "order_in_progress"
    NO_ACTIVE_ORDER = "no_active_order"
    UNSUPPORTED_CODE = "unsupported_code"
    SKU_NOT_IN_ORDER = "sku_not_in_order"
    LINE_ALREADY_COMPLETE = "line_already_complete"


@dataclass(frozen=True)
class OperatorSession:
    """Signed-in operator. `uid` owns the remote documents; `email` goes into history."""
    uid: str
    email: Optional[str] = None


@dataclass(frozen=True)
class OrderLoaded:
    order_id: str

    @property
    def message(self) -> str:
        return f"Invoice {self.order_id} loaded."


@dataclass(frozen=True)
class ScanRejected:
    reason: RejectionReason
    order_id: Optional[str] = None
    sku: Optional[str] = None

    @property
    def message(self) -> str:
        messages = {
            RejectionReason.NOT_SIGNED_IN: "Sign in required.",
            RejectionReason.INVALID_INVOICE: "Invalid invoice payload.",
            RejectionReason.ALREADY_PACKED: f"Order {self.order_id} already packed.",
            RejectionReason.ORDER_IN_PROGRESS: "Finish current order first.",
            RejectionReason.NO_ACTIVE_ORDER: "Scan invoice first.",
            RejectionReason.UNSUPPORTED_CODE: "Unsupported code.",
            RejectionReason.SKU_NOT_IN_ORDER: f"SKU {self.sku} not in order.",
            RejectionReason.LINE_ALREADY_COMPLETE: f"SKU {self.sku} already complete.",
        }
        return messages[self.reason]


@dataclass(frozen=True)
class ItemProgressed:
    sku: str
    count: int
    required: int

    @property
    def message(self) -> str:
        return f"SKU {self.sku}: {self.count}/{self.required}"


@dataclass(frozen=True)
class OrderCompleted:
    order: PackedOrder

    @property
    def message(self) -> str:
        return f"Order {self.order.order_id} packed"


class ReconciliationEngine(QObject):
    """
    Applies scan events to the single active order.

    Every scan produces a list of events (usually one; an item scan that
    finishes the order produces ItemProgressed followed by OrderCompleted).
    The same events are broadcast through Qt signals for observers.

    Attributes:
        order_loaded (Signal): order_id of a newly accepted invoice
        scan_rejected (Signal): ScanRejected event
        item_progressed (Signal): sku, scanned count, required count
        order_completed (Signal): PackedOrder that was recorded
        event_emitted (Signal): every event, in order
        state_changed (Signal): copy of the current OrderProgress (or None)
        advisory (Signal): soft, user-facing notices (remote sync pending)
        sync_state_changed (Signal): True while uploads are in flight
    """
    order_loaded = Signal(str)
    scan_rejected = Signal(object)
    item_progressed = Signal(str, int, int)
    order_completed = Signal(object)
    event_emitted = Signal(object)
    state_changed = Signal(object)
    advisory = Signal(str)
    sync_state_changed = Signal(bool)

    def __init__(self,
                 ledger: HistoryLedger,
                 sync_bridge: Optional[SyncBridge] = None,
                 session: Optional[OperatorSession] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 max_scan_length: int = DEFAULT_MAX_SCAN_LENGTH):
        """
        Args:
            ledger: History ledger providing the blocked set and recording completions
            sync_bridge: Optional uploader for completed orders
            session: Signed-in operator; scans are rejected until one is set
            clock: Returns the current time (timezone-aware); defaults to UTC now
            max_scan_length: Longer raw scans are rejected without decoding
        """
        super().__init__()
        self.ledger = ledger
        self.sync_bridge = sync_bridge
        self.max_scan_length = max_scan_length
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._progress: Optional[OrderProgress] = None
        self._session: Optional[OperatorSession] = None
        self._syncs_in_flight = 0

        if session is not None:
            self.sign_in(session)

        logger.info("ReconciliationEngine initialized")

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def session(self) -> Optional[OperatorSession]:
        return self._session

    def sign_in(self, session: OperatorSession) -> None:
        with self._lock:
            self._session = session
            set_operator_context(session.uid)
        logger.info(f"Operator signed in: {session.email or session.uid}")

    def sign_out(self) -> None:
        """Forget the operator and drop the active order."""
        with self._lock:
            self._session = None
            self.clear_current_order()
            clear_logging_context()
        logger.info("Operator signed out")

    def shutdown(self) -> None:
        """Sign out and stop the sync bridge (queued uploads finish first)."""
        self.sign_out()
        if self.sync_bridge is not None:
            self.sync_bridge.shutdown()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        with self._lock:
            if self._progress is None:
                return EngineState.NO_ACTIVE_ORDER
            if self._progress.completed_at is not None:
                return EngineState.COMPLETED_ORDER
            return EngineState.ACTIVE_ORDER

    def current_progress(self) -> Optional[OrderProgress]:
        """Copy of the active order's progress, or None."""
        with self._lock:
            return self._progress.copy() if self._progress is not None else None

    @property
    def sync_in_flight(self) -> bool:
        return self._syncs_in_flight > 0

    def clear_current_order(self) -> None:
        """Drop the active order (used on sign-out)."""
        with self._lock:
            if self._progress is None:
                return
            logger.info(f"Clearing current order {self._progress.order_id}")
            self._progress = None
            set_order_context(None)
            self.state_changed.emit(None)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def scan(self, raw: str) -> List[object]:
        """
        Apply one raw scan.

        Dispatch is by prefix only: a scan carrying the invoice marker is an
        invoice scan even if it fails to decode; anything else is an item scan.

        Args:
            raw: Text delivered by the scanner

        Returns:
            Events produced by this scan, in emission order. Blank scans
            produce no events.

        Raises:
            LedgerError: If a completed order cannot be recorded locally
        """
        text = raw.strip()
        if not text:
            logger.debug("Ignoring blank scan")
            return []

        with self._lock:
            if self._session is None:
                events = [ScanRejected(RejectionReason.NOT_SIGNED_IN)]
            elif is_invoice_payload(text):
                events = self._apply_invoice(text)
            else:
                events = self._apply_item(text)

            for event in events:
                self._emit(event)

            for event in events:
                if isinstance(event, OrderCompleted):
                    self._start_sync(event.order)
            return events

    def _reject(self, reason: RejectionReason, order_id: Optional[str] = None,
                sku: Optional[str] = None) -> List[object]:
        logger.info(f"Scan rejected: {reason.value} (order={order_id}, sku={sku})")
        return [ScanRejected(reason, order_id=order_id, sku=sku)]

    def _apply_invoice(self, text: str) -> List[object]:
        if len(text) > self.max_scan_length:
            logger.warning(f"Invoice scan of {len(text)} chars exceeds limit {self.max_scan_length}")
            return self._reject(RejectionReason.INVALID_INVOICE)

        try:
            manifest = decode_invoice(text)
        except DecodeError as e:
            logger.info(f"Invalid invoice payload: {e}")
            return self._reject(RejectionReason.INVALID_INVOICE)

        if manifest.order_id in self.ledger.blocked_ids():
            return self._reject(RejectionReason.ALREADY_PACKED, order_id=manifest.order_id)

        if self._progress is not None and self._progress.completed_at is None:
            return self._reject(RejectionReason.ORDER_IN_PROGRESS, order_id=self._progress.order_id)

        self._load(manifest)
        return [OrderLoaded(manifest.order_id)]

    def _load(self, manifest: InvoiceManifest) -> None:
        if manifest.has_duplicate_skus():
            logger.warning(f"Invoice {manifest.order_id} lists a SKU more than once, merging quantities")
            manifest = manifest.merged()

        self._progress = OrderProgress(manifest=manifest, started_at=self._clock())
        set_order_context(manifest.order_id)
        logger.info(
            f"Invoice {manifest.order_id} loaded: {len(manifest.lines)} lines, "
            f"{manifest.total_quantity} units"
        )

    def _apply_item(self, text: str) -> List[object]:
        progress = self._progress
        if progress is None or progress.completed_at is not None:
            return self._reject(RejectionReason.NO_ACTIVE_ORDER)

        if len(text) > self.max_scan_length:
            logger.warning(f"Item scan of {len(text)} chars exceeds limit {self.max_scan_length}")
            return self._reject(RejectionReason.UNSUPPORTED_CODE, order_id=progress.order_id)

        try:
            item = decode_item(text)
        except DecodeError as e:
            logger.info(f"Unsupported item code: {e}")
            return self._reject(RejectionReason.UNSUPPORTED_CODE, order_id=progress.order_id)

        line = progress.manifest.find_line(item.sku)
        if line is None:
            return self._reject(RejectionReason.SKU_NOT_IN_ORDER, order_id=progress.order_id, sku=item.sku)

        current = progress.scanned(line.sku)
        if current >= line.required_quantity:
            return self._reject(RejectionReason.LINE_ALREADY_COMPLETE, order_id=progress.order_id, sku=line.sku)

        # One scan is one physical unit
        progress.scanned_counts[line.sku] = current + 1
        logger.info(f"SKU {line.sku} scanned ({current + 1}/{line.required_quantity})")
        events: List[object] = [ItemProgressed(line.sku, current + 1, line.required_quantity)]

        if progress.is_complete:
            try:
                events.append(self._complete(progress))
            except LedgerError:
                # Not recorded: undo the last unit so a rescan can retry completion
                if current:
                    progress.scanned_counts[line.sku] = current
                else:
                    del progress.scanned_counts[line.sku]
                raise
        return events

    def _complete(self, progress: OrderProgress) -> OrderCompleted:
        """Record the finished order locally. Must succeed before anything is reported."""
        completed_at = self._clock()
        session = self._session
        packed = PackedOrder.from_progress(progress, packed_at=completed_at, operator_email=session.email)

        self.ledger.append(packed)
        progress.completed_at = completed_at
        logger.info(f"Order {packed.order_id} packed ({progress.total_required} units)")
        return OrderCompleted(packed)

    def _start_sync(self, order: PackedOrder) -> None:
        if self.sync_bridge is None or self._session is None:
            return
        self._syncs_in_flight += 1
        self.sync_state_changed.emit(True)
        self.sync_bridge.submit(order, self._session.uid, self._on_sync_done)

    def _on_sync_done(self, order: PackedOrder, succeeded: bool) -> None:
        """Called from the sync worker; never touches the committed order."""
        with self._lock:
            self._syncs_in_flight = max(0, self._syncs_in_flight - 1)
            idle = self._syncs_in_flight == 0

        if not succeeded:
            logger.warning(f"Order {order.order_id} kept locally, remote sync pending")
            self.advisory.emit(PENDING_SYNC_MESSAGE)
        if idle:
            self.sync_state_changed.emit(False)

    def _emit(self, event: object) -> None:
        if isinstance(event, OrderLoaded):
            self.order_loaded.emit(event.order_id)
        elif isinstance(event, ScanRejected):
            self.scan_rejected.emit(event)
        elif isinstance(event, ItemProgressed):
            self.item_progressed.emit(event.sku, event.count, event.required)
        elif isinstance(event, OrderCompleted):
            self.order_completed.emit(event.order)

        self.event_emitted.emit(event)
        if not isinstance(event, ScanRejected):
            self.state_changed.emit(self.current_progress())
