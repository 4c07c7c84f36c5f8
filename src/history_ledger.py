"""
History ledger: the durable record of packed orders.

The ledger owns two collections, persisted as two string entries of a
key-value store:
    packed_orders_history - JSON array of {orderId, packedAt, operatorEmail?, items}
    blocked_orders        - JSON array of order ids that must never be reopened

Every order id in the history is also blocked. The blocked set, not the
history, decides whether an invoice can be packed again.
"""

import json
import threading
from typing import Iterable, List, Optional, Set

from PySide6.QtCore import QObject, Signal

from exceptions import LedgerError
from kv_store import KeyValueStore
from logger import get_logger
from models import PackedOrder

logger = get_logger(__name__)

HISTORY_KEY = "packed_orders_history"
BLOCKED_KEY = "blocked_orders"


class HistoryLedger(QObject):
    """
    Append-only, deduplicated history of completed orders plus the blocked set.

    All mutations hold one lock and write both entries with a single
    put_many(), so a reader never observes the history without the matching
    blocked-set update. Reads decode the store every time and return copies.

    Attributes:
        history_changed (Signal): Emitted with the new history list (newest first)
        blocked_changed (Signal): Emitted with the new blocked id set
    """
    history_changed = Signal(object)
    blocked_changed = Signal(object)

    def __init__(self, store: KeyValueStore):
        super().__init__()
        self._store = store
        self._lock = threading.RLock()
        logger.info("HistoryLedger initialized")

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _decode_history(self, raw: Optional[str]) -> List[PackedOrder]:
        """Parse the history entry, skipping records that fail to parse."""
        if raw is None:
            return []
        try:
            records = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"History entry is not valid JSON, treating as empty: {e}")
            return []
        if not isinstance(records, list):
            logger.warning("History entry is not a JSON array, treating as empty")
            return []

        return self._parse_records(records)

    @staticmethod
    def _parse_records(records: list) -> List[PackedOrder]:
        orders = []
        for index, record in enumerate(records):
            try:
                orders.append(PackedOrder.from_dict(record))
            except (KeyError, TypeError, ValueError, OverflowError) as e:
                logger.warning(f"Skipping corrupt history record #{index}: {e!r}")
        return orders

    def _decode_blocked(self, raw: Optional[str]) -> Set[str]:
        if raw is None:
            return set()
        try:
            ids = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Blocked orders entry is not valid JSON, treating as empty: {e}")
            return set()
        if not isinstance(ids, list):
            logger.warning("Blocked orders entry is not a JSON array, treating as empty")
            return set()
        return {order_id for order_id in ids if isinstance(order_id, str)}

    @staticmethod
    def _encode_history(orders: List[PackedOrder]) -> str:
        return json.dumps([order.to_dict() for order in orders], ensure_ascii=False)

    @staticmethod
    def _encode_blocked(blocked: Set[str]) -> str:
        return json.dumps(sorted(blocked), ensure_ascii=False)

    @staticmethod
    def _newest_first(orders: Iterable[PackedOrder]) -> List[PackedOrder]:
        return sorted(orders, key=lambda o: o.packed_at, reverse=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> List[PackedOrder]:
        """Point-in-time copy of the history, newest first."""
        with self._lock:
            return self._decode_history(self._store.get(HISTORY_KEY))

    def blocked_ids(self) -> Set[str]:
        """Point-in-time copy of the blocked order ids."""
        with self._lock:
            return self._decode_blocked(self._store.get(BLOCKED_KEY))

    def is_blocked(self, order_id: str) -> bool:
        return order_id in self.blocked_ids()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _commit(self, orders: List[PackedOrder], blocked: Set[str]) -> None:
        self._store.put_many({
            HISTORY_KEY: self._encode_history(orders),
            BLOCKED_KEY: self._encode_blocked(blocked),
        })

    def append(self, order: PackedOrder) -> bool:
        """
        Record a completed order and block its order id.

        Appending a record with the same order id and packedAt as an existing
        one is a no-op.

        Returns:
            True if the record was added, False if it was already present

        Raises:
            LedgerError: If the store cannot be written
        """
        with self._lock:
            orders = self._decode_history(self._store.get(HISTORY_KEY))
            blocked = self._decode_blocked(self._store.get(BLOCKED_KEY))

            duplicate = any(
                o.order_id == order.order_id and o.packed_at_millis == order.packed_at_millis
                for o in orders
            )
            if duplicate:
                logger.warning(f"Order {order.order_id} already recorded at {order.packed_at}, skipping")
                return False

            orders = self._newest_first(orders + [order])
            blocked.add(order.order_id)
            self._commit(orders, blocked)

        logger.info(f"Order {order.order_id} recorded in history ({len(orders)} total)")
        self.history_changed.emit(orders)
        self.blocked_changed.emit(set(blocked))
        return True

    def clear(self) -> None:
        """Remove all history and unblock every order. Irrevocable."""
        with self._lock:
            self._store.put_many({HISTORY_KEY: None, BLOCKED_KEY: None})

        logger.warning("History cleared")
        self.history_changed.emit([])
        self.blocked_changed.emit(set())

    def import_orders(self, orders: Iterable[PackedOrder]) -> int:
        """
        Replace the history with `orders` and the blocked set with their ids.

        Not additive: whatever was recorded before is discarded.

        Returns:
            Number of records now in the history
        """
        imported = self._newest_first(orders)
        blocked = {order.order_id for order in imported}

        with self._lock:
            self._commit(imported, blocked)

        logger.info(f"Imported {len(imported)} orders into history")
        self.history_changed.emit(list(imported))
        self.blocked_changed.emit(set(blocked))
        return len(imported)

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def export_json(self) -> str:
        """History in the persisted record format, for backup files."""
        return json.dumps([order.to_dict() for order in self.snapshot()], ensure_ascii=False, indent=2)

    def import_json(self, text: str) -> int:
        """
        Restore history from export_json() output.

        Corrupt records are skipped the same way as on load.

        Raises:
            LedgerError: If the text is not a JSON array
        """
        try:
            records = json.loads(text)
        except json.JSONDecodeError as e:
            raise LedgerError(f"History backup is not valid JSON: {e}") from e
        if not isinstance(records, list):
            raise LedgerError("History backup must be a JSON array of orders")

        return self.import_orders(self._parse_records(records))
