"""
Best-effort upload of packed orders to a remote store.

The local history is authoritative. Uploads run on their own background
worker, never on the scan path; a failure is logged and reported to the
caller's callback as False, and nothing is rolled back or retried here.

Remote document layout (one document per completed order):
    users/<owner_id>/packedOrders/<orderId>_<packedAtMillis>
    {"orderId": ..., "packedAt": <millis>, "operatorEmail": ..., "items": [{"sku", "quantity"}]}
"""

import json
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from exceptions import NetworkError, SyncError
from logger import get_logger
from models import PackedOrder
from serial_worker import SerialWorker

logger = get_logger(__name__)

SyncCallback = Callable[[PackedOrder, bool], None]


def document_path(order: PackedOrder, owner_id: str) -> str:
    """Remote document path for a packed order."""
    return f"users/{owner_id}/packedOrders/{order.order_id}_{order.packed_at_millis}"


def document_payload(order: PackedOrder) -> Dict[str, Any]:
    """Remote document body; operatorEmail is always present (may be null)."""
    return {
        'orderId': order.order_id,
        'packedAt': order.packed_at_millis,
        'operatorEmail': order.operator_email,
        'items': [{'sku': item.sku, 'quantity': item.quantity} for item in order.items],
    }


class RemoteStore(ABC):
    """Remote document store collaborator."""

    @abstractmethod
    def upload(self, order: PackedOrder, owner_id: str) -> None:
        """
        Write the order document.

        Raises:
            SyncError: If the document could not be written
        """


class FileServerStore(RemoteStore):
    """
    Remote store backed by a shared folder on the warehouse file server.

    Each document is written as <root>/<document path>.json using the atomic
    temp-file pattern, so a half-written file never appears on the share.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _test_connection(self) -> bool:
        try:
            return self.root.is_dir()
        except OSError:
            return False

    def upload(self, order: PackedOrder, owner_id: str) -> None:
        if not self._test_connection():
            raise NetworkError(f"Cannot connect to file server at {self.root}")

        target = self.root / f"{document_path(order, owner_id)}.json"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode='w',
                dir=target.parent,
                prefix='.tmp_order_',
                suffix='.json',
                delete=False,
                encoding='utf-8'
            ) as tmp_file:
                json.dump(document_payload(order), tmp_file, indent=2, ensure_ascii=False)
                tmp_path = tmp_file.name
            shutil.move(tmp_path, target)
        except OSError as e:
            raise SyncError(f"Failed to write {target}: {e}") from e

        logger.debug(f"Uploaded {order.order_id} to {target}")


class SyncBridge:
    """
    Fire-and-forget uploader for completed orders.

    upload() performs one attempt and reports success/failure; submit() runs
    upload() on the bridge's own worker thread and then calls the callback
    from that thread.
    """

    def __init__(self, remote: RemoteStore, sync_mode: bool = False):
        self.remote = remote
        self._worker = SerialWorker(name="remote-sync", sync_mode=sync_mode)

    def upload(self, order: PackedOrder, owner_id: str) -> bool:
        """
        Upload one order.

        Returns:
            True on success, False on any failure (failures are logged, not raised)
        """
        try:
            self.remote.upload(order, owner_id)
        except SyncError as e:
            logger.warning(f"Remote sync failed for order {order.order_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Unexpected remote sync error for order {order.order_id}: {e}", exc_info=True)
            return False

        logger.info(f"Order {order.order_id} synced to remote store")
        return True

    def submit(self, order: PackedOrder, owner_id: str,
               on_done: Optional[SyncCallback] = None) -> None:
        """Queue an upload; on_done(order, succeeded) is called when it finishes."""
        def job():
            succeeded = self.upload(order, owner_id)
            if on_done is not None:
                on_done(order, succeeded)

        if not self._worker.submit(job) and on_done is not None:
            on_done(order, False)

    def pending(self) -> int:
        return self._worker.pending()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued uploads to finish."""
        return self._worker.flush(timeout=timeout)

    def shutdown(self) -> None:
        self._worker.shutdown()
