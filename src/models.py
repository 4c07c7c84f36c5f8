"""
Data model for invoice manifests, packing progress and packed order history.

Manifests, lines and packed orders are immutable (frozen dataclasses).
OrderProgress is the single mutable object, owned by the reconciliation
engine. Timestamps are timezone-aware datetimes in memory and epoch
milliseconds in persisted/remote records.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def to_epoch_millis(moment: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are taken as UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(round(moment.timestamp() * 1000))


def from_epoch_millis(millis: int) -> datetime:
    """Convert epoch milliseconds to a UTC datetime."""
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def sku_key(sku: str) -> str:
    """Case-insensitive comparison key for SKUs."""
    return sku.casefold()


@dataclass(frozen=True)
class InvoiceLine:
    """One required SKU of an order. `sku` is trimmed, case preserved."""
    sku: str
    required_quantity: int


@dataclass(frozen=True)
class InvoiceManifest:
    """
    Decoded invoice: the order id and its required lines, in invoice order.

    The codec does not merge repeated SKUs; use merged() to get a manifest
    that is unique by SKU.
    """
    order_id: str
    lines: Tuple[InvoiceLine, ...]

    def find_line(self, sku: str) -> Optional[InvoiceLine]:
        """Return the line matching `sku` case-insensitively, or None."""
        key = sku_key(sku)
        for line in self.lines:
            if sku_key(line.sku) == key:
                return line
        return None

    def has_duplicate_skus(self) -> bool:
        return len({sku_key(line.sku) for line in self.lines}) != len(self.lines)

    def merged(self) -> 'InvoiceManifest':
        """
        Merge lines whose SKUs match case-insensitively.

        Quantities are summed; the first occurrence keeps its spelling and
        position.
        """
        if not self.has_duplicate_skus():
            return self

        totals: Dict[str, InvoiceLine] = {}
        for line in self.lines:
            key = sku_key(line.sku)
            if key in totals:
                first = totals[key]
                totals[key] = replace(first, required_quantity=first.required_quantity + line.required_quantity)
            else:
                totals[key] = line
        return InvoiceManifest(order_id=self.order_id, lines=tuple(totals.values()))

    @property
    def total_quantity(self) -> int:
        return sum(line.required_quantity for line in self.lines)


@dataclass(frozen=True)
class ItemIdentifier:
    """A single physical unit identified by SKU."""
    sku: str


@dataclass
class OrderProgress:
    """
    Packing progress of the active order.

    Attributes:
        manifest: The invoice being packed
        scanned_counts: Manifest SKU (as spelled in the manifest) -> units scanned.
                        Only manifest SKUs appear here, never above their
                        required quantity.
        started_at: When the invoice was accepted
        completed_at: When the last required unit was scanned, else None
    """
    manifest: InvoiceManifest
    started_at: datetime
    scanned_counts: Dict[str, int] = field(default_factory=dict)
    completed_at: Optional[datetime] = None

    @property
    def order_id(self) -> str:
        return self.manifest.order_id

    def scanned(self, sku: str) -> int:
        return self.scanned_counts.get(sku, 0)

    @property
    def is_complete(self) -> bool:
        return all(self.scanned(line.sku) >= line.required_quantity for line in self.manifest.lines)

    @property
    def remaining_by_sku(self) -> Dict[str, int]:
        return {
            line.sku: line.required_quantity - self.scanned(line.sku)
            for line in self.manifest.lines
        }

    @property
    def total_scanned(self) -> int:
        return sum(self.scanned_counts.values())

    @property
    def total_required(self) -> int:
        return self.manifest.total_quantity

    def copy(self) -> 'OrderProgress':
        """Independent copy, safe to hand to observers."""
        return replace(self, scanned_counts=dict(self.scanned_counts))


@dataclass(frozen=True)
class PackedItem:
    sku: str
    quantity: int


@dataclass(frozen=True)
class PackedOrder:
    """
    History record of one completed order. Created once per completion.

    Attributes:
        order_id: Order identifier from the invoice
        packed_at: Completion time (timezone-aware)
        items: Required SKUs and quantities, in invoice order
        operator_email: Email of the signed-in operator, if known
    """
    order_id: str
    packed_at: datetime
    items: Tuple[PackedItem, ...]
    operator_email: Optional[str] = None

    @property
    def packed_at_millis(self) -> int:
        return to_epoch_millis(self.packed_at)

    @classmethod
    def from_progress(cls, progress: OrderProgress, packed_at: datetime,
                      operator_email: Optional[str]) -> 'PackedOrder':
        """Build the record from the manifest's required quantities."""
        items = tuple(PackedItem(line.sku, line.required_quantity) for line in progress.manifest.lines)
        return cls(
            order_id=progress.order_id,
            packed_at=packed_at,
            items=items,
            operator_email=operator_email,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Persisted representation; operatorEmail is omitted when unknown."""
        data: Dict[str, Any] = {
            'orderId': self.order_id,
            'packedAt': self.packed_at_millis,
        }
        if self.operator_email is not None:
            data['operatorEmail'] = self.operator_email
        data['items'] = [{'sku': item.sku, 'quantity': item.quantity} for item in self.items]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PackedOrder':
        """
        Parse a persisted record.

        Raises:
            ValueError, KeyError, TypeError: If the record is incomplete or
                                             has wrongly typed fields
        """
        if not isinstance(data, dict):
            raise TypeError(f"Expected an object, got {type(data).__name__}")

        order_id = data['orderId']
        if not isinstance(order_id, str) or not order_id:
            raise ValueError("orderId must be a non-empty string")

        packed_at = data['packedAt']
        if isinstance(packed_at, bool) or not isinstance(packed_at, (int, float)):
            raise TypeError("packedAt must be epoch milliseconds")

        operator_email = data.get('operatorEmail')
        if operator_email is not None and not isinstance(operator_email, str):
            raise TypeError("operatorEmail must be a string")

        items: List[PackedItem] = []
        for raw_item in data['items']:
            sku = raw_item['sku']
            quantity = raw_item['quantity']
            if not isinstance(sku, str):
                raise TypeError("item sku must be a string")
            if isinstance(quantity, bool) or not isinstance(quantity, int):
                raise TypeError("item quantity must be an integer")
            items.append(PackedItem(sku, quantity))

        return cls(
            order_id=order_id,
            packed_at=from_epoch_millis(int(packed_at)),
            items=tuple(items),
            operator_email=operator_email,
        )
