"""
Scan payload codec.

Decodes raw scanner strings into invoice manifests or item identifiers, and
encodes them back (used for label printing and tests). Pure functions, no
state.

Wire formats (must stay compatible with the invoice generators):
    Invoice: "PKG1:" + base64url_nopad(JSON {"o": <order id>, "i": [[sku, qty], ...]})
    Packet:  "PKT1:" + base64url_nopad(JSON {"s": <sku>})
    Plain:   any other string, used verbatim (trimmed) as the SKU

Prefix matching is case-insensitive.
"""

import base64
import binascii
import json
import re
from typing import Any, Optional

from exceptions import MalformedPayloadError
from models import InvoiceLine, InvoiceManifest, ItemIdentifier

INVOICE_PREFIX = "PKG1:"
PACKET_PREFIX = "PKT1:"

_BASE64URL_RE = re.compile(r'^[A-Za-z0-9_-]*$')


def _has_prefix(raw: str, prefix: str) -> bool:
    return raw[:len(prefix)].upper() == prefix


def is_invoice_payload(raw: str) -> bool:
    """True if the (trimmed) scan carries the invoice marker."""
    return _has_prefix(raw.strip(), INVOICE_PREFIX)


def is_packet_payload(raw: str) -> bool:
    """True if the (trimmed) scan carries the structured packet marker."""
    return _has_prefix(raw.strip(), PACKET_PREFIX)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def _b64url_decode_json(body: str, raw: str) -> Any:
    """Decode unpadded base64url text and parse the JSON it carries."""
    if not body or not _BASE64URL_RE.match(body):
        raise MalformedPayloadError("Payload is not base64url text", raw=raw)

    padded = body + '=' * (-len(body) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded).decode('utf-8')
    except (binascii.Error, ValueError) as e:
        raise MalformedPayloadError(f"Invalid base64url payload: {e}", raw=raw) from e

    try:
        return json.loads(decoded)
    except json.JSONDecodeError as e:
        raise MalformedPayloadError(f"Invalid JSON payload: {e}", raw=raw) from e
    except RecursionError as e:
        raise MalformedPayloadError("JSON payload is nested too deeply", raw=raw) from e


def _as_text(value: Any) -> Optional[str]:
    """JSON primitive (string or number) as text; None for anything else."""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _as_quantity(value: Any) -> Optional[int]:
    """Coerce a JSON quantity to a positive int, or None if not possible."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        quantity = value
    elif isinstance(value, float) and value.is_integer():
        quantity = int(value)
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        quantity = int(value.strip())
    else:
        return None
    return quantity if quantity >= 1 else None


def decode_invoice(raw: str) -> InvoiceManifest:
    """
    Decode an invoice scan into a manifest.

    SKUs are trimmed; repeated SKUs are kept as separate lines.

    Args:
        raw: Raw scan text including the PKG1: marker

    Returns:
        InvoiceManifest

    Raises:
        MalformedPayloadError: On missing prefix, bad base64url/JSON, missing
                               or empty order id, missing/empty items, or a
                               line without a SKU or positive quantity
    """
    text = raw.strip()
    if not _has_prefix(text, INVOICE_PREFIX):
        raise MalformedPayloadError("Missing invoice prefix", raw=raw)

    payload = _b64url_decode_json(text[len(INVOICE_PREFIX):], raw)
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Invoice payload must be a JSON object", raw=raw)

    order_id = _as_text(payload.get('o'))
    if order_id is None or not order_id.strip():
        raise MalformedPayloadError("Invoice has no order id", raw=raw)

    entries = payload.get('i')
    if not isinstance(entries, list) or not entries:
        raise MalformedPayloadError("Invoice has no items", raw=raw)

    lines = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, list) or len(entry) < 2:
            raise MalformedPayloadError(f"Invoice line {index} must be [sku, quantity]", raw=raw)

        sku = _as_text(entry[0])
        if sku is None or not sku.strip():
            raise MalformedPayloadError(f"Invoice line {index} has no SKU", raw=raw)

        quantity = _as_quantity(entry[1])
        if quantity is None:
            raise MalformedPayloadError(f"Invoice line {index} has an invalid quantity: {entry[1]!r}", raw=raw)

        lines.append(InvoiceLine(sku=sku.strip(), required_quantity=quantity))

    return InvoiceManifest(order_id=order_id, lines=tuple(lines))


def decode_item(raw: str) -> ItemIdentifier:
    """
    Decode a packet scan into an item identifier.

    With the PKT1: marker the SKU is unwrapped from the JSON payload;
    otherwise the trimmed scan text itself is the SKU (plain barcodes).

    Raises:
        MalformedPayloadError: On bad base64url/JSON or a missing "s" field
                               when the marker is present, or an empty scan
    """
    text = raw.strip()

    if is_packet_payload(text):
        payload = _b64url_decode_json(text[len(PACKET_PREFIX):], raw)
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Packet payload must be a JSON object", raw=raw)
        sku = _as_text(payload.get('s'))
        if sku is None or not sku.strip():
            raise MalformedPayloadError("Packet payload has no SKU", raw=raw)
        return ItemIdentifier(sku=sku.strip())

    if not text:
        raise MalformedPayloadError("Empty scan", raw=raw)
    return ItemIdentifier(sku=text)


def encode_invoice(manifest: InvoiceManifest) -> str:
    """Encode a manifest as a PKG1: payload (compact JSON, no padding)."""
    payload = {
        'o': manifest.order_id,
        'i': [[line.sku, line.required_quantity] for line in manifest.lines],
    }
    body = json.dumps(payload, separators=(',', ':'), ensure_ascii=False).encode('utf-8')
    return INVOICE_PREFIX + _b64url_encode(body)


def encode_item(item: ItemIdentifier) -> str:
    """Encode an item identifier as a structured PKT1: payload."""
    body = json.dumps({'s': item.sku}, separators=(',', ':'), ensure_ascii=False).encode('utf-8')
    return PACKET_PREFIX + _b64url_encode(body)
