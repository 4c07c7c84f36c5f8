"""
Custom exceptions for the Order Packer application.

Application-specific exceptions let callers tell apart bad scan payloads,
local storage problems and remote sync failures. Business-rule outcomes of a
scan (wrong SKU, order already packed, ...) are NOT exceptions: the
reconciliation engine reports them as rejection events.

Exception hierarchy:
    PackerError (base)
    ├── DecodeError (scan payload could not be decoded)
    │   └── MalformedPayloadError (bad prefix, base64, JSON or fields)
    ├── LedgerError (durable history store read/write failure)
    ├── SyncError (remote upload failed, non-fatal)
    │   └── NetworkError (remote file server unreachable)
    └── ConfigError (invalid config.ini values)
"""

from typing import Optional


class PackerError(Exception):
    """
    Base exception for all Order Packer errors.

    Catch this to handle any application error with a single except clause.
    It does NOT inherit from ValueError/IOError so application errors stay
    separate from system errors.
    """
    pass


class DecodeError(PackerError):
    """
    Raised when a raw scan string cannot be decoded into structured data.

    Attributes:
        raw (str): The raw scan text (possibly truncated for logging)
    """

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class MalformedPayloadError(DecodeError):
    """
    Raised when a payload has bad syntax.

    Covers: missing prefix, invalid base64url, invalid JSON, missing or empty
    order id, missing items array, a line without sku/quantity, or a quantity
    that is not a positive integer.

    Example usage:
        try:
            manifest = decode_invoice(raw)
        except MalformedPayloadError as e:
            logger.info(f"Rejected invoice: {e}")
    """
    pass


class LedgerError(PackerError):
    """
    Raised when the local history store cannot be read or written.

    Local persistence is treated as must-succeed, so this error propagates
    to the caller instead of being downgraded to a message.
    """
    pass


class SyncError(PackerError):
    """
    Raised by a remote store when a completed order could not be uploaded.

    The sync bridge catches it and turns it into an advisory message; the
    order stays committed in the local history regardless.
    """
    pass


class NetworkError(SyncError):
    """
    Raised when the remote file server is offline or not mounted.

    Example usage:
        if not root.exists():
            raise NetworkError(f"Cannot connect to file server at {root}")
    """
    pass


class ConfigError(PackerError):
    """
    Raised when config.ini contains values the application cannot use,
    e.g. a non-numeric MaxScanLength or sync enabled without FileServerPath.
    """
    pass
