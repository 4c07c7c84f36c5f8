"""
Application configuration loaded from config.ini.

Example config.ini:
    [Storage]
    LedgerPath = ~/.order_packer/ledger.json

    [Scanning]
    MaxScanLength = 4096

    [Sync]
    Enabled = true
    FileServerPath = \\\\192.168.88.101\\Warehouse\\PackedOrders

    [Labels]
    OutputDir = ~/.order_packer/labels
    DPI = 203

Logging settings ([Logging] section) are read by logger.py directly.
"""

import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from exceptions import ConfigError
from logger import get_logger

logger = get_logger(__name__)

APP_DIR = Path.home() / ".order_packer"

DEFAULT_MAX_SCAN_LENGTH = 4096
DEFAULT_LABEL_DPI = 203


@dataclass
class PackerConfig:
    """
    Resolved application settings.

    Attributes:
        ledger_path: JSON file holding packed order history and blocked ids
        max_scan_length: Raw scans longer than this are rejected undecoded
        sync_enabled: Whether completed orders are uploaded to the file server
        file_server_path: Root of the remote share (required when sync is on)
        label_dir: Where rendered packet labels are saved
        label_dpi: Printer resolution used for label rendering
    """
    ledger_path: Path
    max_scan_length: int = DEFAULT_MAX_SCAN_LENGTH
    sync_enabled: bool = False
    file_server_path: Optional[Path] = None
    label_dir: Path = APP_DIR / "labels"
    label_dpi: int = DEFAULT_LABEL_DPI


def _read_parser(config_path: str) -> configparser.ConfigParser:
    config = configparser.ConfigParser()

    if not Path(config_path).exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return config

    try:
        config.read(config_path, encoding='utf-8')
        logger.info(f"Configuration loaded from {config_path}")
    except configparser.Error as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}") from e

    return config


def load_config(config_path: str = "config.ini") -> PackerConfig:
    """
    Load settings from config.ini, falling back to defaults.

    Args:
        config_path: Path to the ini file

    Returns:
        PackerConfig with every field resolved

    Raises:
        ConfigError: If a numeric/boolean value is invalid, or sync is enabled
                     without a FileServerPath
    """
    config = _read_parser(config_path)

    try:
        max_scan_length = config.getint('Scanning', 'MaxScanLength', fallback=DEFAULT_MAX_SCAN_LENGTH)
        sync_enabled = config.getboolean('Sync', 'Enabled', fallback=False)
        label_dpi = config.getint('Labels', 'DPI', fallback=DEFAULT_LABEL_DPI)
    except ValueError as e:
        raise ConfigError(f"Invalid value in {config_path}: {e}") from e

    if max_scan_length <= 0:
        raise ConfigError(f"MaxScanLength must be positive, got {max_scan_length}")

    server_path = config.get('Sync', 'FileServerPath', fallback='').strip()
    if sync_enabled and not server_path:
        raise ConfigError("Sync is enabled but FileServerPath is not configured in config.ini")

    ledger_path = Path(config.get('Storage', 'LedgerPath', fallback=str(APP_DIR / "ledger.json")))
    label_dir = Path(config.get('Labels', 'OutputDir', fallback=str(APP_DIR / "labels")))

    resolved = PackerConfig(
        ledger_path=ledger_path.expanduser(),
        max_scan_length=max_scan_length,
        sync_enabled=sync_enabled,
        file_server_path=Path(server_path) if server_path else None,
        label_dir=label_dir.expanduser(),
        label_dpi=label_dpi,
    )
    logger.debug(f"Resolved configuration: {resolved}")
    return resolved
