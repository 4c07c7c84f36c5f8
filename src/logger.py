"""
Centralized logging configuration for Order Packer.

This module provides:
- Structured JSON logging to a daily file (one JSON object per line)
- Automatic file rotation when a file exceeds MaxLogSizeMB
- Cleanup of logs older than LogRetentionDays
- Human-readable console output
- Context-aware logging (operator_id, order_id)

Packing stations run unattended for a whole shift, so the log is the audit
trail of who packed which order and why a scan was rejected.

Log file location: ~/.order_packer/logs/ (override with [Logging] LogDir)
Log file format: YYYY-MM-DD.log

Example log entry (JSON format):
    {"timestamp": "2025-11-05T14:30:45.123", "level": "INFO", "tool": "order_packer",
     "operator_id": "uid-42", "order_id": "A1", "module": "reconciliation_engine",
     "function": "_apply_item", "line": 310, "message": "SKU X scanned (1/2)"}
"""

import logging
import json
from datetime import datetime, timedelta
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
import configparser
from contextvars import ContextVar


# Context variables for structured logging
_operator_id: ContextVar[Optional[str]] = ContextVar('operator_id', default=None)
_order_id: ContextVar[Optional[str]] = ContextVar('order_id', default=None)

DEFAULT_LOG_DIR = Path.home() / ".order_packer" / "logs"


class StructuredJSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON with fields: timestamp, level, tool,
    operator_id, order_id, module, function, line, message and, when present,
    exc_info and extra.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'tool': 'order_packer',
            'operator_id': _operator_id.get(),
            'order_id': _order_id.get(),
            'module': record.name,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exc_info'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_data'):
            log_data['extra'] = record.extra_data

        return json.dumps(log_data, ensure_ascii=False)


class AppLogger:
    """
    Centralized application logger.

    Logging is configured exactly once, on the first get_logger() call,
    regardless of how many modules import the logger. All module loggers
    inherit the root handlers.

    The logging system is configured from config.ini:
        [Logging]
        LogLevel = INFO
        LogDir = ~/.order_packer/logs
        MaxLogSizeMB = 10
        LogRetentionDays = 30
    """

    _initialized: bool = False
    config_path: str = 'config.ini'

    @classmethod
    def get_logger(cls, name: str = 'OrderPacker') -> logging.Logger:
        """
        Get or create a logger, configuring logging on first use.

        Args:
            name: Logger name, typically the module name (__name__)

        Returns:
            Configured logger instance for the specified name
        """
        if not cls._initialized:
            cls._setup_logging()
            cls._initialized = True

        return logging.getLogger(name)

    @classmethod
    def _setup_logging(cls):
        """Attach the JSON file handler and console handler to the root logger."""
        config = cls._load_config(cls.config_path)

        log_dir = Path(config.get('Logging', 'LogDir', fallback=str(DEFAULT_LOG_DIR))).expanduser()
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Unwritable LogDir: fall back to the default location
            log_dir = DEFAULT_LOG_DIR
            log_dir.mkdir(parents=True, exist_ok=True)
            print(f"Warning: Could not create log directory. Using: {log_dir}. Error: {e}")

        log_file = log_dir / f"{datetime.now():%Y-%m-%d}.log"

        log_level_str = config.get('Logging', 'LogLevel', fallback='INFO')
        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        max_log_size = config.getint('Logging', 'MaxLogSizeMB', fallback=10) * 1024 * 1024

        console_formatter = logging.Formatter(
            fmt='%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_log_size,
            backupCount=30,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(StructuredJSONFormatter())

        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(console_formatter)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

        retention_days = config.getint('Logging', 'LogRetentionDays', fallback=30)
        cls._cleanup_old_logs(log_dir, retention_days)

        logger = logging.getLogger('OrderPacker')
        logger.info("=" * 80)
        logger.info("Order Packer Started")
        logger.info(f"Log Level: {log_level_str}")
        logger.info(f"Log File: {log_file}")
        logger.info("=" * 80)

    @staticmethod
    def _load_config(config_path: str) -> configparser.ConfigParser:
        """
        Load logging settings from config.ini.

        Returns an empty ConfigParser if the file does not exist; callers
        then use the fallback defaults.
        """
        config = configparser.ConfigParser()
        path = Path(config_path)

        if path.exists():
            config.read(path, encoding='utf-8')

        return config

    @staticmethod
    def _cleanup_old_logs(log_dir: Path, retention_days: int):
        """
        Delete log files older than the retention period.

        Args:
            log_dir: Directory containing log files
            retention_days: Days to keep logs; 0 or negative keeps everything
        """
        if retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=retention_days)

        try:
            for log_file in log_dir.glob("*.log*"):
                file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
                if file_mtime < cutoff_date:
                    log_file.unlink()
                    logging.getLogger('OrderPacker').debug(f"Deleted old log: {log_file.name}")

        except OSError as e:
            # Non-fatal: a locked or vanished file must not stop startup
            logging.getLogger('OrderPacker').warning(f"Failed to cleanup old logs: {e}")


def get_logger(name: str = 'OrderPacker') -> logging.Logger:
    """
    Get application logger.

    Example:
        >>> from logger import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Starting scan loop")
    """
    return AppLogger.get_logger(name)


def set_operator_context(operator_id: Optional[str]) -> None:
    """
    Set the signed-in operator for structured logging context.

    Args:
        operator_id: Operator uid or None to clear
    """
    _operator_id.set(operator_id)


def set_order_context(order_id: Optional[str]) -> None:
    """
    Set the order currently being packed for structured logging context.

    Args:
        order_id: Order identifier from the invoice manifest, or None to clear
    """
    _order_id.set(order_id)


def clear_logging_context() -> None:
    """Clear operator_id and order_id from the logging context."""
    _operator_id.set(None)
    _order_id.set(None)
