"""
Order Packer command line entry point.

Usage:
    python src/main.py [--config config.ini] scan --operator-id UID [--operator-email EMAIL]
    python src/main.py export-csv OUTPUT.csv
    python src/main.py export-xlsx OUTPUT.xlsx
    python src/main.py export-history OUTPUT.json
    python src/main.py import-history BACKUP.json
    python src/main.py clear-history --yes
    python src/main.py labels PAYLOAD [--out DIR]

`scan` reads one scan per line from stdin (keyboard-wedge scanners type the
code followed by Enter) and prints the outcome of each scan.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional, TextIO

from PySide6.QtCore import Qt

from config import PackerConfig, load_config
from exceptions import PackerError
from history_ledger import HistoryLedger
from kv_store import JsonFileStore
from label_printer import render_manifest_labels
from logger import get_logger
from payload_codec import decode_invoice
from reconciliation_engine import OperatorSession, ReconciliationEngine
from report_builder import build_csv, export_csv, export_xlsx
from scan_dispatcher import ScanDispatcher
from sync_bridge import FileServerStore, SyncBridge

logger = get_logger(__name__)


def build_engine(config: PackerConfig, session: OperatorSession) -> ReconciliationEngine:
    """Wire ledger, optional sync bridge and engine from configuration."""
    ledger = HistoryLedger(JsonFileStore(config.ledger_path))

    bridge = None
    if config.sync_enabled:
        bridge = SyncBridge(FileServerStore(config.file_server_path))
        logger.info(f"Remote sync enabled: {config.file_server_path}")

    return ReconciliationEngine(
        ledger,
        sync_bridge=bridge,
        session=session,
        max_scan_length=config.max_scan_length,
    )


def run_scan_loop(engine: ReconciliationEngine, stream: TextIO, out: TextIO) -> int:
    """
    Feed every line of `stream` to the engine through a dispatcher.

    Returns:
        Number of scans submitted
    """
    def print_events(raw, events):
        for event in events:
            print(event.message, file=out, flush=True)

    # Advisories arrive from the sync thread and there is no Qt event loop here
    engine.advisory.connect(lambda message: print(message, file=out, flush=True),
                            Qt.ConnectionType.DirectConnection)
    dispatcher = ScanDispatcher(engine, on_events=print_events)

    count = 0
    try:
        for line in stream:
            if dispatcher.submit(line):
                count += 1
    finally:
        dispatcher.shutdown()
        engine.shutdown()

    logger.info(f"Scan loop finished after {count} scans")
    return count


def _ledger(config: PackerConfig) -> HistoryLedger:
    return HistoryLedger(JsonFileStore(config.ledger_path))


def cmd_scan(args, config: PackerConfig) -> int:
    session = OperatorSession(uid=args.operator_id, email=args.operator_email)
    engine = build_engine(config, session)
    print("Ready. Scan an invoice to start (Ctrl+D to quit).", flush=True)
    run_scan_loop(engine, sys.stdin, sys.stdout)
    return 0


def cmd_export_csv(args, config: PackerConfig) -> int:
    history = _ledger(config).snapshot()
    if not history:
        print("Nothing to export.")
        return 0
    if args.output == '-':
        sys.stdout.write(build_csv(history))
        return 0
    rows = export_csv(history, Path(args.output))
    print(f"Exported {rows} rows to {args.output}")
    return 0


def cmd_export_xlsx(args, config: PackerConfig) -> int:
    history = _ledger(config).snapshot()
    if not history:
        print("Nothing to export.")
        return 0
    rows = export_xlsx(history, Path(args.output))
    print(f"Exported {rows} rows to {args.output}")
    return 0


def cmd_export_history(args, config: PackerConfig) -> int:
    text = _ledger(config).export_json()
    Path(args.output).write_text(text, encoding='utf-8')
    print(f"History written to {args.output}")
    return 0


def cmd_import_history(args, config: PackerConfig) -> int:
    text = Path(args.input).read_text(encoding='utf-8')
    count = _ledger(config).import_json(text)
    print(f"Imported {count} orders (previous history replaced)")
    return 0


def cmd_clear_history(args, config: PackerConfig) -> int:
    if not args.yes:
        print("Refusing to clear history without --yes", file=sys.stderr)
        return 2
    _ledger(config).clear()
    print("History cleared.")
    return 0


def cmd_labels(args, config: PackerConfig) -> int:
    manifest = decode_invoice(args.payload)
    output_dir = Path(args.out) if args.out else config.label_dir
    paths = render_manifest_labels(manifest.merged(), output_dir, dpi=config.label_dpi)
    for path in paths:
        print(path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="order-packer",
        description="Scan invoices and items to pack orders; export packing history."
    )
    parser.add_argument('--config', default='config.ini', help="Path to config.ini")
    subparsers = parser.add_subparsers(dest='command', required=True)

    scan = subparsers.add_parser('scan', help="Read scans from stdin")
    scan.add_argument('--operator-id', required=True, help="Operator uid (owner of remote documents)")
    scan.add_argument('--operator-email', default=None, help="Recorded in the packing history")
    scan.set_defaults(handler=cmd_scan)

    export = subparsers.add_parser('export-csv', help="Export history as CSV ('-' for stdout)")
    export.add_argument('output')
    export.set_defaults(handler=cmd_export_csv)

    workbook = subparsers.add_parser('export-xlsx', help="Export history as an Excel workbook")
    workbook.add_argument('output')
    workbook.set_defaults(handler=cmd_export_xlsx)

    backup = subparsers.add_parser('export-history', help="Write a JSON backup of the history")
    backup.add_argument('output')
    backup.set_defaults(handler=cmd_export_history)

    restore = subparsers.add_parser('import-history', help="Replace history with a JSON backup")
    restore.add_argument('input')
    restore.set_defaults(handler=cmd_import_history)

    clear = subparsers.add_parser('clear-history', help="Delete all history and unblock all orders")
    clear.add_argument('--yes', action='store_true', help="Confirm the irrevocable clear")
    clear.set_defaults(handler=cmd_clear_history)

    labels = subparsers.add_parser('labels', help="Render packet labels for an invoice payload")
    labels.add_argument('payload', help="PKG1: invoice payload")
    labels.add_argument('--out', default=None, help="Output directory (default: [Labels] OutputDir)")
    labels.set_defaults(handler=cmd_labels)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        return args.handler(args, config)
    except PackerError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
