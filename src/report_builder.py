"""
CSV and Excel reports of packed order history.

One row per (order, item), orders sorted by packing time ascending, items in
invoice order. Columns:
    order_id,packed_at,operator_email,sku,quantity

packed_at is rendered in local time as "YYYY-MM-DD HH:MM:SS". Fields are
quoted only when they contain a comma, quote or newline, so ordinary values
render exactly as plain comma-separated text.
"""

from datetime import tzinfo
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from openpyxl.styles import PatternFill

from logger import get_logger
from models import PackedOrder

logger = get_logger(__name__)

CSV_COLUMNS = ['order_id', 'packed_at', 'operator_email', 'sku', 'quantity']
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
XLSX_SHEET_NAME = "Packed Orders"


def format_timestamp(order: PackedOrder, tz: Optional[tzinfo] = None) -> str:
    """packed_at in the report format; tz=None means the machine's local zone."""
    return order.packed_at.astimezone(tz).strftime(TIMESTAMP_FORMAT)


def build_rows(history: Iterable[PackedOrder], tz: Optional[tzinfo] = None) -> List[Dict[str, Any]]:
    """Report rows in output order."""
    ordered = sorted(history, key=lambda order: order.packed_at)

    rows = []
    for order in ordered:
        packed_at = format_timestamp(order, tz)
        for item in order.items:
            rows.append({
                'order_id': order.order_id,
                'packed_at': packed_at,
                'operator_email': order.operator_email or '',
                'sku': item.sku,
                'quantity': item.quantity,
            })
    return rows


def build_dataframe(history: Iterable[PackedOrder], tz: Optional[tzinfo] = None) -> pd.DataFrame:
    return pd.DataFrame(build_rows(history, tz), columns=CSV_COLUMNS)


def build_csv(history: Iterable[PackedOrder], tz: Optional[tzinfo] = None) -> str:
    """
    Render history as CSV text.

    An empty history yields only the header line, which callers treat as
    "nothing to export".
    """
    df = build_dataframe(history, tz)
    return df.to_csv(index=False, lineterminator='\n')


def export_csv(history: Iterable[PackedOrder], file_path: Path, tz: Optional[tzinfo] = None) -> int:
    """
    Write the CSV report to a file (UTF-8 with BOM for spreadsheet apps).

    Returns:
        Number of data rows written
    """
    df = build_dataframe(history, tz)
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(file_path, index=False, encoding='utf-8-sig', lineterminator='\n')
    logger.info(f"Exported {len(df)} rows to {file_path}")
    return len(df)


def export_xlsx(history: Iterable[PackedOrder], file_path: Path, tz: Optional[tzinfo] = None) -> int:
    """
    Write the same report as an Excel workbook.

    Rows of every other order are shaded so order boundaries stand out.

    Returns:
        Number of data rows written
    """
    df = build_dataframe(history, tz)
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    with pd.ExcelWriter(file_path, engine='openpyxl') as writer:
        df.to_excel(writer, index=False, sheet_name=XLSX_SHEET_NAME)
        worksheet = writer.sheets[XLSX_SHEET_NAME]
        green_fill = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")

        shaded = False
        previous_order = None
        for row_idx, order_id in enumerate(df['order_id'], start=2):
            if order_id != previous_order:
                shaded = not shaded
                previous_order = order_id
            if shaded:
                for cell in worksheet[row_idx]:
                    cell.fill = green_fill

    logger.info(f"Exported {len(df)} rows to {file_path}")
    return len(df)
