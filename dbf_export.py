"""
Batch materialization and CSV export of scan results.

Scan results are lists of record indices; records are decoded only when a
batch is displayed or exported.
"""

import csv
import datetime
import io
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Dict, Any, Optional

from tqdm.auto import tqdm

from dbf_module import DBFFile, DBFColumn, dbf_file_read_record, decode_numeric


AMOUNT_FIELD = 'S_AMT'


def materialize_batch(dbf: DBFFile, indices: List[int], start: int, count: int) -> List[Dict[str, Any]]:
    """
    Decode the records for indices[start:start + count], in order.

    Called repeatedly with an increasing start this pages through a scan
    result without decoding earlier batches again. Indices that point past
    the available data are skipped.
    """
    if start < 0 or count <= 0:
        return []
    rows = []
    for index in indices[start:start + count]:
        record = dbf_file_read_record(dbf, index)
        if record is not None:
            rows.append(record)
    return rows


def format_display_value(field: DBFColumn, value: Any) -> str:
    """
    Render a decoded value as text.

    The sale amount gets thousands grouping without fraction digits, halves
    rounded away from zero (250000.0 -> '250,000', 100.5 -> '101'). A text
    amount column is parsed first and grouped when it holds a number.
    None renders as ''.
    """
    if value is None:
        return ''
    if field.name == AMOUNT_FIELD:
        amount = value
        if isinstance(amount, str):
            amount = decode_numeric(amount.encode('latin-1', errors='replace'))
        if isinstance(amount, (int, float)):
            rounded = Decimal(repr(amount)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
            return f"{rounded:,.0f}"
    if isinstance(value, float):
        return f"{value:.{field.decimals}f}"
    return str(value)


def format_row(fields: List[DBFColumn], record: Dict[str, Any]) -> List[str]:
    return [format_display_value(field, record.get(field.name)) for field in fields]


def export_csv(dbf: DBFFile, indices: List[int], show_progress: bool = False) -> str:
    """
    Export every record in a scan result as CSV text.

    One header row of field names, then one row per index. Every field is
    quoted and embedded quotes are doubled; lines end with '\\n'.

    Args:
        dbf: Open DBF file
        indices: Scan result (all of it, not just the displayed page)
        show_progress: Show a tqdm progress bar

    Returns:
        The CSV text
    """
    fields = dbf.header.fields
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow([field.name for field in fields])

    it = tqdm(indices, desc="CSV export", unit="rec", leave=False) if show_progress else indices
    for index in it:
        record = dbf_file_read_record(dbf, index)
        if record is None:
            continue
        writer.writerow(format_row(fields, record))

    return out.getvalue()


def default_export_name(today: Optional[datetime.date] = None) -> str:
    today = today or datetime.date.today()
    return f"sales_export_{today.isoformat()}.csv"


def write_csv_file(dbf: DBFFile, indices: List[int], path: Optional[str] = None,
                   show_progress: bool = False) -> str:
    """
    Write the CSV export to a file.

    Args:
        dbf: Open DBF file
        indices: Scan result
        path: Output path (default sales_export_YYYY-MM-DD.csv)
        show_progress: Show a tqdm progress bar

    Returns:
        The path written
    """
    path = path or default_export_name()
    text = export_csv(dbf, indices, show_progress=show_progress)
    with open(path, 'w', encoding='utf-8', newline='') as f:
        f.write(text)
    return path
