#!/usr/bin/env python3
"""
Sales-records DBF explorer.

ExplorerSession holds the active scan result of one open file and pages
through it in batches (infinite scroll). The command line wraps it:

    dbf-explorer info allsales.dbf
    dbf-explorer scan allsales.dbf --nbhc 203.00 --min-date 2023-01-01 --qualified
    dbf-explorer comps allsales.dbf 203.00 --since 2023-01-01
    dbf-explorer export https://example.org/DBF/allsales.dbf --buyer smith -o smith.csv

The source may be a local path or an http(s) URL; URLs are downloaded into
memory with a progress bar. DBF_EXPLORER_URL sets the default source and
DBF_EXPLORER_TIMEOUT the download timeout in seconds.
"""

import argparse
import os
import sys
import threading
from typing import List, Dict, Any, Optional

from tqdm.auto import tqdm

from dbf_errors import (
    DBFError, DBFFileNotFoundError, DBFNetworkError,
    MalformedHeaderError, SchemaMismatchError
)
from dbf_export import export_csv, format_row, materialize_batch, write_csv_file
from dbf_module import (
    DBFFile, dbf_file_open, dbf_file_open_url, dbf_file_close,
    dbf_file_get_actual_row_count, dbf_file_read_record, dbf_file_is_row_deleted
)
from dbf_query import (
    COMPS_LIMIT, COMPS_MIN_AMOUNT, SalesFilter, dbf_scan, dbf_scan_recent, find_comps
)
from dbf_source import LoadConfig


BATCH_SIZE = 100
DEFAULT_DBF_URL = 'DBF/allsales.dbf'

FIELD_DESCRIPTIONS = {
    'PIN': 'Property Identification Number\nUnique ID for the parcel.',
    'FOLIO': 'Folio Number\nAlternative ID used by County.',
    'DOR_CODE': 'Dept. of Revenue Code\nUse Code (e.g., 0100 = SF Residential).',
    'NBHC': 'Neighborhood Code\nAppraisal neighborhood ID.',
    'S_DATE': 'Sale Date\nYYYYMMDD format.',
    'VI': 'Vacant / Improved\nV = Vacant Land\nI = Improved (Building)',
    'QU': "Qualified / Unqualified\nQ = Arm's Length (Market Value)\n"
          "U = Unqualified (e.g. Foreclosure, Family Transfer)",
    'REA_CD': 'Reason Code\nWhy sale is qualified/unqualified.',
    'S_AMT': 'Sale Amount\nPrice stored in county records.',
    'SUB': 'Subdivision Code',
    'STR': 'Section-Township-Range',
    'S_TYPE': 'Sale Instrument Type\nWD = Warranty Deed, QC = Quit Claim, etc.',
    'OR_BK': 'Official Record Book',
    'OR_PG': 'Official Record Page',
    'GRANTOR': 'Seller Name',
    'GRANTEE': 'Buyer Name',
    'DOC_NUM': 'Document Number',
}


class ExplorerSession:
    """Active scan result of one open file, displayed in batches."""

    def __init__(self, dbf: DBFFile, batch_size: int = BATCH_SIZE):
        self.dbf = dbf
        self.batch_size = batch_size
        self.filtered_indices: List[int] = []
        self.display_limit = 0
        self._generation = 0
        self._lock = threading.Lock()

    def begin_scan(self) -> int:
        """Start a new scan; any scan begun earlier becomes stale."""
        with self._lock:
            self._generation += 1
            return self._generation

    def complete_scan(self, token: int, indices: List[int]) -> bool:
        """
        Install a scan result unless a newer scan has begun since `token`.

        Returns:
            True if the result became the active one
        """
        with self._lock:
            if token != self._generation:
                return False
            self.filtered_indices = indices
            self.display_limit = 0
            return True

    def run_filter_scan(self, sales_filter: Optional[SalesFilter] = None,
                        recent_only: bool = False) -> List[Dict[str, Any]]:
        """
        Run a filter scan, make it the active result and return the first batch.

        recent_only restricts the scan to the newest records (the fast pass
        used right after loading).
        """
        token = self.begin_scan()
        filters = (sales_filter or SalesFilter()).to_filters()
        if recent_only:
            indices = dbf_scan_recent(self.dbf, filters)
        else:
            indices = dbf_scan(self.dbf, filters)
        if not self.complete_scan(token, indices):
            return []
        return self.load_more()

    def load_more(self) -> List[Dict[str, Any]]:
        """Next batch of the active result; empty once everything is shown."""
        with self._lock:
            indices = self.filtered_indices
            start = self.display_limit
            if start >= len(indices):
                return []
            self.display_limit = start + self.batch_size
        return materialize_batch(self.dbf, indices, start, self.batch_size)

    @property
    def has_more(self) -> bool:
        with self._lock:
            return self.display_limit < len(self.filtered_indices)

    def status_text(self) -> str:
        return f"Rows: {len(self.filtered_indices)} (Filtered from {self.dbf.header.record_count})"

    def export_csv(self, show_progress: bool = False) -> str:
        return export_csv(self.dbf, self.filtered_indices, show_progress=show_progress)


# Command line

def load_config_from_env() -> LoadConfig:
    timeout = os.environ.get('DBF_EXPLORER_TIMEOUT')
    if timeout:
        return LoadConfig(timeout=float(timeout))
    return LoadConfig()


def open_source(source: str, show_progress: bool = True) -> DBFFile:
    """Open a local path or download an http(s) URL."""
    if not source.lower().startswith(('http://', 'https://')):
        return dbf_file_open(source)

    bar = tqdm(desc="Fetching DBF", unit="B", unit_scale=True, leave=False) if show_progress else None

    def on_progress(received: int, total: Optional[int]) -> None:
        if total and bar.total != total:
            bar.total = total
        bar.update(received - bar.n)

    try:
        return dbf_file_open_url(source, on_progress=on_progress if bar is not None else None,
                                 config=load_config_from_env())
    finally:
        if bar is not None:
            bar.close()


def print_table(dbf: DBFFile, rows: List[Dict[str, Any]]) -> None:
    fields = dbf.header.fields
    print(" | ".join(field.name for field in fields))
    for row in rows:
        print(" | ".join(format_row(fields, row)))


def sales_filter_from_args(args) -> SalesFilter:
    return SalesFilter(
        nbhc=args.nbhc or '',
        min_date=args.min_date or '',
        max_date=args.max_date or '',
        min_amount=args.min_amount or 0,
        max_amount=args.max_amount or 0,
        buyer=args.buyer or '',
        seller=args.seller or '',
        pin=args.pin or '',
        folio=args.folio or '',
        reason_code=args.reason_code or '',
        qualified_only=args.qualified,
        vacant_improved=args.vi or '',
    )


def cmd_info(dbf: DBFFile, args) -> int:
    header = dbf.header
    readable = dbf_file_get_actual_row_count(dbf)
    print("--- DBF Header ---")
    print(f"Version: {header.version}")
    print(f"Total Records: {header.record_count}")
    if readable < header.record_count:
        print(f"⚠️  Readable Records: {readable} (file is truncated)")
    print(f"Header Length: {header.header_size}")
    print(f"Record Length: {header.record_size}")

    print("\n--- Field Definitions ---")
    for field in header.fields:
        desc = FIELD_DESCRIPTIONS.get(field.name, '').split('\n')[0]
        print(f"{field.name.ljust(12)} | Type: {field.field_type} | Len: {field.length}"
              f"{' | ' + desc if desc else ''}")

    count = args.count
    for title, start in (("First", 0), ("Last", max(0, readable - count))):
        print(f"\n--- {title} {count} Records ---")
        for index in range(start, min(start + count, readable)):
            if dbf_file_is_row_deleted(dbf, index):
                continue
            print(f"[{index}]", dbf_file_read_record(dbf, index))
    return 0


def cmd_scan(dbf: DBFFile, args) -> int:
    filters = sales_filter_from_args(args).to_filters()
    if args.recent:
        indices = dbf_scan_recent(dbf, filters, limit=args.limit, verbose=args.verbose)
    else:
        indices = dbf_scan(dbf, filters, direction='forward' if args.forward else 'backward',
                           limit=args.limit, verbose=args.verbose)
    print(f"Rows: {len(indices)} (Filtered from {dbf.header.record_count})")
    print_table(dbf, materialize_batch(dbf, indices, 0, args.show))
    return 0


def cmd_comps(dbf: DBFFile, args) -> int:
    comps = find_comps(dbf, args.nbhc, min_date=args.since, qualified_only=args.qualified,
                       min_amount=args.min_amount, limit=args.limit)
    print(f"Comps in {args.nbhc}: {len(comps)}")
    print_table(dbf, comps)
    return 0


def cmd_export(dbf: DBFFile, args) -> int:
    filters = sales_filter_from_args(args).to_filters()
    indices = dbf_scan(dbf, filters, limit=args.limit, verbose=args.verbose)
    if not indices:
        print("No data to download.")
        return 1
    path = write_csv_file(dbf, indices, args.output, show_progress=not args.no_progress)
    print(f"💾 Exported {len(indices)} rows to {path}")
    return 0


def _add_filter_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--nbhc", help="neighborhood code (exact)")
    p.add_argument("--min-date", help="sale date on or after (YYYY-MM-DD or YYYYMMDD)")
    p.add_argument("--max-date", help="sale date on or before")
    p.add_argument("--min-amount", type=float, help="minimum sale amount")
    p.add_argument("--max-amount", type=float, help="maximum sale amount")
    p.add_argument("--buyer", help="grantee name contains")
    p.add_argument("--seller", help="grantor name contains")
    p.add_argument("--pin", help="parcel id contains")
    p.add_argument("--folio", help="folio contains")
    p.add_argument("--reason-code", help="REA_CD (exact)")
    p.add_argument("--vi", choices=["V", "I", "v", "i"], help="vacant/improved")
    p.add_argument("--qualified", action="store_true", help="qualified sales only")
    p.add_argument("--limit", type=int, help="stop after this many matches")
    p.add_argument("-v", "--verbose", action="store_true")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dbf-explorer", description="Explore a county sales DBF file.")
    parser.add_argument("--no-progress", action="store_true", help="no download progress bar")
    sub = parser.add_subparsers(dest="command", required=True)

    default_source = os.environ.get('DBF_EXPLORER_URL', DEFAULT_DBF_URL)

    p = sub.add_parser("info", help="header, fields and sample records")
    p.add_argument("source", nargs="?", default=default_source)
    p.add_argument("--count", type=int, default=5)
    p.set_defaults(func=cmd_info)

    p = sub.add_parser("scan", help="filter records, newest first")
    p.add_argument("source", nargs="?", default=default_source)
    _add_filter_args(p)
    p.add_argument("--recent", action="store_true", help="only the most recent records")
    p.add_argument("--forward", action="store_true", help="oldest first")
    p.add_argument("--show", type=int, default=BATCH_SIZE, help="rows to print")
    p.set_defaults(func=cmd_scan)

    p = sub.add_parser("comps", help="comparable sales in a neighborhood")
    p.add_argument("source")
    p.add_argument("nbhc")
    p.add_argument("--since", help="sale date on or after")
    p.add_argument("--qualified", action="store_true")
    p.add_argument("--min-amount", type=float, default=COMPS_MIN_AMOUNT)
    p.add_argument("--limit", type=int, default=COMPS_LIMIT)
    p.set_defaults(func=cmd_comps)

    p = sub.add_parser("export", help="export filtered records to CSV")
    p.add_argument("source", nargs="?", default=default_source)
    _add_filter_args(p)
    p.add_argument("-o", "--output", help="CSV path (default sales_export_YYYY-MM-DD.csv)")
    p.set_defaults(func=cmd_export)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        dbf = open_source(args.source, show_progress=not args.no_progress)
    except DBFFileNotFoundError as e:
        print(f"❌ Not found: {e}", file=sys.stderr)
        return 2
    except (MalformedHeaderError, SchemaMismatchError) as e:
        print(f"❌ Corrupt DBF file: {e}", file=sys.stderr)
        return 3
    except DBFNetworkError as e:
        print(f"❌ Network failure: {e}", file=sys.stderr)
        return 4
    except DBFError as e:
        print(f"❌ Error opening DBF file: {e}", file=sys.stderr)
        return 1

    try:
        return args.func(dbf, args)
    except ValueError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    finally:
        dbf_file_close(dbf)


if __name__ == "__main__":
    sys.exit(main())
