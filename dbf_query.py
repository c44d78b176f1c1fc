"""
DBF Scan/Filter Module

Linear scans over the fixed-width records of an opened DBF file:
1. Each filter is compiled once against the schema into (offset, length, test)
2. Tests run directly on the raw bytes of the one field they need, so a
   candidate record is never fully decoded just to be rejected
3. Records are read in bounded blocks, newest first by default, and the scan
   stops as soon as `limit` matches are found

The result is a list of record indices (a view into the file), never decoded
records, so memory stays bounded whatever the file size.

Example use case:
    Most recent 50 qualified sales in neighborhood 203.00 since 2023
    - equal('NBHC', '203.00'), equal('QU', 'Q'), date_on_or_after('S_DATE', '2023-01-01')
    - dbf_scan(dbf, filters, limit=50)
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any, Optional, Callable, Tuple, Union

from dbf_module import (
    DBFFile, DBFHeader, DBF_DELETED_FLAG,
    decode_numeric, dbf_record_offset, dbf_file_get_actual_row_count,
    dbf_file_read_record, find_field, normalize_date_key
)


# Constants
RECENT_WINDOW = 5000  # Records looked at by the fast initial pass
COMPS_LIMIT = 50  # Max comps to return
COMPS_MIN_AMOUNT = 10000  # Below this a sale is a nominal transfer
SCAN_BLOCK_RECORDS = 4096  # Records read per source access

_TRIM_BYTES = b' \t\r\n\x00'

ByteTest = Callable[[bytes], bool]


class FilterOp(Enum):
    """Filter operation types."""
    EQUAL = "="  # Exact code match on the trimmed value
    CONTAINS = "CONTAINS"  # Case-insensitive substring
    GREATER_EQUAL = ">="  # Numeric threshold
    LESS_EQUAL = "<="  # Numeric threshold
    DATE_ON_OR_AFTER = "DATE>="  # Lexical YYYYMMDD comparison
    DATE_ON_OR_BEFORE = "DATE<="


class ScanDirection(Enum):
    BACKWARD = "backward"  # Newest (highest index) first
    FORWARD = "forward"


class Filter:
    """Single filter condition."""

    def __init__(self, field_name: str, op: FilterOp, value: Any):
        """
        Create a filter.

        Args:
            field_name: Field to filter on (case-insensitive)
            op: Filter operation
            value: Filter value (code, substring, number or date)
        """
        self.field_name = field_name
        self.op = op
        self.value = value

    def __repr__(self) -> str:
        return f"Filter({self.field_name!r}, {self.op.value}, {self.value!r})"

    def __eq__(self, other) -> bool:
        return (isinstance(other, Filter) and self.field_name == other.field_name
                and self.op == other.op and self.value == other.value)


# Helper functions for building filters

def equal(field: str, value: str) -> Filter:
    """Create EQUAL filter (exact match on the trimmed field text)."""
    return Filter(field, FilterOp.EQUAL, value)

def contains(field: str, text: str) -> Filter:
    """Create CONTAINS filter (case-insensitive substring)."""
    return Filter(field, FilterOp.CONTAINS, text)

def greater_equal(field: str, value: float) -> Filter:
    """Create numeric >= filter. Blank or unparsable values never match."""
    return Filter(field, FilterOp.GREATER_EQUAL, value)

def less_equal(field: str, value: float) -> Filter:
    """Create numeric <= filter. Blank or unparsable values never match."""
    return Filter(field, FilterOp.LESS_EQUAL, value)

def date_on_or_after(field: str, date) -> Filter:
    """
    Create date lower-bound filter.

    Example:
        date_on_or_after("S_DATE", "2023-01-01")  # Matches 20230101 and later
    """
    return Filter(field, FilterOp.DATE_ON_OR_AFTER, normalize_date_key(date))

def date_on_or_before(field: str, date) -> Filter:
    """Create date upper-bound filter."""
    return Filter(field, FilterOp.DATE_ON_OR_BEFORE, normalize_date_key(date))


@dataclass
class SalesFilter:
    """
    The explorer's filter form. Empty/zero inputs add no condition.

    Parcel substrings go to PIN and FOLIO separately; all conditions are
    combined with AND.
    """
    nbhc: str = ''
    min_date: str = ''
    max_date: str = ''
    min_amount: float = 0
    max_amount: float = 0
    buyer: str = ''
    seller: str = ''
    pin: str = ''
    folio: str = ''
    reason_code: str = ''
    qualified_only: bool = False
    vacant_improved: str = ''

    def to_filters(self) -> List[Filter]:
        filters = []
        if self.nbhc:
            filters.append(equal('NBHC', self.nbhc))
        if self.qualified_only:
            filters.append(equal('QU', 'Q'))
        if self.vacant_improved:
            filters.append(equal('VI', self.vacant_improved.upper()))
        if self.reason_code:
            filters.append(equal('REA_CD', self.reason_code))
        if self.min_date:
            filters.append(date_on_or_after('S_DATE', self.min_date))
        if self.max_date:
            filters.append(date_on_or_before('S_DATE', self.max_date))
        if self.min_amount:
            filters.append(greater_equal('S_AMT', self.min_amount))
        if self.max_amount:
            filters.append(less_equal('S_AMT', self.max_amount))
        if self.pin:
            filters.append(contains('PIN', self.pin))
        if self.folio:
            filters.append(contains('FOLIO', self.folio))
        if self.buyer:
            filters.append(contains('GRANTEE', self.buyer))
        if self.seller:
            filters.append(contains('GRANTOR', self.seller))
        return filters


def _byte_test(op: FilterOp, value: Any) -> ByteTest:
    """Build the raw-bytes test for one filter condition."""
    if op == FilterOp.EQUAL:
        target = str(value).strip().encode('latin-1', errors='replace')
        return lambda raw: raw.strip(_TRIM_BYTES) == target

    if op == FilterOp.CONTAINS:
        needle = str(value).lower()
        return lambda raw: needle in raw.decode('latin-1').lower()

    if op in (FilterOp.GREATER_EQUAL, FilterOp.LESS_EQUAL):
        threshold = float(value)
        if op == FilterOp.GREATER_EQUAL:
            return lambda raw: _numeric_at_least(raw, threshold)
        return lambda raw: _numeric_at_most(raw, threshold)

    if op in (FilterOp.DATE_ON_OR_AFTER, FilterOp.DATE_ON_OR_BEFORE):
        key = normalize_date_key(value).encode('ascii')
        if op == FilterOp.DATE_ON_OR_AFTER:
            return lambda raw: _date_key(raw) >= key
        return lambda raw: b'' < _date_key(raw) <= key

    raise ValueError(f"Unsupported filter operation: {op}")


def _numeric_at_least(raw: bytes, threshold: float) -> bool:
    value = decode_numeric(raw)
    return value is not None and value >= threshold


def _numeric_at_most(raw: bytes, threshold: float) -> bool:
    value = decode_numeric(raw)
    return value is not None and value <= threshold


def _date_key(raw: bytes) -> bytes:
    return raw.strip(_TRIM_BYTES)


def compile_filters(header: DBFHeader, filters: List[Filter],
                    verbose: bool = False) -> List[Tuple[int, int, ByteTest]]:
    """
    Resolve filters against the schema.

    Args:
        header: Parsed header with fields
        filters: Conditions to combine with AND
        verbose: Report conditions on fields the file does not have

    Returns:
        List of (field offset, field length, test) tuples. Conditions on
        fields missing from the file are dropped.
    """
    compiled = []
    for flt in filters:
        field = find_field(header, flt.field_name)
        if field is None:
            if verbose:
                print(f"⚠️  Field '{flt.field_name}' not in file, ignoring {flt}")
            continue
        compiled.append((field.offset, field.length, _byte_test(flt.op, flt.value)))
    return compiled


def _matches(block: bytes, rec: int, compiled: List[Tuple[int, int, ByteTest]]) -> bool:
    for offset, length, test in compiled:
        start = rec + offset
        if not test(block[start:start + length]):
            return False
    return True


def dbf_scan(dbf: DBFFile, filters: Optional[List[Filter]] = None,
             direction: Union[ScanDirection, str] = ScanDirection.BACKWARD,
             start_index: Optional[int] = None, end_index: Optional[int] = None,
             limit: Optional[int] = None, verbose: bool = False) -> List[int]:
    """
    Scan records and return the indices of those matching every filter.

    Args:
        dbf: Open DBF file
        filters: Conditions combined with AND (none = every active record)
        direction: BACKWARD visits end_index-1 down to start_index,
            FORWARD the other way round
        start_index: First index of the window (default 0)
        end_index: One past the last index of the window (default record count)
        limit: Stop once this many matches are found
        verbose: Print progress messages

    Returns:
        Matching record indices in scan order. Deleted records are never
        returned. Records beyond the end of the available data (a truncated
        file) are not reachable and are left out without error.
    """
    direction = ScanDirection(direction)
    header = dbf.header
    record_size = header.record_size

    start = max(0, start_index or 0)
    end = header.record_count if end_index is None else min(end_index, header.record_count)
    readable = dbf_file_get_actual_row_count(dbf)
    if readable < end:
        if verbose:
            print(f"⚠️  Only {readable} of {header.record_count} records are readable")
        end = readable

    if start >= end or (limit is not None and limit <= 0):
        return []

    compiled = compile_filters(header, filters or [], verbose=verbose)
    if verbose:
        print(f"🔍 Scanning records {start}..{end - 1} {direction.value} "
              f"with {len(compiled)} condition(s)...")

    results = []
    if direction == ScanDirection.BACKWARD:
        blocks = ((max(start, hi - SCAN_BLOCK_RECORDS), hi)
                  for hi in range(end, start, -SCAN_BLOCK_RECORDS))
    else:
        blocks = ((lo, min(end, lo + SCAN_BLOCK_RECORDS))
                  for lo in range(start, end, SCAN_BLOCK_RECORDS))

    for lo, hi in blocks:
        block = dbf.source.read_at(dbf_record_offset(header, lo), (hi - lo) * record_size)
        full = len(block) // record_size
        if direction == ScanDirection.BACKWARD:
            indices = range(min(hi, lo + full) - 1, lo - 1, -1)
        else:
            indices = range(lo, lo + full)

        for i in indices:
            rec = (i - lo) * record_size
            if block[rec] == DBF_DELETED_FLAG:
                continue
            if not _matches(block, rec, compiled):
                continue
            results.append(i)
            if limit is not None and len(results) >= limit:
                if verbose:
                    print(f"✅ Scan stopped at limit: {len(results)} matches")
                return results

        if direction == ScanDirection.FORWARD and full < hi - lo:
            break

    if verbose:
        print(f"✅ Scan complete: {len(results)} matches")
    return results


def dbf_scan_recent(dbf: DBFFile, filters: Optional[List[Filter]] = None,
                    window: int = RECENT_WINDOW, limit: Optional[int] = None,
                    verbose: bool = False) -> List[int]:
    """Fast first pass: scan only the last `window` records, newest first."""
    start = max(0, dbf.header.record_count - window)
    return dbf_scan(dbf, filters, ScanDirection.BACKWARD, start_index=start,
                    limit=limit, verbose=verbose)


def find_comps(dbf: DBFFile, nbhc: str, min_date=None, qualified_only: bool = False,
               min_amount: float = COMPS_MIN_AMOUNT,
               limit: int = COMPS_LIMIT) -> List[Dict[str, Any]]:
    """
    Find comparable sales in a neighborhood, most recent first.

    Args:
        dbf: Open sales DBF file
        nbhc: Neighborhood code (exact match)
        min_date: Only sales on or after this date
        qualified_only: Only arm's-length (QU = 'Q') sales
        min_amount: Drop nominal transfers below this amount
        limit: Max comps to return

    Returns:
        Decoded records with S_AMT as a number. A file without an NBHC
        field gives an empty list.
    """
    if find_field(dbf.header, 'NBHC') is None:
        return []

    filters = [equal('NBHC', nbhc)]
    if qualified_only:
        filters.append(equal('QU', 'Q'))
    if min_date:
        filters.append(date_on_or_after('S_DATE', min_date))
    if min_amount:
        filters.append(greater_equal('S_AMT', min_amount))

    comps = []
    for index in dbf_scan(dbf, filters, limit=limit):
        record = dbf_file_read_record(dbf, index)
        amount = record.get('S_AMT')
        if isinstance(amount, str):
            record['S_AMT'] = decode_numeric(amount.encode('latin-1', errors='replace'))
        comps.append(record)
    return comps
