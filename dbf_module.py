"""
Read-only access to dBase (.DBF) sales-record files.

This module parses the 32-byte file header and the field descriptor table,
and decodes fixed-width records on demand. Every operation takes an explicit
DBFFile handle, so any number of files can be open at the same time and
tests can work on synthetic in-memory images.
"""

import datetime
import struct
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Union

from dbf_errors import (
    DBFError, DBFFileNotFoundError, MalformedHeaderError,
    SchemaMismatchError, TruncatedRecordError, DBFNetworkError
)
from dbf_source import (
    BinaryRecordSource, BufferRecordSource, FileRecordSource,
    LoadConfig, ProgressCallback, download_dbf
)


# Constants
DBF_HEADER_SIZE = 32
DBF_FIELD_DESCRIPTOR_SIZE = 32
DBF_FIELD_NAME_SIZE = 11
DBF_FIELD_TERMINATOR = 0x0D
DBF_DELETED_FLAG = 0x2A  # '*'
DBF_NUMERIC_TYPES = ('N', 'F')

_TRIM_CHARS = ' \t\r\n\x00'


# Data structures
@dataclass
class DBFColumn:
    """Represents a column/field in a DBF file."""
    name: str  # Field name (max 11 chars)
    field_type: str  # 'C', 'N', 'D', 'L', etc.
    length: int  # Field length in bytes
    decimals: int  # Number of decimal places (for numeric)
    offset: int = 0  # offset within record; first field starts at 1


@dataclass
class DBFHeader:
    """Represents the header of a DBF file."""
    version: int = 0  # dBase version, e.g., 0x03 for dBase III
    year: int = 0  # Last update year (since 1900)
    month: int = 0  # Last update month
    day: int = 0  # Last update day
    record_count: int = 0  # Declared number of records
    header_size: int = 0  # Header size in bytes
    record_size: int = 0  # Record size in bytes
    fields: List[DBFColumn] = None  # Field descriptors
    field_count: int = 0  # Actual number of fields used

    def __post_init__(self):
        if self.fields is None:
            self.fields = []


class DBFFile:
    """An opened DBF file: the byte source plus its parsed header."""
    def __init__(self, source: BinaryRecordSource, header: DBFHeader, name: str = ''):
        self.source = source
        self.header = header
        self.name = name
        self.is_open = True

    def __enter__(self) -> 'DBFFile':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        dbf_file_close(self)

    def __repr__(self) -> str:
        return (f"DBFFile({self.name!r}, records={self.header.record_count}, "
                f"fields={self.header.field_count})")


# Header parsing
def parse_dbf_header(buf: bytes) -> DBFHeader:
    """
    Parse the fixed 32-byte file header.

    Args:
        buf: At least the first 32 bytes of the file

    Returns:
        A DBFHeader without fields

    Raises:
        MalformedHeaderError: If fewer than 32 bytes are available
    """
    if len(buf) < DBF_HEADER_SIZE:
        raise MalformedHeaderError(
            f"DBF header needs {DBF_HEADER_SIZE} bytes, got {len(buf)}")

    header = DBFHeader()
    header.version = buf[0]
    header.year = buf[1]
    header.month = buf[2]
    header.day = buf[3]
    header.record_count = struct.unpack_from("<L", buf, 4)[0]
    header.header_size = struct.unpack_from("<H", buf, 8)[0]
    header.record_size = struct.unpack_from("<H", buf, 10)[0]
    return header


def parse_dbf_fields(buf: bytes, header: DBFHeader) -> List[DBFColumn]:
    """
    Parse the field descriptor table that follows the 32-byte header.

    Descriptors are read until the 0x0D terminator or until the declared
    header size is reached. Offsets are assigned starting at 1, byte 0 of
    every record being the deletion flag. The parsed fields are stored on
    the header as well as returned.

    Args:
        buf: The header block (at least header.header_size bytes)
        header: Header returned by parse_dbf_header

    Returns:
        The list of field descriptors in record order

    Raises:
        MalformedHeaderError: If buf is shorter than the declared header
        SchemaMismatchError: If the table is empty or inconsistent with the
            declared header size or record size
    """
    if len(buf) < header.header_size:
        raise MalformedHeaderError(
            f"Header block is {len(buf)} bytes, header declares {header.header_size}")

    fields = []
    pos = DBF_HEADER_SIZE
    while pos + DBF_FIELD_DESCRIPTOR_SIZE <= header.header_size:
        if buf[pos] == DBF_FIELD_TERMINATOR:
            break
        desc = buf[pos:pos + DBF_FIELD_DESCRIPTOR_SIZE]
        name_bytes = bytes(desc[:DBF_FIELD_NAME_SIZE]).split(b'\x00', 1)[0]
        fields.append(DBFColumn(
            name=name_bytes.decode('ascii', errors='replace').strip(),
            field_type=chr(desc[11]),
            length=desc[16],
            decimals=desc[17],
        ))
        pos += DBF_FIELD_DESCRIPTOR_SIZE

    if not fields:
        raise SchemaMismatchError("DBF field table is empty")

    min_header_size = DBF_HEADER_SIZE + DBF_FIELD_DESCRIPTOR_SIZE * len(fields) + 1
    if header.header_size < min_header_size:
        raise SchemaMismatchError(
            f"Header size {header.header_size} too small for {len(fields)} fields "
            f"(need at least {min_header_size})")

    offset = 1  # First byte is delete flag
    for field in fields:
        field.offset = offset
        offset += field.length

    if offset > header.record_size:
        raise SchemaMismatchError(
            f"Fields need {offset} bytes per record, header declares {header.record_size}")

    header.fields = fields
    header.field_count = len(fields)
    return fields


def read_dbf_header(source: BinaryRecordSource) -> DBFHeader:
    """Read and validate the header and field table from a byte source."""
    header = parse_dbf_header(source.read_at(0, DBF_HEADER_SIZE))
    if header.header_size < DBF_HEADER_SIZE:
        raise MalformedHeaderError(f"Header size {header.header_size} is invalid")
    parse_dbf_fields(source.read_at(0, header.header_size), header)
    return header


# Opening / closing
def _open_source(source: BinaryRecordSource, name: str, verbose: bool) -> DBFFile:
    try:
        header = read_dbf_header(source)
    except Exception:
        source.close()
        raise

    dbf = DBFFile(source, header, name)
    if verbose:
        print(f"📂 Opened {name or 'DBF buffer'}: {header.record_count} records, "
              f"{header.field_count} fields, {header.record_size} bytes/record")
    return dbf


def dbf_file_open(filename: str, verbose: bool = False) -> DBFFile:
    """
    Open an existing DBF file for positioned reads.

    Args:
        filename: The path to the DBF file
        verbose: Print a one-line summary after opening

    Returns:
        A DBFFile handle

    Raises:
        DBFFileNotFoundError: If the file does not exist
        MalformedHeaderError, SchemaMismatchError: If the file is corrupt
    """
    return _open_source(FileRecordSource(filename), filename, verbose)


def dbf_file_open_bytes(data: Union[bytes, bytearray, memoryview],
                        name: str = '', verbose: bool = False) -> DBFFile:
    """Open a DBF image that is already held in memory."""
    return _open_source(BufferRecordSource(data), name, verbose)


def dbf_file_open_url(url: str, on_progress: Optional[ProgressCallback] = None,
                      config: Optional[LoadConfig] = None,
                      verbose: bool = False) -> DBFFile:
    """
    Download a DBF file into memory and open it.

    The whole file is held in memory; on_progress receives
    (bytes_received, total_bytes_or_None) after every chunk.
    """
    data = download_dbf(url, on_progress=on_progress, config=config)
    return _open_source(BufferRecordSource(data), url, verbose)


def dbf_file_close(dbf: DBFFile) -> None:
    """Close a DBF file."""
    if dbf and dbf.is_open:
        dbf.source.close()
        dbf.is_open = False


def dbf_file_find_field(dbf: DBFFile, field_name: str) -> Optional[DBFColumn]:
    """Find a field by name (case-insensitive)."""
    return find_field(dbf.header, field_name)


def find_field(header: DBFHeader, field_name: str) -> Optional[DBFColumn]:
    field_name_upper = field_name.upper()
    for field in header.fields:
        if field.name.upper() == field_name_upper:
            return field
    return None


def dbf_file_get_actual_row_count(dbf: DBFFile) -> int:
    """
    Number of complete records actually present in the source.

    This is the declared record count, capped by the data available, so a
    partially downloaded file reports the records that can be read.
    """
    header = dbf.header
    if header.record_size == 0:
        return 0
    available = max(0, dbf.source.size - header.header_size) // header.record_size
    return min(header.record_count, available)


# Record decoding
def decode_text(raw: bytes) -> str:
    """Decode a fixed-width slice as Latin-1 and trim whitespace and NUL padding."""
    return bytes(raw).decode('latin-1').strip(_TRIM_CHARS)


def decode_numeric(raw: bytes) -> Optional[float]:
    """
    Decode a fixed-width numeric field.

    Blank fields, non-numeric text and any byte outside 7-bit ASCII decode
    to None instead of raising.
    """
    raw = bytes(raw)
    if any(b >= 0x80 for b in raw):
        return None
    text = raw.decode('ascii').strip(_TRIM_CHARS)
    if not text:
        return None
    try:
        value = float(text)
    except ValueError:
        return None
    if value != value or value in (float('inf'), float('-inf')):
        return None
    return value


def decode_field_bytes(raw: bytes, field: DBFColumn) -> Any:
    if field.field_type.upper() in DBF_NUMERIC_TYPES:
        return decode_numeric(raw)
    return decode_text(raw)


def dbf_record_offset(header: DBFHeader, index: int) -> int:
    """Byte offset of record `index` (0-based) from the start of the file."""
    return header.header_size + index * header.record_size


def dbf_is_deleted(buf: bytes, record_offset: int) -> bool:
    """True if the record starting at record_offset carries the '*' flag."""
    return buf[record_offset] == DBF_DELETED_FLAG


def dbf_field_decode(buf: bytes, record_offset: int, field: DBFColumn) -> Any:
    """
    Decode one field of one record, touching only that field's bytes.

    Args:
        buf: Bytes holding the record
        record_offset: Offset of the record's deletion flag within buf
        field: The field to decode

    Returns:
        float or None for numeric fields, trimmed string otherwise
    """
    start = record_offset + field.offset
    return decode_field_bytes(buf[start:start + field.length], field)


def decode_record(raw: bytes, fields: List[DBFColumn]) -> Dict[str, Any]:
    """Decode a whole record held in raw (deletion flag at raw[0])."""
    return {field.name: dbf_field_decode(raw, 0, field) for field in fields}


def dbf_file_read_raw(dbf: DBFFile, index: int) -> Optional[bytes]:
    """Read the raw bytes of record `index`, or None if it is out of range or truncated."""
    header = dbf.header
    if index < 0 or index >= header.record_count:
        return None
    raw = dbf.source.read_at(dbf_record_offset(header, index), header.record_size)
    if len(raw) < header.record_size:
        return None
    return raw


def dbf_file_read_record(dbf: DBFFile, index: int) -> Optional[Dict[str, Any]]:
    """
    Decode record `index` into a field name -> value mapping.

    Args:
        dbf: The DBF file object
        index: Zero-based record index

    Returns:
        Mapping with exactly the schema's field names in schema order, or
        None if the record lies beyond the available data. Deleted records
        are decoded too; use dbf_file_is_row_deleted to check.
    """
    raw = dbf_file_read_raw(dbf, index)
    if raw is None:
        return None
    return decode_record(raw, dbf.header.fields)


def dbf_file_read_record_strict(dbf: DBFFile, index: int) -> Dict[str, Any]:
    """Like dbf_file_read_record, but raise TruncatedRecordError instead of returning None."""
    record = dbf_file_read_record(dbf, index)
    if record is None:
        raise TruncatedRecordError(
            f"Record {index} is beyond the available data "
            f"({dbf.source.size} bytes, {dbf.header.record_count} records declared)")
    return record


def dbf_file_is_row_deleted(dbf: DBFFile, index: int) -> bool:
    raw = dbf_file_read_raw(dbf, index)
    return raw is not None and dbf_is_deleted(raw, 0)


# Value helpers
def parse_date(text: str) -> Optional[datetime.date]:
    """Parse a YYYYMMDD date field; blank or invalid dates give None."""
    text = (text or '').strip()
    if len(text) != 8 or not text.isdigit():
        return None
    try:
        return datetime.date(int(text[:4]), int(text[4:6]), int(text[6:8]))
    except ValueError:
        return None


def parse_bool(text: str) -> Optional[bool]:
    """Parse a logical field: T/Y true, F/N false, blank or '?' unknown."""
    text = (text or '').strip()
    if not text:
        return None
    flag = text[0].upper()
    if flag in ('T', 'Y'):
        return True
    if flag in ('F', 'N'):
        return False
    return None


def normalize_date_key(value: Union[str, datetime.date, None]) -> str:
    """
    Convert a date to the YYYYMMDD key used by DBF date fields.

    Accepts datetime.date, 'YYYY-MM-DD' (HTML date inputs) or 'YYYYMMDD'.
    Empty input gives ''.

    Raises:
        ValueError: If the value is not a recognizable date
    """
    if value is None:
        return ''
    if isinstance(value, datetime.date):
        return value.strftime('%Y%m%d')
    text = str(value).strip()
    if not text:
        return ''
    key = text.replace('-', '')
    if len(key) != 8 or not key.isdigit() or parse_date(key) is None:
        raise ValueError(f"Not a date: {value!r}")
    return key
