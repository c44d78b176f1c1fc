"""
Test file for decoding DBF records and field values.
Covers numeric coercion, blank and garbage fields, deleted rows and
records cut off by a truncated file.
"""

import datetime
import unittest

from dbf_fixtures import build_dbf, build_sales_dbf, sales_row, sample_sales_rows, SALES_FIELDS
from dbf_module import (
    DBFColumn, decode_text, decode_numeric, dbf_field_decode, dbf_record_offset,
    dbf_is_deleted, dbf_file_open_bytes, dbf_file_read_record, dbf_file_read_record_strict,
    dbf_file_is_row_deleted, dbf_file_get_actual_row_count,
    parse_date, parse_bool, normalize_date_key, TruncatedRecordError
)


class TestFieldDecoding(unittest.TestCase):
    """Test single field decoding."""

    def test_decode_text_trims(self):
        self.assertEqual(decode_text(b'  DOE JANE   '), 'DOE JANE')
        self.assertEqual(decode_text(b'ABC\x00\x00\x00'), 'ABC')
        self.assertEqual(decode_text(b'          '), '')

    def test_decode_text_latin1(self):
        """Non-UTF8 bytes decode without errors."""
        self.assertEqual(decode_text(b'MU\xd1OZ '), 'MUÑOZ')

    def test_decode_numeric(self):
        self.assertEqual(decode_numeric(b'    100.00'), 100.0)
        self.assertEqual(decode_numeric(b'-12.5     '), -12.5)
        self.assertEqual(decode_numeric(b'    250000'), 250000.0)
        self.assertEqual(decode_numeric(b'+7'), 7.0)

    def test_decode_numeric_blank(self):
        self.assertIsNone(decode_numeric(b'          '))
        self.assertIsNone(decode_numeric(b'\x00\x00\x00'))
        self.assertIsNone(decode_numeric(b''))

    def test_decode_numeric_garbage(self):
        self.assertIsNone(decode_numeric(b'12AB'))
        self.assertIsNone(decode_numeric(b'*********'))
        self.assertIsNone(decode_numeric(b'nan'))
        self.assertIsNone(decode_numeric(b'inf'))

    def test_decode_numeric_non_ascii(self):
        """Bytes >= 0x80 make the value unknown."""
        self.assertIsNone(decode_numeric(b'1\xb200'))
        self.assertIsNone(decode_numeric(b'\xff\xff'))

    def test_field_decode_reads_one_field(self):
        amt = DBFColumn(name="AMT", field_type="N", length=6, decimals=2, offset=4)
        name = DBFColumn(name="NM", field_type="C", length=3, decimals=0, offset=1)
        buf = b'xx' + b' ABC 12.50' + b'yy'
        self.assertEqual(dbf_field_decode(buf, 2, amt), 12.5)
        self.assertEqual(dbf_field_decode(buf, 2, name), 'ABC')

    def test_other_types_are_strings(self):
        date_field = DBFColumn(name="D", field_type="D", length=8, decimals=0, offset=1)
        logical = DBFColumn(name="L", field_type="L", length=1, decimals=0, offset=9)
        buf = b' 20230518T'
        self.assertEqual(dbf_field_decode(buf, 0, date_field), '20230518')
        self.assertEqual(dbf_field_decode(buf, 0, logical), 'T')

    def test_float_type_is_numeric(self):
        field = DBFColumn(name="F", field_type="F", length=5, decimals=1, offset=1)
        self.assertEqual(dbf_field_decode(b' 3.5  ', 0, field), 3.5)


class TestRecordDecoding(unittest.TestCase):
    """Test whole-record access through a DBFFile."""

    def setUp(self):
        self.rows = sample_sales_rows()
        self.dbf = dbf_file_open_bytes(build_sales_dbf(self.rows, deleted=[3]))

    def tearDown(self):
        self.dbf.source.close()

    def test_keys_match_schema(self):
        names = [f[0] for f in SALES_FIELDS]
        for index in range(len(self.rows)):
            record = dbf_file_read_record(self.dbf, index)
            self.assertEqual(list(record.keys()), names)

    def test_values(self):
        record = dbf_file_read_record(self.dbf, 0)
        self.assertEqual(record['PIN'], '1000000001')
        self.assertEqual(record['NBHC'], '203.00')
        self.assertEqual(record['S_DATE'], '20210115')
        self.assertEqual(record['S_AMT'], 185000.0)
        self.assertEqual(record['GRANTEE'], 'DOE JANE')

    def test_blank_numeric_is_none(self):
        record = dbf_file_read_record(self.dbf, 7)
        self.assertIsNone(record['S_AMT'])
        self.assertEqual(record['S_DATE'], '')

    def test_record_offset(self):
        header = self.dbf.header
        self.assertEqual(dbf_record_offset(header, 0), header.header_size)
        self.assertEqual(dbf_record_offset(header, 5), header.header_size + 5 * header.record_size)

    def test_deleted_flag(self):
        self.assertTrue(dbf_file_is_row_deleted(self.dbf, 3))
        self.assertFalse(dbf_file_is_row_deleted(self.dbf, 2))
        raw = self.dbf.source.read_at(dbf_record_offset(self.dbf.header, 3), self.dbf.header.record_size)
        self.assertTrue(dbf_is_deleted(raw, 0))

    def test_deleted_record_still_decodes(self):
        record = dbf_file_read_record(self.dbf, 3)
        self.assertEqual(record['PIN'], '1000000004')

    def test_out_of_range(self):
        self.assertIsNone(dbf_file_read_record(self.dbf, len(self.rows)))
        self.assertIsNone(dbf_file_read_record(self.dbf, -1))


class TestTruncatedFile(unittest.TestCase):
    """A file shorter than its header claims."""

    def setUp(self):
        rows = sample_sales_rows()
        image = build_sales_dbf(rows, eof_marker=False)
        record_size = 1 + sum(f[2] for f in SALES_FIELDS)
        # Keep 6 full records and half of the 7th
        self.cut = len(image) - 4 * record_size + record_size // 2
        self.dbf = dbf_file_open_bytes(image[:self.cut])

    def test_declared_vs_readable(self):
        self.assertEqual(self.dbf.header.record_count, 10)
        self.assertEqual(dbf_file_get_actual_row_count(self.dbf), 6)

    def test_truncated_record_is_none(self):
        self.assertIsNotNone(dbf_file_read_record(self.dbf, 5))
        self.assertIsNone(dbf_file_read_record(self.dbf, 6))
        self.assertIsNone(dbf_file_read_record(self.dbf, 9))

    def test_strict_read_raises(self):
        with self.assertRaises(TruncatedRecordError):
            dbf_file_read_record_strict(self.dbf, 6)


class TestValueHelpers(unittest.TestCase):
    """Test date and logical helpers."""

    def test_parse_date(self):
        self.assertEqual(parse_date('20230518'), datetime.date(2023, 5, 18))
        self.assertIsNone(parse_date(''))
        self.assertIsNone(parse_date('2023051'))
        self.assertIsNone(parse_date('20231340'))
        self.assertIsNone(parse_date('ABCDEFGH'))

    def test_parse_bool(self):
        self.assertTrue(parse_bool('T'))
        self.assertTrue(parse_bool('y'))
        self.assertFalse(parse_bool('F'))
        self.assertFalse(parse_bool('N'))
        self.assertIsNone(parse_bool('?'))
        self.assertIsNone(parse_bool(' '))

    def test_normalize_date_key(self):
        self.assertEqual(normalize_date_key('2023-01-05'), '20230105')
        self.assertEqual(normalize_date_key('20230105'), '20230105')
        self.assertEqual(normalize_date_key(datetime.date(2023, 1, 5)), '20230105')
        self.assertEqual(normalize_date_key(''), '')
        self.assertEqual(normalize_date_key(None), '')

    def test_normalize_date_key_invalid(self):
        with self.assertRaises(ValueError):
            normalize_date_key('01/05/2023')
        with self.assertRaises(ValueError):
            normalize_date_key('2023-02-30')


class TestFieldWidths(unittest.TestCase):
    """Values longer than a field are cut at the field width."""

    def test_wide_value(self):
        fields = [("NM", "C", 4, 0), ("N", "N", 3, 0)]
        with dbf_file_open_bytes(build_dbf(fields, [["ABCDEFG", 12]])) as dbf:
            record = dbf_file_read_record(dbf, 0)
            self.assertEqual(record, {"NM": "ABCD", "N": 12.0})

    def test_single_row_sales(self):
        with dbf_file_open_bytes(build_sales_dbf([sales_row(pin="X", s_amt="abc")])) as dbf:
            self.assertIsNone(dbf_file_read_record(dbf, 0)['S_AMT'])


if __name__ == '__main__':
    unittest.main()
