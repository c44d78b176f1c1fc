"""
Tests for the byte sources: local files, in-memory buffers and network
downloads (requests is patched, nothing goes over the wire).
"""

import os
import tempfile
import unittest
from unittest import mock

import requests

from dbf_fixtures import build_sales_dbf, sample_sales_rows
from dbf_errors import DBFFileNotFoundError, DBFNetworkError
from dbf_module import dbf_file_open, dbf_file_open_url, dbf_file_close, dbf_file_read_record
from dbf_source import BufferRecordSource, FileRecordSource, LoadConfig, download_dbf


def fake_response(status_code=200, chunks=(), content_length=None, reason="OK"):
    response = mock.MagicMock()
    response.status_code = status_code
    response.reason = reason
    response.headers = {} if content_length is None else {'content-length': str(content_length)}
    response.iter_content.return_value = iter(chunks)
    return response


class TestBufferSource(unittest.TestCase):
    """Test reads over in-memory bytes."""

    def test_read_at(self):
        source = BufferRecordSource(b'0123456789')
        self.assertEqual(source.size, 10)
        self.assertEqual(source.read_at(2, 3), b'234')

    def test_short_read_at_end(self):
        source = BufferRecordSource(b'0123456789')
        self.assertEqual(source.read_at(8, 5), b'89')
        self.assertEqual(source.read_at(10, 5), b'')
        self.assertEqual(source.read_at(50, 5), b'')

    def test_bytearray(self):
        source = BufferRecordSource(bytearray(b'abc'))
        self.assertEqual(source.read_at(0, 3), b'abc')


class TestFileSource(unittest.TestCase):
    """Test positioned reads over a local file."""

    def setUp(self):
        self.test_files = []

    def tearDown(self):
        for filename in self.test_files:
            if os.path.exists(filename):
                os.remove(filename)

    def write_temp(self, data: bytes) -> str:
        fd, path = tempfile.mkstemp(suffix='.DBF')
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        self.test_files.append(path)
        return path

    def test_read_at(self):
        path = self.write_temp(b'0123456789')
        with FileRecordSource(path) as source:
            self.assertEqual(source.size, 10)
            self.assertEqual(source.read_at(3, 4), b'3456')
            self.assertEqual(source.read_at(0, 1), b'0')

    def test_short_read(self):
        path = self.write_temp(b'0123456789')
        with FileRecordSource(path) as source:
            self.assertEqual(source.read_at(7, 10), b'789')
            self.assertEqual(source.read_at(10, 1), b'')

    def test_missing_file(self):
        with self.assertRaises(DBFFileNotFoundError):
            FileRecordSource('/nonexistent/allsales.dbf')

    def test_missing_file_is_file_not_found(self):
        """Callers catching FileNotFoundError see it too."""
        with self.assertRaises(FileNotFoundError):
            dbf_file_open('/nonexistent/allsales.dbf')

    def test_open_file(self):
        rows = sample_sales_rows()
        path = self.write_temp(build_sales_dbf(rows))
        dbf = dbf_file_open(path)
        try:
            self.assertEqual(dbf.header.record_count, len(rows))
            self.assertEqual(dbf_file_read_record(dbf, 9)['PIN'], '1000000010')
        finally:
            dbf_file_close(dbf)


class TestDownload(unittest.TestCase):
    """Test the streamed download."""

    def setUp(self):
        self.config = LoadConfig(timeout=5, retries=0, backoff=0, chunk_size=16)

    @mock.patch('dbf_source.requests.get')
    def test_chunks_accumulated_with_progress(self, mock_get):
        mock_get.return_value = fake_response(chunks=[b'abc', b'', b'defg', b'h'], content_length=8)
        progress = []

        data = download_dbf('http://example.org/allsales.dbf',
                            on_progress=lambda got, total: progress.append((got, total)),
                            config=self.config)

        self.assertEqual(bytes(data), b'abcdefgh')
        self.assertEqual(progress, [(3, 8), (7, 8), (8, 8)])
        mock_get.assert_called_once_with('http://example.org/allsales.dbf', stream=True, timeout=5)
        mock_get.return_value.close.assert_called_once()

    @mock.patch('dbf_source.requests.get')
    def test_unknown_total(self, mock_get):
        mock_get.return_value = fake_response(chunks=[b'ab'])
        progress = []
        download_dbf('http://example.org/x.dbf', on_progress=lambda g, t: progress.append((g, t)),
                     config=self.config)
        self.assertEqual(progress, [(2, None)])

    @mock.patch('dbf_source.requests.get')
    def test_http_error(self, mock_get):
        mock_get.return_value = fake_response(status_code=404, reason="Not Found")
        with self.assertRaises(DBFNetworkError) as ctx:
            download_dbf('http://example.org/missing.dbf', config=self.config)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertIn('404', str(ctx.exception))

    @mock.patch('dbf_source.time.sleep')
    @mock.patch('dbf_source.requests.get')
    def test_retry_then_success(self, mock_get, mock_sleep):
        mock_get.side_effect = [
            requests.ConnectionError("connection reset"),
            fake_response(chunks=[b'ok']),
        ]
        data = download_dbf('http://example.org/x.dbf', config=LoadConfig(retries=1, backoff=0.5))
        self.assertEqual(bytes(data), b'ok')
        self.assertEqual(mock_get.call_count, 2)
        mock_sleep.assert_called_once_with(0.5)

    @mock.patch('dbf_source.time.sleep')
    @mock.patch('dbf_source.requests.get')
    def test_timeout_surfaces_as_network_error(self, mock_get, mock_sleep):
        mock_get.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(DBFNetworkError) as ctx:
            download_dbf('http://example.org/x.dbf', config=LoadConfig(retries=2, backoff=0))
        self.assertIsNone(ctx.exception.status_code)
        self.assertIn('Timeout', str(ctx.exception))
        self.assertEqual(mock_get.call_count, 3)

    @mock.patch('dbf_source.requests.get')
    def test_open_url(self, mock_get):
        image = build_sales_dbf(sample_sales_rows())
        chunks = [image[i:i + 100] for i in range(0, len(image), 100)]
        mock_get.return_value = fake_response(chunks=chunks, content_length=len(image))

        dbf = dbf_file_open_url('http://example.org/allsales.dbf', config=self.config)
        try:
            self.assertEqual(dbf.header.record_count, 10)
            self.assertEqual(dbf.source.size, len(image))
            self.assertEqual(dbf_file_read_record(dbf, 0)['GRANTOR'], 'SMITH JOHN')
        finally:
            dbf_file_close(dbf)


if __name__ == '__main__':
    unittest.main()
