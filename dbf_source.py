"""
Byte sources for DBF files.

A DBF reader only needs positioned reads, so every source exposes
read_at(offset, length). Files are read with positioned reads; network
downloads are accumulated into one contiguous in-memory buffer.

A short read means "no more data". Callers stop instead of raising.
"""

import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

import requests

from dbf_errors import DBFFileNotFoundError, DBFNetworkError


ProgressCallback = Callable[[int, Optional[int]], None]


@dataclass(frozen=True)
class LoadConfig:
    """
    Network load settings.
    """
    timeout: float = 60
    retries: int = 2
    backoff: float = 0.5
    chunk_size: int = 1024 * 1024


class BinaryRecordSource:
    """Random-access, read-only byte source."""

    @property
    def size(self) -> int:
        raise NotImplementedError

    def read_at(self, offset: int, length: int) -> bytes:
        """Return up to `length` bytes starting at `offset` (fewer at end of data)."""
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class BufferRecordSource(BinaryRecordSource):
    """Source over bytes already held in memory."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        self._view = memoryview(data)

    @property
    def size(self) -> int:
        return len(self._view)

    def read_at(self, offset: int, length: int) -> bytes:
        if offset < 0 or length <= 0 or offset >= len(self._view):
            return b''
        return self._view[offset:offset + length].tobytes()

    def close(self) -> None:
        self._view.release()


class FileRecordSource(BinaryRecordSource):
    """Source over a local file, read with positioned reads."""

    def __init__(self, path: str):
        if not os.path.isfile(path):
            raise DBFFileNotFoundError(f"DBF file not found: {path}")
        self.path = path
        self._file = open(path, 'rb')
        self._size = os.fstat(self._file.fileno()).st_size

    @property
    def size(self) -> int:
        return self._size

    def read_at(self, offset: int, length: int) -> bytes:
        if offset < 0 or length <= 0 or offset >= self._size:
            return b''
        if hasattr(os, 'pread'):
            return os.pread(self._file.fileno(), length, offset)
        self._file.seek(offset)
        return self._file.read(length)

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()


def _fetch_once(url: str, on_progress: Optional[ProgressCallback], config: LoadConfig) -> bytearray:
    r = requests.get(url, stream=True, timeout=config.timeout)
    try:
        if r.status_code != 200:
            raise DBFNetworkError(
                f"Failed to load DBF from {url}: HTTP {r.status_code} {r.reason or ''}".rstrip(),
                status_code=r.status_code)

        content_length = r.headers.get('content-length')
        total = int(content_length) if content_length and content_length.isdigit() else None

        data = bytearray()
        for chunk in r.iter_content(chunk_size=config.chunk_size):
            if not chunk:
                continue
            data += chunk
            if on_progress is not None:
                on_progress(len(data), total)
        return data
    finally:
        r.close()


def download_dbf(url: str, on_progress: Optional[ProgressCallback] = None,
                 config: Optional[LoadConfig] = None) -> bytearray:
    """
    Download a whole DBF file into one contiguous buffer.

    Args:
        url: http(s) URL of the file
        on_progress: Called as on_progress(bytes_received, total_bytes) after
            every chunk; total_bytes is None without a Content-Length
        config: Timeout/retry settings

    Returns:
        The file contents

    Raises:
        DBFNetworkError: After the last attempt fails (non-200 status,
            timeout or connection error)
    """
    config = config or LoadConfig()
    last_err: Optional[DBFNetworkError] = None

    for attempt in range(config.retries + 1):
        try:
            return _fetch_once(url, on_progress, config)
        except DBFNetworkError as e:
            last_err = e
        except requests.RequestException as e:
            last_err = DBFNetworkError(f"Failed to load DBF from {url}: {type(e).__name__}: {e}")

        if attempt < config.retries:
            time.sleep(config.backoff * (attempt + 1))

    raise last_err
