from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

from peprobe.errors import TruncatedRead


class ByteSource:
    """
    Sized, random-access, read-only view over some bytes.

    Subclasses implement `_read(offset, size)`; `read_at` enforces bounds so a
    short read always surfaces as TruncatedRead instead of a short buffer.
    """

    size: int = 0

    def _read(self, offset: int, size: int) -> bytes:
        raise NotImplementedError

    def read_at(self, offset: int, size: int) -> bytes:
        if offset < 0 or size < 0 or offset + size > self.size:
            raise TruncatedRead(
                f"read of {size} bytes at offset {offset:#x} exceeds source size {self.size:#x}",
                offset=offset,
                size=size,
            )
        if size == 0:
            return b""
        data = self._read(offset, size)
        if len(data) != size:
            raise TruncatedRead(
                f"short read at offset {offset:#x}: wanted {size} bytes, got {len(data)}",
                offset=offset,
                size=size,
            )
        return data

    def read_upto(self, offset: int, size: int) -> bytes:
        """Read at most `size` bytes, stopping at the end of the source."""
        if offset >= self.size:
            return b""
        return self.read_at(offset, min(size, self.size - offset))


class BytesSource(ByteSource):
    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self.size = len(self._data)

    def _read(self, offset: int, size: int) -> bytes:
        return self._data[offset : offset + size]


class FileSource(ByteSource):
    """
    Reads from an open binary file object; the file is never buffered whole.

    Where the platform has `os.pread` and the object has a real descriptor, reads are
    positional and leave the file cursor alone. Otherwise seek+read runs under a lock.
    """

    def __init__(self, fileobj: BinaryIO, size: int = -1) -> None:
        self._f = fileobj
        self._fd = _positional_fd(fileobj)
        self._lock = threading.Lock()
        if size < 0:
            size = _seek_size(fileobj)
        self.size = int(size)

    def _read(self, offset: int, size: int) -> bytes:
        if self._fd is None:
            with self._lock:
                self._f.seek(offset)
                return self._f.read(size)

        chunks = []
        while size > 0:
            chunk = os.pread(self._fd, size, offset)
            if not chunk:
                break
            chunks.append(chunk)
            offset += len(chunk)
            size -= len(chunk)
        return b"".join(chunks)


def _positional_fd(fileobj: BinaryIO) -> Optional[int]:
    if not hasattr(os, "pread"):
        return None
    try:
        return fileobj.fileno()
    except (AttributeError, OSError):
        # in-memory streams such as io.BytesIO have no descriptor
        return None


def _seek_size(fileobj: BinaryIO) -> int:
    pos = fileobj.tell()
    end = fileobj.seek(0, os.SEEK_END)
    fileobj.seek(pos)
    return end


SourceLike = Union[ByteSource, bytes, bytearray, memoryview, BinaryIO]


def as_source(obj: SourceLike) -> ByteSource:
    if isinstance(obj, ByteSource):
        return obj
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return BytesSource(bytes(obj))
    if hasattr(obj, "read") and hasattr(obj, "seek"):
        return FileSource(obj)
    raise TypeError(f"cannot read PE data from {type(obj).__name__}")


@contextmanager
def open_source(path: Union[str, Path]) -> Iterator[FileSource]:
    p = Path(path)
    with p.open("rb") as f:
        yield FileSource(f, p.stat().st_size)
