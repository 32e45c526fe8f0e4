"""Template source loading.

A :class:`SourceView` is an immutable, bounds-checked view of one template
file. It is backed either by a read-only memory map or by the file contents
read into memory; callers only ever see logical offsets, where offset 0 is
the first byte after an optional ``#!`` directive line.
"""

from __future__ import annotations
import bisect
import logging
import mmap
import os
from typing import Any, List, Optional, Tuple

from diagnostics import SourceIOError

logger = logging.getLogger(__name__)

DIRECTIVE = b"#!"
BACKEND_MMAP = "mmap"
BACKEND_READ = "read"


class MappedBackend:
    name = BACKEND_MMAP

    def __init__(self, handle) -> None:
        self._map: Optional[mmap.mmap] = mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ)

    @property
    def data(self):
        return self._map

    def close(self) -> None:
        if self._map is not None:
            self._map.close()
            self._map = None


class ReadBackend:
    name = BACKEND_READ

    def __init__(self, data: bytes) -> None:
        self._data: Optional[bytes] = data

    @classmethod
    def from_file(cls, handle) -> "ReadBackend":
        return cls(handle.read())

    @property
    def data(self):
        return self._data

    def close(self) -> None:
        self._data = None


def directive_length(raw) -> int:
    """Length of the leading ``#!`` line including its newline, or 0."""
    if raw[:2] != DIRECTIVE:
        return 0
    newline = raw.find(b"\n")
    return len(raw) if newline == -1 else newline + 1


def _default_backend(size: int) -> str:
    # Empty files cannot be mapped; Windows always reads.
    if os.name == "nt" or size == 0:
        return BACKEND_READ
    return BACKEND_MMAP


class SourceView:
    def __init__(self, backend: Any, filename: str) -> None:
        self.filename = filename
        self.backend = backend
        raw = backend.data
        self._raw = raw
        self._start = directive_length(raw)
        self._end = len(raw)
        self._newlines: Optional[List[int]] = None
        self.closed = False

    @classmethod
    def open(cls, filename: str, backend: Optional[str] = None) -> "SourceView":
        try:
            handle = open(filename, "rb")
        except OSError as exc:
            reason = exc.__class__.__name__
            raise SourceIOError(f"open template file '{filename}' failed with {reason}", reason=reason)
        with handle:
            try:
                size = os.fstat(handle.fileno()).st_size
                kind = backend or _default_backend(size)
                if kind == BACKEND_MMAP:
                    impl: Any = MappedBackend(handle)
                elif kind == BACKEND_READ:
                    impl = ReadBackend.from_file(handle)
                else:
                    raise ValueError(f"unknown source backend '{kind}'")
            except (OSError, ValueError) as exc:
                reason = exc.__class__.__name__
                raise SourceIOError(f"map template file '{filename}' failed with {reason}", reason=reason)
        view = cls(impl, filename)
        logger.debug(
            "loaded %s: %d bytes via %s, directive %d bytes",
            filename, view._end, impl.name, view._start,
        )
        return view

    @classmethod
    def from_bytes(cls, data: bytes, filename: str = "<string>") -> "SourceView":
        return cls(ReadBackend(bytes(data)), filename)

    @property
    def directive(self) -> bytes:
        return bytes(self._raw[:self._start])

    def __len__(self) -> int:
        return self._end - self._start

    def __getitem__(self, key):
        if isinstance(key, slice):
            lo, hi, step = key.indices(len(self))
            if step != 1:
                raise ValueError("SourceView slices must be contiguous")
            if hi <= lo:
                return b""
            return bytes(self._raw[self._start + lo:self._start + hi])
        if key < 0:
            key += len(self)
        if not 0 <= key < len(self):
            raise IndexError("SourceView index out of range")
        return self._raw[self._start + key]

    def find(self, sub: bytes, start: int = 0) -> int:
        pos = self._raw.find(sub, self._start + start, self._end)
        return -1 if pos == -1 else pos - self._start

    def startswith(self, prefix: bytes, offset: int = 0) -> bool:
        return self[offset:offset + len(prefix)] == prefix

    def location(self, offset: int) -> Tuple[int, int]:
        """1-based (line, column) of a logical offset, counted over the whole file."""
        if self._newlines is None:
            newlines: List[int] = []
            pos = self._raw.find(b"\n", 0, self._end)
            while pos != -1:
                newlines.append(pos)
                pos = self._raw.find(b"\n", pos + 1, self._end)
            self._newlines = newlines
        absolute = self._start + offset
        line_index = bisect.bisect_left(self._newlines, absolute)
        line_start = self._newlines[line_index - 1] + 1 if line_index else 0
        return line_index + 1, absolute - line_start + 1

    def close(self) -> None:
        if self.closed:
            return
        self._raw = b""
        self._end = self._start = 0
        self.backend.close()
        self.closed = True
        logger.debug("released %s", self.filename)

    def __enter__(self) -> "SourceView":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
