"""A writer that holds back all output until it is released."""

from __future__ import annotations

import threading
from typing import BinaryIO


class GatedWriter:
    """Buffers every write until :meth:`flush` is called.

    After the first flush, writes go straight through to the wrapped
    writer.
    """

    def __init__(self, writer: BinaryIO) -> None:
        self.writer = writer
        self._buffer: list[bytes] = []
        self._flushed = False
        self._lock = threading.Lock()

    def flush(self) -> None:
        """Release all buffered data and stop buffering."""
        with self._lock:
            self._flushed = True
            pending, self._buffer = self._buffer, []
        for chunk in pending:
            self.writer.write(chunk)

    def write(self, data: bytes) -> int:
        """Write ``data`` or hold it back; returns the number of bytes taken."""
        with self._lock:
            if not self._flushed:
                self._buffer.append(bytes(data))
                return len(data)
        written = self.writer.write(data)
        return len(data) if written is None else written