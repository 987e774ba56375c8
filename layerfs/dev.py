"""Devices that file systems read and write, by bytes or by blocks."""

from __future__ import annotations

import abc
import os
import threading
import time
from typing import BinaryIO, ClassVar

from .errors import DevError, dev_error_from_os_error
from .util import block_ranges
from .vfs import Timespec


class TimeProvider(abc.ABC):
    """A source of the current time."""

    @abc.abstractmethod
    def current_time(self) -> Timespec:
        """Return the current time."""


class StdTimeProvider(TimeProvider):
    """Reads the host's clock."""

    def current_time(self) -> Timespec:
        sec, nsec = divmod(time.time_ns(), 1_000_000_000)
        return Timespec(sec, nsec)


class Device(abc.ABC):
    """Storage that can be read and written at byte offsets."""

    @abc.abstractmethod
    def read_at(self, offset: int, buf) -> int:
        """Read into the writable buffer ``buf`` at ``offset``; return the count."""

    @abc.abstractmethod
    def write_at(self, offset: int, data) -> int:
        """Write ``data`` at ``offset``; return the count."""

    @abc.abstractmethod
    def sync(self) -> None:
        """Flush pending writes to the storage."""


class BlockDevice(Device):
    """Storage read and written in whole blocks of ``2 ** BLOCK_SIZE_LOG2`` bytes.

    Byte-level access is built on the block operations; it stops at the first
    block that fails and reports the bytes transferred before it.
    """

    BLOCK_SIZE_LOG2: ClassVar[int]

    @abc.abstractmethod
    def read_block(self, block_id: int, buf) -> None:
        """Read block ``block_id`` into the start of ``buf``; raise DevError on failure."""

    @abc.abstractmethod
    def write_block(self, block_id: int, data) -> None:
        """Write the first block-size bytes of ``data`` to block ``block_id``."""

    def read_at(self, offset: int, buf) -> int:
        view = memoryview(buf)
        block_size = 1 << self.BLOCK_SIZE_LOG2
        for r in block_ranges(offset, offset + len(view), self.BLOCK_SIZE_LOG2):
            done = r.origin_begin() - offset
            target = view[done : r.origin_end() - offset]
            try:
                if r.is_full():
                    self.read_block(r.block, target)
                else:
                    block_buf = bytearray(block_size)
                    self.read_block(r.block, block_buf)
                    target[:] = block_buf[r.begin : r.end]
            except DevError:
                return done
        return len(view)

    def write_at(self, offset: int, data) -> int:
        view = memoryview(data)
        block_size = 1 << self.BLOCK_SIZE_LOG2
        for r in block_ranges(offset, offset + len(view), self.BLOCK_SIZE_LOG2):
            done = r.origin_begin() - offset
            source = view[done : r.origin_end() - offset]
            try:
                if r.is_full():
                    self.write_block(r.block, source)
                else:
                    block_buf = bytearray(block_size)
                    self.read_block(r.block, block_buf)
                    block_buf[r.begin : r.end] = source
                    self.write_block(r.block, block_buf)
            except DevError:
                return done
        return len(view)


class FileDevice(Device):
    """A device backed by a seekable binary file, safe to share between threads."""

    def __init__(self, file: BinaryIO) -> None:
        self.file = file
        self._lock = threading.Lock()

    def read_at(self, offset: int, buf) -> int:
        with self._lock:
            try:
                self.file.seek(offset)
                return self.file.readinto(buf) or 0
            except OSError as exc:
                raise dev_error_from_os_error(exc) from exc

    def write_at(self, offset: int, data) -> int:
        with self._lock:
            try:
                self.file.seek(offset)
                return self.file.write(data) or 0
            except OSError as exc:
                raise dev_error_from_os_error(exc) from exc

    def sync(self) -> None:
        with self._lock:
            try:
                self.file.flush()
                os.fsync(self.file.fileno())
            except OSError as exc:
                raise dev_error_from_os_error(exc) from exc