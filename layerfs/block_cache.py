"""A small least-recently-used cache in front of a block device."""

from __future__ import annotations

import contextlib
import enum
import threading
from collections.abc import Iterator

from .dev import BlockDevice


class _Status(enum.Enum):
    UNUSED = enum.auto()
    VALID = enum.auto()
    DIRTY = enum.auto()


class _Buf:
    def __init__(self, size: int) -> None:
        self.status = _Status.UNUSED
        self.block_id = 0
        self.data = bytearray(size)
        self.lock = threading.Lock()

    def holds(self, block_id: int) -> bool:
        return self.status is not _Status.UNUSED and self.block_id == block_id


class _LRU:
    """A circular doubly linked list of buffer slots; slot 0 anchors the head."""

    def __init__(self, size: int) -> None:
        self.prev = [size - 1, *range(size - 1)]
        self.next = [*range(1, size), 0]

    def visit(self, slot: int) -> None:
        if slot == 0 or slot >= len(self.prev):
            return
        prev, nxt = self.prev[slot], self.next[slot]
        self.prev[nxt] = prev
        self.next[prev] = nxt
        head = self.next[0]
        self.prev[slot] = 0
        self.next[slot] = head
        self.next[0] = slot
        self.prev[head] = slot

    def victim(self) -> int:
        return self.prev[0]


class BlockCache(BlockDevice):
    """Caches up to ``capacity`` blocks of ``device``; writes are kept until evicted or synced."""

    def __init__(self, device: BlockDevice, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("cache capacity must be at least 1")
        self.device = device
        self.BLOCK_SIZE_LOG2 = device.BLOCK_SIZE_LOG2
        self._block_size = 1 << self.BLOCK_SIZE_LOG2
        self._bufs = [_Buf(self._block_size) for _ in range(capacity)]
        self._lru = _LRU(capacity)
        self._lru_lock = threading.Lock()

    @contextlib.contextmanager
    def _buf_for(self, block_id: int) -> Iterator[_Buf]:
        slot, buf = self._find(block_id)
        try:
            with self._lru_lock:
                self._lru.visit(slot)
            yield buf
        finally:
            buf.lock.release()

    def _find(self, block_id: int) -> tuple[int, _Buf]:
        for slot, buf in enumerate(self._bufs):
            if buf.lock.acquire(blocking=False):
                if buf.holds(block_id):
                    return slot, buf
                buf.lock.release()
        return self._unused()

    def _unused(self) -> tuple[int, _Buf]:
        for slot, buf in enumerate(self._bufs):
            if buf.lock.acquire(blocking=False):
                if buf.status is _Status.UNUSED:
                    return slot, buf
                buf.lock.release()
        with self._lru_lock:
            slot = self._lru.victim()
        victim = self._bufs[slot]
        victim.lock.acquire()
        try:
            self._write_back(victim)
        except BaseException:
            victim.lock.release()
            raise
        victim.status = _Status.UNUSED
        return slot, victim

    def _write_back(self, buf: _Buf) -> None:
        if buf.status is _Status.DIRTY:
            self.device.write_block(buf.block_id, buf.data)
            buf.status = _Status.VALID

    def read_block(self, block_id: int, buf) -> None:
        with self._buf_for(block_id) as cached:
            if cached.status is _Status.UNUSED:
                self.device.read_block(block_id, cached.data)
                cached.block_id = block_id
                cached.status = _Status.VALID
            memoryview(buf)[: self._block_size] = cached.data

    def write_block(self, block_id: int, data) -> None:
        with self._buf_for(block_id) as cached:
            cached.data[:] = memoryview(data)[: self._block_size]
            cached.block_id = block_id
            cached.status = _Status.DIRTY

    def sync(self) -> None:
        """Write every dirty block back and sync the device."""
        for buf in self._bufs:
            with buf.lock:
                self._write_back(buf)
        self.device.sync()

    def close(self) -> None:
        """Sync the cache before it is discarded."""
        self.sync()

    def __enter__(self) -> "BlockCache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()