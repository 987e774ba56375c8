"""Splitting a byte range into per-block pieces."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class BlockRange:
    """The part ``[begin, end)`` of block ``block``, in bytes within the block."""

    block: int
    begin: int
    end: int
    block_size_log2: int

    def __len__(self) -> int:
        return self.end - self.begin

    def is_full(self) -> bool:
        """Whether the range covers the whole block."""
        return len(self) == 1 << self.block_size_log2

    def origin_begin(self) -> int:
        """The start of the range as an absolute byte offset."""
        return (self.block << self.block_size_log2) + self.begin

    def origin_end(self) -> int:
        """The end of the range as an absolute byte offset."""
        return (self.block << self.block_size_log2) + self.end


def block_ranges(begin: int, end: int, block_size_log2: int) -> Iterator[BlockRange]:
    """Yield the sub-range of ``[begin, end)`` that falls in each block, in order."""
    block_size = 1 << block_size_log2
    while begin < end:
        block = begin // block_size
        start = begin % block_size
        stop = end % block_size if block == end // block_size else block_size
        begin += stop - start
        yield BlockRange(block, start, stop, block_size_log2)