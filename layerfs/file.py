"""A file handle with a position over an inode."""

from __future__ import annotations

import io

from .vfs import INode, Metadata


class File:
    """Reads and writes an inode sequentially from a current offset."""

    def __init__(self, inode: INode, readable: bool, writable: bool) -> None:
        self.inode = inode
        self.offset = 0
        self.readable = readable
        self.writable = writable

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes and advance the offset."""
        if not self.readable:
            raise io.UnsupportedOperation("file not open for reading")
        buf = bytearray(size)
        length = self.inode.read_at(self.offset, buf)
        self.offset += length
        return bytes(buf[:length])

    def write(self, data) -> int:
        """Write ``data`` and advance the offset; return the bytes written."""
        if not self.writable:
            raise io.UnsupportedOperation("file not open for writing")
        length = self.inode.write_at(self.offset, data)
        self.offset += length
        return length

    def info(self) -> Metadata:
        return self.inode.metadata()

    def get_entry(self, index: int) -> str:
        return self.inode.get_entry(index)