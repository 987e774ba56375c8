"""Abstract file system objects: inodes, file systems and their metadata."""

from __future__ import annotations

import abc
import enum
import stat
import threading
from dataclasses import dataclass, field
from typing import ClassVar

from .errors import ErrorKind, FsError

PATH_MAX = 4096
FS_MAC_SIZE = 16
_ELF64_HEADER_SIZE = 64


class FileType(enum.Enum):
    FILE = "file"
    DIR = "dir"
    SYMLINK = "symlink"
    CHAR_DEVICE = "char_device"
    BLOCK_DEVICE = "block_device"
    NAMED_PIPE = "named_pipe"
    SOCKET = "socket"


@dataclass(frozen=True, order=True)
class Timespec:
    sec: int = 0
    nsec: int = 0

    @classmethod
    def _from_ns(cls, ns: int) -> "Timespec":
        sec, nsec = divmod(ns, 1_000_000_000)
        return cls(sec, nsec)


@dataclass
class Metadata:
    """Metadata of an inode, after POSIX ``struct stat``."""

    dev: int = 0
    inode: int = 0
    size: int = 0
    blk_size: int = 0
    blocks: int = 0
    atime: Timespec = field(default_factory=Timespec)
    mtime: Timespec = field(default_factory=Timespec)
    ctime: Timespec = field(default_factory=Timespec)
    type_: FileType = FileType.FILE
    mode: int = 0
    nlinks: int = 0
    uid: int = 0
    gid: int = 0
    rdev: int = 0


@dataclass
class PollStatus:
    read: bool = False
    write: bool = False
    error: bool = False


@dataclass
class FsInfo:
    """Metadata of a file system, after POSIX ``statvfs``."""

    magic: int = 0
    bsize: int = 0
    frsize: int = 0
    blocks: int = 0
    bfree: int = 0
    bavail: int = 0
    files: int = 0
    ffree: int = 0
    namemax: int = 0


class AllocFlags(enum.IntFlag):
    KEEP_SIZE = 0x01
    UNSHARE_RANGE = 0x40


@dataclass(frozen=True)
class FallocateMode:
    """Operation mode for fallocate; ``flags`` only apply to ``allocate``."""

    OPS: ClassVar[tuple[str, ...]] = (
        "allocate",
        "punch_hole_keep_size",
        "zero_range",
        "zero_range_keep_size",
        "collapse_range",
        "insert_range",
    )

    op: str
    flags: AllocFlags = AllocFlags(0)

    def __post_init__(self) -> None:
        if self.op not in self.OPS:
            raise ValueError(f"unknown fallocate operation: {self.op!r}")
        if self.op != "allocate" and self.flags:
            raise ValueError("only the allocate operation takes flags")


class IoctlError(enum.IntEnum):
    NOT_VALID_FD = 9
    NOT_VALID_MEMORY = 14
    NOT_VALID_PARAM = 22
    NOT_CHAR_DEVICE = 25


class Extension:
    """Objects attached to an inode, at most one per type, keyed by type."""

    def __init__(self) -> None:
        self._data: dict[type, object] = {}
        self._lock = threading.Lock()

    def get(self, type_: type):
        with self._lock:
            return self._data.get(type_)

    def get_or_put_default(self, type_: type):
        """Return the object of ``type_``, storing ``type_()`` first if absent."""
        with self._lock:
            if type_ not in self._data:
                self._data[type_] = type_()
            return self._data[type_]

    def put(self, obj):
        """Store ``obj`` under its type and return the object it replaced."""
        with self._lock:
            old = self._data.get(type(obj))
            self._data[type(obj)] = obj
            return old

    def delete(self, type_: type):
        """Remove and return the object of ``type_``, if any."""
        with self._lock:
            return self._data.pop(type_, None)

    def copy(self) -> "Extension":
        """Return an extension holding the same objects."""
        new = Extension()
        with self._lock:
            new._data = dict(self._data)
        return new


class DirentVisitor(abc.ABC):
    """Receives directory entries one at a time."""

    @abc.abstractmethod
    def visit_entry(self, name: str, ino: int, type_: FileType, offset: int) -> None:
        """Visit one entry; raise :class:`FsError` to stop the iteration."""


class EntryCollector(DirentVisitor):
    """A visitor that keeps the names it is given."""

    def __init__(self) -> None:
        self.names: list[str] = []

    def visit_entry(self, name: str, ino: int, type_: FileType, offset: int) -> None:
        self.names.append(name)


def visit_inode_entry(visitor: DirentVisitor, name: str, inode: "INode", offset: int) -> int:
    """Hand the entry ``name`` of ``inode`` to ``visitor``; return the next offset."""
    info = inode.metadata()
    visitor.visit_entry(name, info.inode, info.type_, offset)
    return offset + 1


def _unsupported() -> FsError:
    return FsError(ErrorKind.NOT_SUPPORTED)


class INode(abc.ABC):
    """An abstract file system object such as a file or a directory."""

    @abc.abstractmethod
    def read_at(self, offset: int, buf) -> int:
        """Read bytes at ``offset`` into the writable buffer ``buf``; return the count."""

    @abc.abstractmethod
    def write_at(self, offset: int, data) -> int:
        """Write ``data`` at ``offset``; return the number of bytes written."""

    def poll(self) -> PollStatus:
        return PollStatus(read=True, write=True, error=False)

    def metadata(self) -> Metadata:
        raise _unsupported()

    def set_metadata(self, metadata: Metadata) -> None:
        raise _unsupported()

    def fallocate(self, mode: FallocateMode, offset: int, length: int) -> None:
        raise _unsupported()

    def sync_all(self) -> None:
        raise _unsupported()

    def sync_data(self) -> None:
        raise _unsupported()

    def resize(self, length: int) -> None:
        raise _unsupported()

    def create(self, name: str, type_: FileType, mode: int) -> "INode":
        """Create a new inode named ``name`` in this directory."""
        if type(self).create2 is INode.create2:
            raise _unsupported()
        return self.create2(name, type_, mode, 0)

    def create2(self, name: str, type_: FileType, mode: int, data: int) -> "INode":
        """Create a new inode, with ``data`` for uses such as device files."""
        if type(self).create is INode.create:
            raise _unsupported()
        return self.create(name, type_, mode)

    def link(self, name: str, other: "INode") -> None:
        raise _unsupported()

    def unlink(self, name: str) -> None:
        raise _unsupported()

    def move(self, old_name: str, target: "INode", new_name: str) -> None:
        """Move ``self/old_name`` to ``target/new_name``; a rename if target is self."""
        raise _unsupported()

    def find(self, name: str) -> "INode":
        raise _unsupported()

    def get_entry(self, index: int) -> str:
        raise _unsupported()

    def iterate_entries(self, offset: int, visitor: DirentVisitor) -> int:
        """Visit entries from ``offset``; return how many were visited."""
        raise _unsupported()

    def io_control(self, cmd: int, data: int) -> None:
        raise _unsupported()

    def fs(self) -> "FileSystem":
        raise _unsupported()

    def list(self) -> list[str]:
        """Return all directory entry names, in entry order."""
        if self.metadata().type_ is not FileType.DIR:
            raise FsError(ErrorKind.NOT_DIR)
        names = []
        index = 0
        while True:
            try:
                names.append(self.get_entry(index))
            except FsError:
                return names
            index += 1

    def lookup(self, path: str) -> "INode":
        """Look up ``path`` from this directory without following symlinks."""
        return self.lookup_follow(path, 0)

    def lookup_follow(self, path: str, max_follows: int) -> "INode":
        """Look up ``path``, following symlinks at most ``max_follows`` times.

        A trailing ``/`` requires the result to be a directory.
        """
        if self.metadata().type_ is not FileType.DIR:
            raise FsError(ErrorKind.NOT_DIR)
        if len(path.encode()) > PATH_MAX:
            raise FsError(ErrorKind.NAME_TOO_LONG)

        follows = 0
        if path.startswith("/"):
            inode = self.fs().root_inode()
            relative = path.lstrip("/")
        else:
            inode = self.find(".")
            relative = path

        while relative:
            prefix, sep, suffix = relative.partition("/")
            if sep:
                next_name, remain, must_be_dir = prefix, suffix.lstrip("/"), True
            else:
                next_name, remain, must_be_dir = relative, "", False

            next_inode = inode.find(next_name)
            next_type = next_inode.metadata().type_

            if max_follows > 0 and next_type is FileType.SYMLINK:
                if follows >= max_follows:
                    raise FsError(ErrorKind.SYM_LOOP)
                content = bytearray(PATH_MAX)
                length = next_inode.read_at(0, content)
                try:
                    target = bytes(content[:length]).decode("utf-8")
                except UnicodeDecodeError:
                    raise FsError(ErrorKind.ENTRY_NOT_FOUND) from None
                if not target:
                    raise FsError(ErrorKind.ENTRY_NOT_FOUND)
                if remain:
                    target += "/" + remain
                elif must_be_dir:
                    target += "/"
                if target.startswith("/"):
                    inode = inode.fs().root_inode()
                relative = target.lstrip("/")
                follows += 1
            else:
                if must_be_dir and next_type is not FileType.DIR:
                    raise FsError(ErrorKind.NOT_DIR)
                inode = next_inode
                relative = remain

        return inode

    def read_all(self) -> bytes:
        """Read the whole content, as long as the size the metadata reports."""
        buf = bytearray(self.metadata().size)
        self.read_at(0, buf)
        return bytes(buf)

    def read_elf64_lazy(self) -> bytes:
        """Return a buffer of the file's size holding only its ELF64 header."""
        size = self.metadata().size
        buf = bytearray(size)
        self.read_at(0, memoryview(buf)[: min(_ELF64_HEADER_SIZE, size)])
        return bytes(buf)

    def ext(self) -> Extension | None:
        return None


class FileSystem(abc.ABC):
    """An abstract file system."""

    @abc.abstractmethod
    def sync(self) -> None:
        """Write all data to the storage."""

    @abc.abstractmethod
    def root_inode(self) -> INode:
        """Return the root inode."""

    def root_mac(self) -> bytes:
        return bytes(FS_MAC_SIZE)

    @abc.abstractmethod
    def info(self) -> FsInfo:
        """Return information about the file system."""


def make_rdev(major: int, minor: int) -> int:
    return ((major & 0xFFF) << 8) | (minor & 0xFF)


_STAT_TYPES = {
    stat.S_IFCHR: FileType.CHAR_DEVICE,
    stat.S_IFBLK: FileType.BLOCK_DEVICE,
    stat.S_IFDIR: FileType.DIR,
    stat.S_IFREG: FileType.FILE,
    stat.S_IFLNK: FileType.SYMLINK,
    stat.S_IFSOCK: FileType.SOCKET,
}


def metadata_from_stat(st) -> Metadata:
    """Build :class:`Metadata` from an ``os.stat_result``."""
    type_ = _STAT_TYPES.get(stat.S_IFMT(st.st_mode))
    if type_ is None:
        raise ValueError("unknown file type")
    return Metadata(
        dev=st.st_dev,
        inode=st.st_ino,
        size=st.st_size,
        blk_size=getattr(st, "st_blksize", 0),
        blocks=getattr(st, "st_blocks", 0),
        atime=Timespec._from_ns(st.st_atime_ns),
        mtime=Timespec._from_ns(st.st_mtime_ns),
        ctime=Timespec._from_ns(st.st_ctime_ns),
        type_=type_,
        mode=st.st_mode & 0o777,
        nlinks=st.st_nlink,
        uid=st.st_uid,
        gid=st.st_gid,
        rdev=getattr(st, "st_rdev", 0),
    )