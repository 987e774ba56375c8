"""The per-path state of a union mount: one virtual inode for each layer.

The first layer is the writable container; the others are read-only images.
A name is hidden from the images by a whiteout file in the container, and a
container directory hides all image content below it when an opaque marker
file sits next to it.
"""

from __future__ import annotations

import weakref
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from .errors import EIO, ErrorKind, FsError
from .vfs import FileType, INode

MAC_FILE = ".ufs.mac"
WH_PREFIX = ".ufs.wh."
OPAQUE_PREFIX = ".ufs.opq."

_COPY_CHUNK = 0x10000
_COPYABLE_TYPES = frozenset(
    {FileType.FILE, FileType.DIR, FileType.SYMLINK, FileType.SOCKET}
)


def whiteout_name(name: str) -> str:
    """The name of the file that hides ``name`` from the image layers."""
    return WH_PREFIX + name


def opaque_name(name: str) -> str:
    """The name of the file that makes directory ``name`` opaque."""
    return OPAQUE_PREFIX + name


def is_reserved(name: str) -> bool:
    """Whether ``name`` is used by the union mount for its own bookkeeping."""
    return name.startswith(WH_PREFIX) or name.startswith(OPAQUE_PREFIX) or name == MAC_FILE


def is_self(name: str) -> bool:
    return name == "." or name == ""


def is_parent(name: str) -> bool:
    return name == ".."


@dataclass
class PathWithMode:
    """A path from the root, each component paired with its access mode."""

    parts: list[tuple[str, int]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.parts)

    def __iter__(self) -> Iterator[tuple[str, int]]:
        return iter(self.parts)

    def append(self, name: str, mode: int) -> None:
        """Step into ``name``; ``.`` stays and ``..`` steps back."""
        if name == ".":
            return
        if name == "..":
            if self.parts:
                self.parts.pop()
            return
        self.parts.append((name, mode))

    def with_next(self, name: str, mode: int) -> "PathWithMode":
        """Return a new path that has stepped into ``name``."""
        nxt = PathWithMode(list(self.parts))
        nxt.append(name, mode)
        return nxt

    def lastn(self, n: int) -> list[tuple[str, int]]:
        """The last ``n`` components."""
        if n < 0 or n > len(self.parts):
            raise IndexError(f"path has {len(self.parts)} components, not {n}")
        return self.parts[len(self.parts) - n :]


@dataclass
class VirtualINode:
    """A path within one layer: its last existing inode and how far beyond it the path goes.

    ``distance`` is 0 when the path exists in the layer.
    """

    last_inode: INode
    distance: int = 0

    def walk(self, name: str) -> None:
        """Step to ``./name`` in place."""
        if self.distance == 0:
            try:
                self.last_inode = self.last_inode.find(name)
            except FsError:
                self.distance = 1
        elif name == "..":
            self.distance -= 1
        elif name != ".":
            self.distance += 1

    def find(self, name: str) -> "VirtualINode":
        """Return the virtual inode at ``./name``, leaving this one as it is."""
        nxt = VirtualINode(self.last_inode, self.distance)
        nxt.walk(name)
        return nxt

    def is_real(self) -> bool:
        return self.distance == 0

    def as_real(self) -> INode | None:
        """The inode itself if the path exists in this layer, else None."""
        return self.last_inode if self.distance == 0 else None


class Entry:
    """A cached directory entry.

    Directories are held strongly; files are held weakly together with their
    inode id, so that a dropped inode can be rebuilt under the same id.
    """

    __slots__ = ("_strong", "_weak", "id")

    def __init__(
        self,
        strong: INode | None = None,
        weak: "weakref.ref[INode] | None" = None,
        id: int | None = None,
    ) -> None:
        self._strong = strong
        self._weak = weak
        self.id = id

    @staticmethod
    def for_inode(inode) -> "Entry":
        """Make the entry for ``inode``, which carries its inode number as ``id``."""
        if inode.metadata().type_ is FileType.DIR:
            return Entry(strong=inode)
        return Entry(weak=weakref.ref(inode), id=inode.id)

    @property
    def is_dir(self) -> bool:
        return self._strong is not None

    def as_inode(self) -> INode | None:
        """The inode, or None if a file inode has been dropped."""
        if self._strong is not None:
            return self._strong
        return self._weak() if self._weak is not None else None


def merge_entries(layers: Sequence[VirtualINode], opaque: bool) -> dict[str, Entry | None]:
    """Merge the directory entries of all layers into one sorted mapping.

    Image layers are merged unless ``opaque``; merging stops at the first
    image whose inode is not a directory. Container entries are added on top,
    and container whiteouts remove the names they hide.
    """
    entries: dict[str, Entry | None] = {}
    if not opaque:
        for inode in (v.as_real() for v in layers[1:]):
            if inode is None:
                continue
            if inode.metadata().type_ is not FileType.DIR:
                break
            for name in inode.list():
                if is_self(name) or is_parent(name):
                    continue
                entries[name] = None
    container = layers[0].as_real()
    if container is not None:
        for name in container.list():
            if (
                name.startswith(OPAQUE_PREFIX)
                or name == MAC_FILE
                or is_self(name)
                or is_parent(name)
            ):
                continue
            if name.startswith(WH_PREFIX):
                entries.pop(name[len(WH_PREFIX) :], None)
            else:
                entries[name] = None
    return dict(sorted(entries.items()))


def _device_error() -> FsError:
    return FsError(ErrorKind.DEVICE_ERROR, EIO)


class LayerSet:
    """The mutable state of one union inode: its path and its inode in every layer.

    ``this`` and ``parent`` hold weak references to the owning union inode and
    its parent directory once they are set. The mapping returned by
    :meth:`entries` keeps insertion order; callers that need name order sort it.
    """

    def __init__(
        self,
        layers: Sequence[VirtualINode],
        path_with_mode: PathWithMode | None = None,
        opaque: bool = False,
    ) -> None:
        self.layers = list(layers)
        self.path_with_mode = path_with_mode if path_with_mode is not None else PathWithMode()
        self.opaque = opaque
        self.this: weakref.ref | None = None
        self.parent: weakref.ref | None = None
        self._children: dict[str, Entry | None] = {}
        self._merged = False

    def entries(self) -> dict[str, Entry | None]:
        """The merged directory entries, computed on first use and cached."""
        if not self._merged:
            self._children = merge_entries(self.layers, self.opaque)
            self._merged = True
        return self._children

    def inode(self) -> INode:
        """The uppermost layer's inode that exists."""
        for v in self.layers:
            real = v.as_real()
            if real is not None:
                return real
        raise RuntimeError("no layer holds this path")

    def maybe_container_inode(self) -> INode | None:
        return self.layers[0].as_real()

    def has_image_inode(self) -> bool:
        return any(v.is_real() for v in self.layers[1:])

    def container_inode(self) -> INode:
        """Return the container's inode, copying it up from an image if needed.

        Missing parent directories are created with their recorded modes; a
        file or symlink is copied from the image, a directory is created empty.
        """
        type_ = self.inode().metadata().type_
        if type_ not in _COPYABLE_TYPES:
            raise FsError(ErrorKind.NOT_SUPPORTED)
        top = self.layers[0]
        last, distance = top.last_inode, top.distance
        if distance == 0:
            return last

        for dir_name, mode in self.path_with_mode.lastn(distance)[: distance - 1]:
            try:
                last = last.find(dir_name)
            except FsError as exc:
                if exc.kind is not ErrorKind.ENTRY_NOT_FOUND:
                    raise
                last = last.create(dir_name, FileType.DIR, mode)

        name, mode = self.path_with_mode.lastn(1)[0]
        try:
            last = last.find(name)
        except FsError as exc:
            if exc.kind is not ErrorKind.ENTRY_NOT_FOUND:
                raise
            if type_ is FileType.DIR:
                last = last.create(name, FileType.DIR, mode)
            elif type_ is FileType.FILE:
                last = self._copy_file(last, name, mode)
            else:
                last = self._copy_link(last, name, type_, mode)

        self.layers[0] = VirtualINode(last, 0)
        return last

    def _copy_file(self, parent: INode, name: str, mode: int) -> INode:
        target = parent.create(name, FileType.FILE, mode)
        source = self.inode()
        buf = bytearray(_COPY_CHUNK)
        offset = 0
        length = _COPY_CHUNK
        while length == _COPY_CHUNK:
            try:
                length = source.read_at(offset, buf)
                written = target.write_at(offset, memoryview(buf)[:length])
            except FsError:
                parent.unlink(name)
                raise
            if written != length:
                parent.unlink(name)
                raise _device_error()
            offset += length
        return target

    def _copy_link(self, parent: INode, name: str, type_: FileType, mode: int) -> INode:
        target = parent.create(name, type_, mode)
        try:
            data = self.inode().read_all()
            written = target.write_at(0, data)
        except FsError:
            parent.unlink(name)
            raise
        if written != len(data):
            parent.unlink(name)
            raise _device_error()
        return target