"""A union file system that overlays a writable container on read-only images."""

from __future__ import annotations

import dataclasses
import itertools
import threading
import weakref
from collections.abc import Sequence

from .errors import EIO, ErrorKind, FsError
from .union_layers import (
    MAC_FILE,
    Entry,
    LayerSet,
    PathWithMode,
    VirtualINode,
    is_parent,
    is_reserved,
    is_self,
    opaque_name,
    whiteout_name,
)
from .vfs import (
    FS_MAC_SIZE,
    DirentVisitor,
    Extension,
    FallocateMode,
    FileSystem,
    FileType,
    FsInfo,
    INode,
    Metadata,
    PollStatus,
    visit_inode_entry,
)

UNIONFS_MAGIC = 0x2F8D_BE2F
ROOT_INODE_ID = 2
_USIZE_MAX = 2**64 - 1


def _exists(directory: INode, name: str) -> bool:
    try:
        directory.find(name)
    except FsError:
        return False
    return True


def _deref(ref: weakref.ref | None) -> "UnionINode":
    inode = ref() if ref is not None else None
    if inode is None:
        raise FsError(ErrorKind.DIR_REMOVED)
    return inode


class UnionFS(FileSystem):
    """Overlays several file systems into one.

    The first layer is the writable container; the others are read-only
    images. The container records the images' MACs in a bookkeeping file and
    a later mount must be given the same images.
    """

    def __init__(self, layers: Sequence[FileSystem]) -> None:
        layers = list(layers)
        if not layers:
            raise ValueError("a union file system needs at least one layer")
        try:
            mac_file = layers[0].root_inode().find(MAC_FILE)
        except FsError as exc:
            if exc.kind is not ErrorKind.ENTRY_NOT_FOUND:
                raise
            self._write_mac_file(layers)
        else:
            self._verify_mac_file(mac_file, layers)
        self._layers = layers
        self._ids = itertools.count(ROOT_INODE_ID + 1)
        self._id_lock = threading.Lock()
        root_layers = LayerSet([VirtualINode(fs.root_inode(), 0) for fs in layers])
        self._root = UnionINode(ROOT_INODE_ID, self, root_layers)
        root_layers.this = weakref.ref(self._root)
        root_layers.parent = weakref.ref(self._root)

    @staticmethod
    def _verify_mac_file(file: INode, layers: Sequence[FileSystem]) -> None:
        offset = 0
        for inner in layers[1:]:
            buf = bytearray(FS_MAC_SIZE)
            length = file.read_at(offset, buf)
            if length != FS_MAC_SIZE or bytes(inner.root_mac()) != bytes(buf):
                raise FsError(ErrorKind.WRONG_FS)
            offset += length
        if file.read_at(offset, bytearray(FS_MAC_SIZE)) != 0:
            raise FsError(ErrorKind.WRONG_FS)

    @staticmethod
    def _write_mac_file(layers: Sequence[FileSystem]) -> None:
        file = layers[0].root_inode().create(MAC_FILE, FileType.FILE, 0o777)
        offset = 0
        for inner in layers[1:]:
            mac = bytes(inner.root_mac())
            if file.write_at(offset, mac) != len(mac):
                raise FsError(ErrorKind.DEVICE_ERROR, EIO)
            offset += len(mac)

    def _alloc_inode_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def _create_inode(
        self,
        layers: list[VirtualINode],
        path_with_mode: PathWithMode,
        opaque: bool,
        id: int | None,
        ext: Extension | None,
    ) -> "UnionINode":
        inode_id = id if id is not None else self._alloc_inode_id()
        return UnionINode(inode_id, self, LayerSet(layers, path_with_mode, opaque), ext)

    def sync(self) -> None:
        for fs in self._layers:
            fs.sync()

    def root_inode(self) -> "UnionINode":
        return self._root

    def info(self) -> FsInfo:
        merged = FsInfo()
        for index, fs in enumerate(self._layers):
            info = fs.info()
            if index == 0:
                merged.bsize = info.bsize
                merged.frsize = info.frsize
                merged.namemax = info.namemax
                merged.bfree = info.bfree
                merged.bavail = info.bavail
                merged.ffree = info.ffree
            merged.blocks = min(merged.blocks + info.blocks, _USIZE_MAX)
            merged.files = min(merged.files + info.files, _USIZE_MAX)
        merged.magic = UNIONFS_MAGIC
        return merged


class UnionINode(INode):
    """An inode of a :class:`UnionFS`, backed by its path in every layer."""

    def __init__(
        self,
        id: int,
        fs: UnionFS,
        layers: LayerSet,
        ext: Extension | None = None,
    ) -> None:
        self.id = id
        self._fs = fs
        self._layers = layers
        self._ext = ext if ext is not None else Extension()
        self._lock = threading.RLock()

    def _child(
        self, name: str, id: int | None = None, ext: Extension | None = None
    ) -> "UnionINode":
        """Build the inode for ``name`` in this directory; the caller holds the lock."""
        parent = self._layers
        layers = [v.find(name) for v in parent.layers]
        real = next((v.as_real() for v in layers if v.is_real()), None)
        if real is None:
            raise FsError(ErrorKind.ENTRY_NOT_FOUND)
        path = parent.path_with_mode.with_next(name, real.metadata().mode)
        opaque = parent.opaque
        container = parent.maybe_container_inode()
        if container is not None and _exists(container, opaque_name(name)):
            opaque = True
        child = self._fs._create_inode(layers, path, opaque, id, ext)
        if child.metadata().type_ is FileType.DIR:
            child._layers.this = weakref.ref(child)
            child._layers.parent = weakref.ref(self)
        return child

    def _require_dir(self) -> None:
        if self.metadata().type_ is not FileType.DIR:
            raise FsError(ErrorKind.NOT_DIR)

    def read_at(self, offset: int, buf) -> int:
        with self._lock:
            return self._layers.inode().read_at(offset, buf)

    def write_at(self, offset: int, data) -> int:
        with self._lock:
            return self._layers.container_inode().write_at(offset, data)

    def poll(self) -> PollStatus:
        with self._lock:
            return self._layers.inode().poll()

    def metadata(self) -> Metadata:
        with self._lock:
            info = self._layers.inode().metadata()
        return dataclasses.replace(info, inode=self.id)

    def set_metadata(self, metadata: Metadata) -> None:
        with self._lock:
            self._layers.container_inode().set_metadata(metadata)

    def sync_all(self) -> None:
        with self._lock:
            container = self._layers.maybe_container_inode()
            if container is not None:
                container.sync_all()

    def sync_data(self) -> None:
        with self._lock:
            container = self._layers.maybe_container_inode()
            if container is not None:
                container.sync_data()

    def fallocate(self, mode: FallocateMode, offset: int, length: int) -> None:
        with self._lock:
            self._layers.container_inode().fallocate(mode, offset, length)

    def resize(self, length: int) -> None:
        with self._lock:
            self._layers.container_inode().resize(length)

    def create(self, name: str, type_: FileType, mode: int) -> "UnionINode":
        self._require_dir()
        if is_reserved(name):
            raise FsError(ErrorKind.INVALID_PARAM)
        if is_self(name) or is_parent(name):
            raise FsError(ErrorKind.ENTRY_EXIST)
        with self._lock:
            if name in self._layers.entries():
                raise FsError(ErrorKind.ENTRY_EXIST)
            container = self._layers.container_inode()
            container.create(name, type_, mode)
            whiteout = whiteout_name(name)
            if _exists(container, whiteout):
                try:
                    if type_ is FileType.DIR:
                        container.move(whiteout, container, opaque_name(name))
                    else:
                        container.unlink(whiteout)
                except FsError:
                    container.unlink(name)
                    raise
            child = self._child(name)
            self._layers.entries()[name] = Entry.for_inode(child)
            return child

    def link(self, name: str, other: INode) -> None:
        self._require_dir()
        if is_reserved(name):
            raise FsError(ErrorKind.INVALID_PARAM)
        if is_self(name) or is_parent(name):
            raise FsError(ErrorKind.ENTRY_EXIST)
        with self._lock:
            if name in self._layers.entries():
                raise FsError(ErrorKind.ENTRY_EXIST)
        if not isinstance(other, UnionINode):
            raise FsError(ErrorKind.NOT_SAME_FS)
        if other.metadata().type_ is FileType.DIR:
            raise FsError(ErrorKind.IS_DIR)
        with other._lock:
            child_inode = other._layers.container_inode()
        with self._lock:
            # another thread may have taken the name meanwhile
            if name in self._layers.entries():
                raise FsError(ErrorKind.ENTRY_EXIST)
            this = self._layers.container_inode()
            this.link(name, child_inode)
            try:
                this.unlink(whiteout_name(name))
            except FsError as exc:
                if exc.kind is not ErrorKind.ENTRY_NOT_FOUND:
                    this.unlink(name)
                    raise
            self._layers.entries()[name] = None

    def unlink(self, name: str) -> None:
        self._require_dir()
        if is_self(name) or is_parent(name):
            raise FsError(ErrorKind.IS_DIR)
        inode = self.find(name)
        inode_type = inode.metadata().type_
        if inode_type is FileType.DIR and len(inode.list()) > 2:
            raise FsError(ErrorKind.DIR_NOT_EMPTY)
        with self._lock:
            entries = self._layers.entries()
            if name not in entries:
                raise FsError(ErrorKind.ENTRY_NOT_FOUND)
            dir_inode = self._layers.container_inode()
            try:
                found = dir_inode.find(name)
            except FsError:
                found = None
            if found is not None:
                if inode_type is FileType.DIR:
                    for elem in found.list():
                        if elem not in (".", ".."):
                            found.unlink(elem)
                    dir_inode.unlink(name)
                    if _exists(dir_inode, opaque_name(name)):
                        dir_inode.unlink(opaque_name(name))
                else:
                    dir_inode.unlink(name)
            with inode._lock:
                has_image = inode._layers.has_image_inode()
            if has_image:
                dir_inode.create(whiteout_name(name), FileType.FILE, 0o777)
            entries.pop(name, None)

    def move(self, old_name: str, target: INode, new_name: str) -> None:
        if is_self(old_name) or is_parent(old_name):
            raise FsError(ErrorKind.IS_DIR)
        if is_self(new_name) or is_parent(new_name):
            raise FsError(ErrorKind.IS_DIR)
        if is_reserved(new_name):
            raise FsError(ErrorKind.INVALID_PARAM)

        old = self.find(old_name)
        old_type = old.metadata().type_
        with old._lock:
            old_has_image = old._layers.has_image_inode()
        # directories that live in an image cannot be renamed
        if old_type is FileType.DIR and old_has_image:
            raise FsError(ErrorKind.NOT_SAME_FS)
        if not isinstance(target, UnionINode):
            raise FsError(ErrorKind.NOT_SAME_FS)
        if target.metadata().type_ is not FileType.DIR:
            raise FsError(ErrorKind.NOT_DIR)
        if old.id == target.id:
            raise FsError(ErrorKind.INVALID_PARAM)

        try:
            existing = target.find(new_name)
        except FsError:
            existing = None
        if existing is not None:
            if old.metadata().inode == existing.metadata().inode:
                return
            new_type = existing.metadata().type_
            if old_type is FileType.DIR and new_type is FileType.DIR:
                if len(existing.list()) > 2:
                    raise FsError(ErrorKind.DIR_NOT_EMPTY)
            elif old_type is FileType.DIR:
                raise FsError(ErrorKind.NOT_DIR)
            elif new_type is FileType.DIR:
                raise FsError(ErrorKind.IS_DIR)
            target.unlink(new_name)

        with old._lock:
            old._layers.container_inode()

        if self.id == target.id:
            with self._lock:
                src = self._layers.container_inode()
                self._move_in_container(src, old_name, src, new_name, old_type, old_has_image)
                moved = self._child(new_name, old.id, old._ext.copy())
                entries = self._layers.entries()
                entries.pop(old_name, None)
                entries[new_name] = Entry.for_inode(moved)
        else:
            first, second = (self, target) if self.id < target.id else (target, self)
            with first._lock, second._lock:
                src = self._layers.container_inode()
                dst = target._layers.container_inode()
                self._move_in_container(src, old_name, dst, new_name, old_type, old_has_image)
                moved = target._child(new_name, old.id, old._ext.copy())
                self._layers.entries().pop(old_name, None)
                target._layers.entries()[new_name] = Entry.for_inode(moved)

    @staticmethod
    def _move_in_container(
        src: INode,
        old_name: str,
        dst: INode,
        new_name: str,
        old_type: FileType,
        old_has_image: bool,
    ) -> None:
        src.move(old_name, dst, new_name)
        if old_has_image:
            try:
                src.create(whiteout_name(old_name), FileType.FILE, 0o777)
            except FsError:
                dst.move(new_name, src, old_name)
                raise
        new_whiteout = whiteout_name(new_name)
        if _exists(dst, new_whiteout):
            try:
                if old_type is FileType.DIR:
                    dst.move(new_whiteout, dst, opaque_name(new_name))
                else:
                    dst.unlink(new_whiteout)
            except FsError:
                dst.move(new_name, src, old_name)
                if old_has_image:
                    src.unlink(whiteout_name(old_name))
                raise

    def find(self, name: str) -> "UnionINode":
        self._require_dir()
        with self._lock:
            if is_self(name):
                return _deref(self._layers.this)
            if is_parent(name):
                return _deref(self._layers.parent)
            entries = self._layers.entries()
            if name not in entries:
                raise FsError(ErrorKind.ENTRY_NOT_FOUND)
            entry = entries[name]
            reused_id = None
            if entry is not None:
                inode = entry.as_inode()
                if inode is not None:
                    return inode
                reused_id = entry.id
            child = self._child(name, reused_id)
            entries[name] = Entry.for_inode(child)
            return child

    def get_entry(self, index: int) -> str:
        self._require_dir()
        if index == 0:
            return "."
        if index == 1:
            return ".."
        with self._lock:
            names = sorted(self._layers.entries())
        if index - 2 < len(names):
            return names[index - 2]
        raise FsError(ErrorKind.ENTRY_NOT_FOUND)

    def iterate_entries(self, offset: int, visitor: DirentVisitor) -> int:
        self._require_dir()
        current = offset
        try:
            if current == 0:
                with self._lock:
                    this = _deref(self._layers.this)
                current = visit_inode_entry(visitor, ".", this, current)
            if current == 1:
                with self._lock:
                    parent = _deref(self._layers.parent)
                current = visit_inode_entry(visitor, "..", parent, current)
            with self._lock:
                entries = self._layers.entries()
                for name in sorted(entries)[current - 2 :]:
                    entry = entries[name]
                    inode = entry.as_inode() if entry is not None else None
                    if inode is None:
                        inode = self._child(name, entry.id if entry is not None else None)
                        entries[name] = Entry.for_inode(inode)
                    current = visit_inode_entry(visitor, name, inode, current)
        except FsError:
            if current == offset:
                raise
        return current - offset

    def ext(self) -> Extension:
        return self._ext

    def io_control(self, cmd: int, data: int) -> None:
        with self._lock:
            self._layers.inode().io_control(cmd, data)

    def fs(self) -> UnionFS:
        return self._fs