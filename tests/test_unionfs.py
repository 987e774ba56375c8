import itertools
from dataclasses import dataclass

import pytest

from layerfs.errors import ErrorKind, FsError
from layerfs.unionfs import UNIONFS_MAGIC, UnionFS
from layerfs.vfs import (
    DirentVisitor,
    EntryCollector,
    FileSystem,
    FileType,
    FsInfo,
    INode,
    Metadata,
)

MODE = 0o777


class RamINode(INode):
    def __init__(self, fs, type_, mode, ino):
        self._fs = fs
        self.type_ = type_
        self.mode = mode
        self.ino = ino
        self.data = bytearray()
        self.children = {}
        self.parent = self

    def read_at(self, offset, buf):
        if self.type_ is FileType.DIR:
            raise FsError(ErrorKind.NOT_FILE)
        view = memoryview(buf)
        chunk = self.data[offset : offset + len(view)]
        view[: len(chunk)] = chunk
        return len(chunk)

    def write_at(self, offset, data):
        if self.type_ is FileType.DIR:
            raise FsError(ErrorKind.NOT_FILE)
        data = bytes(data)
        end = offset + len(data)
        if len(self.data) < end:
            self.data.extend(bytes(end - len(self.data)))
        self.data[offset:end] = data
        return len(data)

    def metadata(self):
        size = len(self.children) + 2 if self.type_ is FileType.DIR else len(self.data)
        return Metadata(inode=self.ino, size=size, type_=self.type_, mode=self.mode, nlinks=1)

    def sync_all(self):
        pass

    def sync_data(self):
        pass

    def _dir(self):
        if self.type_ is not FileType.DIR:
            raise FsError(ErrorKind.NOT_DIR)

    def create(self, name, type_, mode):
        self._dir()
        if name in (".", "..", "") or name in self.children:
            raise FsError(ErrorKind.ENTRY_EXIST)
        node = RamINode(self._fs, type_, mode, self._fs.next_ino())
        node.parent = self
        self.children[name] = node
        return node

    def link(self, name, other):
        self._dir()
        if name in self.children:
            raise FsError(ErrorKind.ENTRY_EXIST)
        self.children[name] = other

    def unlink(self, name):
        self._dir()
        child = self.children.get(name)
        if child is None:
            raise FsError(ErrorKind.ENTRY_NOT_FOUND)
        if child.type_ is FileType.DIR and child.children:
            raise FsError(ErrorKind.DIR_NOT_EMPTY)
        del self.children[name]

    def move(self, old_name, target, new_name):
        self._dir()
        if not isinstance(target, RamINode):
            raise FsError(ErrorKind.NOT_SAME_FS)
        node = self.children.pop(old_name, None)
        if node is None:
            raise FsError(ErrorKind.ENTRY_NOT_FOUND)
        target.children[new_name] = node
        node.parent = target

    def find(self, name):
        self._dir()
        if name in (".", ""):
            return self
        if name == "..":
            return self.parent
        try:
            return self.children[name]
        except KeyError:
            raise FsError(ErrorKind.ENTRY_NOT_FOUND) from None

    def get_entry(self, index):
        self._dir()
        names = [".", ".."] + list(self.children)
        if index < len(names):
            return names[index]
        raise FsError(ErrorKind.ENTRY_NOT_FOUND)

    def fs(self):
        return self._fs


class RamFS(FileSystem):
    def __init__(self, mac=bytes(16), blocks=10, files=5):
        self._ids = itertools.count(1)
        self.mac = mac
        self.blocks = blocks
        self.files = files
        self.syncs = 0
        self.root = RamINode(self, FileType.DIR, MODE, self.next_ino())

    def next_ino(self):
        return next(self._ids)

    def sync(self):
        self.syncs += 1

    def root_inode(self):
        return self.root

    def root_mac(self):
        return self.mac

    def info(self):
        return FsInfo(magic=1, bsize=4096, frsize=512, blocks=self.blocks, bfree=3,
                      bavail=2, files=self.files, ffree=1, namemax=255)


def create_sample():
    container_fs = RamFS()
    root = container_fs.root_inode()
    root.create("file1", FileType.File if False else FileType.FILE, MODE).write_at(0, b"container")
    root.create("file2", FileType.FILE, MODE).write_at(0, b"container")

    image_fs = RamFS()
    root = image_fs.root_inode()
    root.create("file1", FileType.FILE, MODE).write_at(0, b"image")
    root.create("file3", FileType.FILE, MODE).write_at(0, b"image")
    directory = root.create("dir", FileType.DIR, MODE)
    directory.create("file4", FileType.FILE, MODE).write_at(0, b"image")
    dir2 = directory.create("dir2", FileType.DIR, MODE)
    dir2.create("file5", FileType.FILE, MODE).write_at(0, b"image")

    unionfs = UnionFS([container_fs, image_fs])
    return unionfs, container_fs.root_inode(), image_fs.root_inode()


def assert_not_found(inode, path):
    with pytest.raises(FsError) as info:
        inode.lookup(path)
    assert info.value.kind is ErrorKind.ENTRY_NOT_FOUND


def test_read_file():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    assert root.lookup("file1").read_all() == b"container"
    assert root.lookup("file2").read_all() == b"container"
    assert root.lookup("file3").read_all() == b"image"
    assert root.lookup("dir/file4").read_all() == b"image"


def test_write_file():
    fs, croot, iroot = create_sample()
    root = fs.root_inode()
    data = b"I'm writing to container"
    for path in ["file1", "file3", "dir/file4", "/dir/dir2/file5"]:
        root.lookup(path).write_at(0, data)
        assert croot.lookup(path).read_all() == data
        assert iroot.lookup(path).read_all() == b"image"
        assert croot.lookup(path).metadata().mode == iroot.lookup(path).metadata().mode
    assert croot.lookup("dir").metadata().mode == iroot.lookup("dir").metadata().mode
    assert croot.lookup("dir/dir2").metadata().mode == iroot.lookup("dir/dir2").metadata().mode


def test_get_direntry():
    fs, _, _ = create_sample()
    entries = set(fs.root_inode().list())
    assert entries == {".", "..", "file1", "file2", "file3", "dir"}


def test_unlink():
    fs, croot, iroot = create_sample()
    root = fs.root_inode()

    root.unlink("file1")
    assert_not_found(root, "file1")
    assert_not_found(croot, "file1")
    croot.lookup(".ufs.wh.file1")
    assert iroot.lookup("file1").read_all() == b"image"

    root.unlink("file2")
    assert_not_found(root, "file2")
    assert_not_found(croot, "file2")
    assert_not_found(croot, ".ufs.wh.file2")

    root.unlink("file3")
    assert_not_found(root, "file3")
    assert croot.lookup(".ufs.wh.file3").metadata().type_ is FileType.FILE
    assert iroot.lookup("file3").read_all() == b"image"

    root.lookup("dir").unlink("file4")
    assert_not_found(root, "dir/file4")
    assert croot.lookup("dir/.ufs.wh.file4").metadata().type_ is FileType.FILE
    assert iroot.lookup("dir/file4").read_all() == b"image"

    root.lookup("dir").lookup("dir2").unlink("file5")
    assert_not_found(root, "dir/dir2/file5")
    assert croot.lookup("dir/dir2/.ufs.wh.file5").metadata().type_ is FileType.FILE
    assert iroot.lookup("dir/dir2/file5").read_all() == b"image"

    root.lookup("dir").unlink("dir2")
    assert_not_found(root, "dir/dir2")
    assert croot.lookup("dir/.ufs.wh.dir2").metadata().type_ is FileType.FILE
    assert iroot.lookup("dir/dir2").metadata().type_ is FileType.DIR

    root.unlink("dir")
    assert_not_found(root, "dir")
    assert croot.lookup(".ufs.wh.dir").metadata().type_ is FileType.FILE
    assert iroot.lookup("dir").metadata().type_ is FileType.DIR


def test_unlink_then_create():
    fs, croot, iroot = create_sample()
    root = fs.root_inode()
    root.unlink("file1")
    file1 = root.create("file1", FileType.FILE, MODE)
    assert file1.read_all() == b""
    assert_not_found(croot, ".ufs.wh.file1")

    for name in [".ufs.wh.file1", ".ufs.opq.file1", ".ufs.mac"]:
        with pytest.raises(FsError) as info:
            root.create(name, FileType.FILE, MODE)
        assert info.value.kind is ErrorKind.INVALID_PARAM

    root.unlink("file1")
    file1 = root.create("file1", FileType.DIR, MODE)
    assert root.lookup("file1").metadata().type_ is FileType.DIR
    assert croot.lookup("file1").metadata().type_ is FileType.DIR
    assert iroot.lookup("file1").metadata().type_ is FileType.FILE
    file1.create("file6", FileType.FILE, MODE)
    assert root.lookup("file1/file6").metadata().type_ is FileType.FILE
    assert croot.lookup("file1/file6").metadata().type_ is FileType.FILE
    with pytest.raises(FsError):
        iroot.lookup("file1/file6")

    root.lookup("dir").unlink("file4")
    root.lookup("dir/dir2").unlink("file5")
    root.lookup("dir").unlink("dir2")
    root.unlink("dir")
    directory = root.create("dir", FileType.DIR, MODE)
    assert root.lookup("dir").metadata().type_ is FileType.DIR
    assert_not_found(croot, ".ufs.wh.dir")
    assert croot.lookup(".ufs.opq.dir").metadata().type_ is FileType.FILE
    assert len(iroot.lookup("dir").list()) == 4
    assert len(root.lookup("dir").list()) == 2

    directory.create("dir2", FileType.DIR, MODE)
    assert root.lookup("dir/dir2").metadata().type_ is FileType.DIR
    assert_not_found(croot, "dir/.ufs.wh.dir2")
    assert iroot.lookup("dir/dir2").metadata().type_ is FileType.DIR
    assert len(root.lookup("dir/dir2").list()) == 2
    assert len(iroot.lookup("dir/dir2").list()) == 3

    directory.unlink("dir2")
    root.unlink("dir")
    assert_not_found(root, "dir")
    assert croot.lookup(".ufs.wh.dir").metadata().type_ is FileType.FILE
    assert_not_found(croot, ".ufs.opq.dir")


def test_link_container():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    directory = root.lookup("dir")
    file1 = root.lookup("file1")
    directory.link("file1_link", file1)
    file1_link = root.lookup("dir/file1_link")
    assert file1_link.read_all() == b"container"
    data = b"I'm writing to container"
    file1_link.write_at(0, data)
    assert file1.read_all() == data


def test_link_image():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    directory = root.lookup("dir")
    file3 = root.lookup("file3")
    directory.link("file3_link", file3)
    file3_link = root.lookup("dir/file3_link")
    assert file3_link.read_all() == b"image"
    data = b"I'm writing to container"
    file3_link.write_at(0, data)
    assert file3.read_all() == data


def test_move_container():
    fs, croot, _ = create_sample()
    root = fs.root_inode()
    directory = root.lookup("dir")
    root.move("file1", directory, "file1")
    assert_not_found(root, "file1")
    assert root.lookup("dir/file1").read_all() == b"container"
    assert_not_found(croot, "file1")
    assert croot.lookup(".ufs.wh.file1").metadata().type_ is FileType.FILE
    assert croot.lookup("dir/file1").read_all() == b"container"


def test_move_image():
    fs, croot, iroot = create_sample()
    root = fs.root_inode()
    directory = root.lookup("dir")
    directory.move("file4", root, "file4")
    assert_not_found(directory, "file4")
    assert root.lookup("file4").read_all() == b"image"
    assert croot.lookup("dir/.ufs.wh.file4").metadata().type_ is FileType.FILE
    assert iroot.lookup("dir/file4").read_all() == b"image"


@dataclass
class Tag:
    label: str


def test_move_container_directory():
    fs, croot, _ = create_sample()
    root = fs.root_inode()
    root.create("newdir", FileType.DIR, MODE)
    directory = root.lookup("dir")
    root.move("newdir", directory, "moved")
    assert root.lookup("dir/moved").metadata().type_ is FileType.DIR
    assert croot.lookup("dir/moved").metadata().type_ is FileType.DIR
    assert_not_found(croot, ".ufs.wh.newdir")
    assert_not_found(root, "newdir")


def test_move_errors():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    with pytest.raises(FsError) as info:
        root.move("dir", root, "dir3")
    assert info.value.kind is ErrorKind.NOT_SAME_FS
    with pytest.raises(FsError) as info:
        root.move("file1", root, "dir")
    assert info.value.kind is ErrorKind.IS_DIR
    with pytest.raises(FsError) as info:
        root.move("file1", root, ".ufs.wh.x")
    assert info.value.kind is ErrorKind.INVALID_PARAM
    with pytest.raises(FsError) as info:
        root.move(".", root, "x")
    assert info.value.kind is ErrorKind.IS_DIR


def test_create_and_link_errors():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    with pytest.raises(FsError) as info:
        root.create("file3", FileType.FILE, MODE)
    assert info.value.kind is ErrorKind.ENTRY_EXIST
    with pytest.raises(FsError) as info:
        root.create("..", FileType.FILE, MODE)
    assert info.value.kind is ErrorKind.ENTRY_EXIST
    with pytest.raises(FsError) as info:
        root.link("dir_link", root.lookup("dir"))
    assert info.value.kind is ErrorKind.IS_DIR
    with pytest.raises(FsError) as info:
        root.lookup("file1").find("x")
    assert info.value.kind is ErrorKind.NOT_DIR


def test_unlink_errors():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    with pytest.raises(FsError) as info:
        root.unlink("missing")
    assert info.value.kind is ErrorKind.ENTRY_NOT_FOUND
    with pytest.raises(FsError) as info:
        root.unlink("dir")
    assert info.value.kind is ErrorKind.DIR_NOT_EMPTY
    with pytest.raises(FsError) as info:
        root.unlink("..")
    assert info.value.kind is ErrorKind.IS_DIR


def test_get_entry_in_name_order():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    assert [root.get_entry(i) for i in range(6)] == [".", "..", "dir", "file1", "file2", "file3"]
    with pytest.raises(FsError) as info:
        root.get_entry(6)
    assert info.value.kind is ErrorKind.ENTRY_NOT_FOUND


def test_iterate_entries():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    collector = EntryCollector()
    assert root.iterate_entries(0, collector) == 6
    assert collector.names == [".", "..", "dir", "file1", "file2", "file3"]
    tail = EntryCollector()
    assert root.iterate_entries(3, tail) == 3
    assert tail.names == ["file1", "file2", "file3"]


class LimitedVisitor(DirentVisitor):
    def __init__(self, limit):
        self.limit = limit
        self.names = []

    def visit_entry(self, name, ino, type_, offset):
        if len(self.names) >= self.limit:
            raise FsError(ErrorKind.AGAIN)
        self.names.append(name)


def test_iterate_entries_stops_on_visitor_error():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    visitor = LimitedVisitor(2)
    assert root.iterate_entries(0, visitor) == 2
    assert visitor.names == [".", ".."]
    with pytest.raises(FsError) as info:
        root.iterate_entries(0, LimitedVisitor(0))
    assert info.value.kind is ErrorKind.AGAIN


def test_root_identity():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    assert root.metadata().inode == 2
    assert root.find("..") is root
    assert root.lookup("dir").find("..") is root
    assert root.lookup("dir").fs() is fs


def test_file_id_is_stable_across_lookups():
    fs, _, _ = create_sample()
    root = fs.root_inode()
    first = root.lookup("file3").metadata().inode
    second = root.lookup("file3").metadata().inode
    assert first == second
    assert first != root.lookup("file2").metadata().inode


def test_mac_file_recorded_and_verified():
    container = RamFS()
    image = RamFS(mac=b"\x01" * 16)
    UnionFS([container, image])
    assert container.root_inode().find(".ufs.mac").read_all() == b"\x01" * 16
    again = UnionFS([container, image])
    assert again.root_inode().list() == [".", ".."]
    for layers in ([container, RamFS(mac=b"\x02" * 16)], [container], [container, image, image]):
        with pytest.raises(FsError) as info:
            UnionFS(layers)
        assert info.value.kind is ErrorKind.WRONG_FS


def test_info_and_sync():
    container = RamFS(blocks=10, files=5)
    image = RamFS(blocks=7, files=4)
    fs = UnionFS([container, image])
    info = fs.info()
    assert info.magic == UNIONFS_MAGIC
    assert info.blocks == 17
    assert info.files == 9
    assert (info.bsize, info.frsize, info.bfree, info.bavail, info.ffree, info.namemax) == (
        4096, 512, 3, 2, 1, 255,
    )
    fs.sync()
    assert (container.syncs, image.syncs) == (1, 1)