# layerfs

`layerfs` is a small virtual file system toolkit in pure Python with no
dependencies outside the standard library. It contains the following modules.

- **`layerfs.vfs`** defines the abstract `INode` and `FileSystem` classes. It
  also defines `FileType`, `Metadata`, `Timespec`, `FsInfo`, `PollStatus`,
  `FallocateMode`, `AllocFlags` and `IoctlError`, and the directory visitors
  `DirentVisitor` and `EntryCollector`.
  - `Extension` stores one object per type for each inode.
  - `INode.lookup` resolves a slash-separated path. `INode.lookup_follow` does
    the same and follows symbolic links up to a given number of times.
  - `INode.list`, `INode.read_all` and `INode.read_elf64_lazy` are helpers that
    work on top of the basic operations.
  - `metadata_from_stat` builds a `Metadata` from an `os.stat_result`.
  - `make_rdev` packs a major and a minor device number into one value.
- **`layerfs.errors`**
  - `FsError` carries an `ErrorKind`. It also has a `code`, which is set only
    for `ErrorKind.DEVICE_ERROR`.
  - `DevError` carries an errno code.
  - `fs_error_from_os_error` and `dev_error_from_os_error` turn host
    exceptions into these errors.
- **`layerfs.dev`**
  - `Device` reads and writes at byte offsets.
  - `BlockDevice` reads and writes whole blocks with `read_block` and
    `write_block`. Its `read_at` and `write_at` work in bytes on top of those.
    They stop at the first block that fails and return the number of bytes
    transferred up to that point.
  - `FileDevice` wraps a seekable binary file object and locks around each
    access.
  - `StdTimeProvider` returns the current time as a `Timespec`.
- **`layerfs.block_cache`**: `BlockCache` is a write-back cache with
  least-recently-used eviction that wraps any `BlockDevice`.
  - Dirty blocks are written to the device when they are evicted, or when you
    call `sync()` or `close()`.
  - A `BlockCache` can be used as a context manager.
- **`layerfs.util`**: `block_ranges(begin, end, block_size_log2)` yields one
  `BlockRange` for each block that a byte range touches.
- **`layerfs.dirty`**: `Dirty` wraps a value and sets a dirty flag whenever the
  value is assigned or taken through `writable`.
  - `sync()` clears the flag.
  - `close()` raises `RuntimeError` if the value is still dirty.
- **`layerfs.file`**: `File` is a handle that reads and writes an inode from a
  current offset.
- **`layerfs.union_layers`** holds the state that the union file system keeps
  for each path. This includes `LayerSet`, `VirtualINode`, `PathWithMode`,
  `merge_entries` and the helpers for reserved names.
- **`layerfs.unionfs`**: `UnionFS` lays one writable *container* file system
  over any number of read-only *image* file systems.

## Block devices

Subclass `BlockDevice`, set `BLOCK_SIZE_LOG2`, and implement `read_block`,
`write_block` and `sync`:

```python
from layerfs.dev import BlockDevice
from layerfs.block_cache import BlockCache

class MemoryDisk(BlockDevice):
    BLOCK_SIZE_LOG2 = 9

    def __init__(self, blocks):
        self.data = bytearray(blocks << self.BLOCK_SIZE_LOG2)

    def read_block(self, block_id, buf):
        size = 1 << self.BLOCK_SIZE_LOG2
        memoryview(buf)[:size] = self.data[block_id * size:(block_id + 1) * size]

    def write_block(self, block_id, data):
        size = 1 << self.BLOCK_SIZE_LOG2
        self.data[block_id * size:(block_id + 1) * size] = memoryview(data)[:size]

    def sync(self):
        pass

with BlockCache(MemoryDisk(16), capacity=4) as cache:
    cache.write_at(100, b"hello")
    buf = bytearray(5)
    cache.read_at(100, buf)
```

## The union file system

```python
from layerfs.unionfs import UnionFS
from layerfs.vfs import FileType

union = UnionFS([container_fs, image_fs])  # the first layer is writable
root = union.root_inode()

root.lookup("dir/file4").write_at(0, b"hello")   # copied up into the container
root.unlink("file3")                              # hidden by a whiteout file
new_dir = root.create("fresh", FileType.DIR, 0o755)
print(root.list())
```

How the layers combine:

- **Reads.** A read comes from the uppermost layer that holds the path.
  Directory listings merge the entries of all layers. After `.` and `..`, the
  entries are listed in name order.
- **Writes.** Changing a file that exists only in an image first copies it up
  into the container. Any missing parent directories are created with the
  modes they have in the image.
- **Whiteouts.** Deleting an entry that an image provides creates a whiteout
  file in the container. Its name starts with `.ufs.wh.`.
- **Opaque directories.** A directory created where a whiteout used to be gets
  an opaque marker file, whose name starts with `.ufs.opq.`. The marker keeps
  the image's contents hidden beneath the new directory.
- **Layer check.** On first use, the container gets a `.ufs.mac` file that
  records the root MAC of each image. Opening the union later with different
  images raises `FsError` with `ErrorKind.WRONG_FS`.
- **Renaming.** A directory that exists in an image cannot be moved. Trying
  raises `FsError` with `ErrorKind.NOT_SAME_FS`.

Creating a name that starts with `.ufs.wh.` or `.ufs.opq.`, or the name
`.ufs.mac` itself, raises `FsError` with `ErrorKind.INVALID_PARAM`.

## What is not included

- **No concrete file system.** The package has no in-memory, on-disk or
  encrypted file system. `UnionFS` needs `FileSystem` implementations that you
  supply.
- **No command-line tool.**
- **No way to mount a file system on the host operating system.**

## Running the tests

```
pip install ".[test]"
pytest
```