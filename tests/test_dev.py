import time

import pytest

from layerfs.dev import BlockDevice, FileDevice, StdTimeProvider
from layerfs.errors import EINVAL, EIO, DevError


class SixteenBytes(BlockDevice):
    BLOCK_SIZE_LOG2 = 2

    def __init__(self, data):
        self.data = bytearray(data)

    def read_block(self, block_id, buf):
        if block_id >= 4:
            raise DevError(EINVAL)
        begin = block_id << 2
        buf[:4] = self.data[begin : begin + 4]

    def write_block(self, block_id, data):
        if block_id >= 4:
            raise DevError(EINVAL)
        begin = block_id << 2
        self.data[begin : begin + 4] = bytes(data[:4])

    def sync(self):
        pass


def test_read():
    dev = SixteenBytes(range(16))
    res = bytearray(6)

    # all inside
    assert BlockDevice.read_at(dev, 3, res) == 6
    assert list(res) == [3, 4, 5, 6, 7, 8]

    # partly inside
    assert BlockDevice.read_at(dev, 11, res) == 5
    assert list(res) == [11, 12, 13, 14, 15, 8]

    # all outside
    assert BlockDevice.read_at(dev, 16, res) == 0
    assert list(res) == [11, 12, 13, 14, 15, 8]


def test_write():
    dev = SixteenBytes(bytes(16))
    res = bytes([3, 4, 5, 6, 7, 8])

    # all inside
    assert BlockDevice.write_at(dev, 3, res) == 6
    assert list(dev.data) == [0, 0, 0, 3, 4, 5, 6, 7, 8, 0, 0, 0, 0, 0, 0, 0]

    # partly inside
    assert BlockDevice.write_at(dev, 11, res) == 5
    assert list(dev.data) == [0, 0, 0, 3, 4, 5, 6, 7, 8, 0, 0, 3, 4, 5, 6, 7]

    # all outside
    assert BlockDevice.write_at(dev, 16, res) == 0
    assert list(dev.data) == [0, 0, 0, 3, 4, 5, 6, 7, 8, 0, 0, 3, 4, 5, 6, 7]


def test_file_device_round_trip(tmp_path):
    path = tmp_path / "disk.img"
    with open(path, "w+b") as fh:
        dev = FileDevice(fh)
        assert dev.write_at(4, b"payload") == 7
        dev.sync()
        buf = bytearray(7)
        assert dev.read_at(4, buf) == 7
        assert bytes(buf) == b"payload"
    assert path.read_bytes() == b"\x00" * 4 + b"payload"


def test_file_device_short_read_at_end(tmp_path):
    path = tmp_path / "disk.img"
    path.write_bytes(b"abcdef")
    with open(path, "r+b") as fh:
        dev = FileDevice(fh)
        buf = bytearray(10)
        assert dev.read_at(4, buf) == 2
        assert bytes(buf[:2]) == b"ef"
        assert dev.read_at(100, buf) == 0


def test_file_device_write_failure_is_dev_error(tmp_path):
    path = tmp_path / "disk.img"
    path.write_bytes(b"abc")
    with open(path, "rb") as fh:
        dev = FileDevice(fh)
        with pytest.raises(DevError) as info:
            dev.write_at(0, b"x")
    assert info.value.code == EIO


def test_std_time_provider_is_close_to_now():
    now = StdTimeProvider().current_time()
    assert abs(now.sec - time.time()) < 5
    assert 0 <= now.nsec < 1_000_000_000