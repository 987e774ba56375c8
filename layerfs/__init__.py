"""Virtual file system toolkit: inodes, block devices, an LRU block cache and a union file system."""

__version__ = "0.1.0"