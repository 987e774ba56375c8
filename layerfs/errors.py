"""Error types shared by the file system layers and the devices below them."""

from __future__ import annotations

import errno
import enum

EIO = 5
EINVAL = 22


class ErrorKind(enum.Enum):
    """The kinds of failure a file system operation can report."""

    NOT_SUPPORTED = "NotSupported"
    NOT_FILE = "NotFile"
    IS_DIR = "IsDir"
    NOT_DIR = "NotDir"
    ENTRY_NOT_FOUND = "EntryNotFound"
    ENTRY_EXIST = "EntryExist"
    NOT_SAME_FS = "NotSameFs"
    INVALID_PARAM = "InvalidParam"
    NO_DEVICE_SPACE = "NoDeviceSpace"
    DIR_REMOVED = "DirRemoved"
    DIR_NOT_EMPTY = "DirNotEmpty"
    WRONG_FS = "WrongFs"
    DEVICE_ERROR = "DeviceError"
    IOCTL_ERROR = "IOCTLError"
    NO_DEVICE = "NoDevice"
    AGAIN = "Again"
    SYM_LOOP = "SymLoop"
    BUSY = "Busy"
    WR_PROTECTED = "WrProtected"
    NO_INTEGRITY = "NoIntegrity"
    PERM_ERROR = "PermError"
    NAME_TOO_LONG = "NameTooLong"
    FILE_TOO_BIG = "FileTooBig"
    OP_NOT_SUPPORTED = "OpNotSupported"
    NOT_MOUNT_POINT = "NotMountPoint"


class FsError(Exception):
    """A file system failure; ``code`` carries the errno of a device error."""

    def __init__(self, kind: ErrorKind, code: int | None = None) -> None:
        if kind is ErrorKind.DEVICE_ERROR:
            if code is None:
                raise ValueError("a device error needs an error code")
        elif code is not None:
            raise ValueError(f"{kind.value} does not carry an error code")
        self.kind = kind
        self.code = code
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.code is None:
            return self.kind.value
        return f"{self.kind.value}({self.code})"

    def __repr__(self) -> str:
        return f"FsError({self})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FsError):
            return NotImplemented
        return (self.kind, self.code) == (other.kind, other.code)

    def __hash__(self) -> int:
        return hash((self.kind, self.code))


class DevError(Exception):
    """A device failure identified by an errno value."""

    def __init__(self, code: int) -> None:
        self.code = code
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"DevError({self.code})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DevError):
            return NotImplemented
        return self.code == other.code

    def __hash__(self) -> int:
        return hash(self.code)


_ERRNO_KINDS = {
    errno.ENOENT: ErrorKind.ENTRY_NOT_FOUND,
    errno.EEXIST: ErrorKind.ENTRY_EXIST,
    errno.EAGAIN: ErrorKind.AGAIN,
    errno.EWOULDBLOCK: ErrorKind.AGAIN,
    errno.EINVAL: ErrorKind.INVALID_PARAM,
}


def fs_error_from_os_error(exc: BaseException) -> FsError:
    """Translate an I/O exception from the host into an :class:`FsError`.

    Undecodable data counts as an invalid parameter; errno values with no
    file system meaning raise :class:`ValueError`.
    """
    if isinstance(exc, OSError):
        kind = _ERRNO_KINDS.get(exc.errno)
        if kind is None:
            raise ValueError(f"no file system error matches {exc!r}") from exc
        return FsError(kind)
    if isinstance(exc, ValueError):
        return FsError(ErrorKind.INVALID_PARAM)
    raise TypeError(f"not an I/O error: {exc!r}")


def dev_error_from_os_error(exc: OSError) -> DevError:
    """Translate an :class:`OSError` into a :class:`DevError`, defaulting to EIO."""
    return DevError(exc.errno if exc.errno else EIO)