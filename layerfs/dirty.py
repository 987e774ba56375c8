"""A value wrapper that remembers whether it was written."""

from __future__ import annotations

from typing import Generic, TypeVar

T = TypeVar("T")


class Dirty(Generic[T]):
    """Holds a value and sets a dirty flag whenever it is written.

    Writing happens by assigning :attr:`value` or by taking :attr:`writable`
    for in-place changes; :meth:`sync` clears the flag.
    """

    def __init__(self, value: T, dirty: bool = False) -> None:
        self._value = value
        self._dirty = dirty

    @property
    def value(self) -> T:
        return self._value

    @value.setter
    def value(self, value: T) -> None:
        self._dirty = True
        self._value = value

    @property
    def writable(self) -> T:
        """The value, for changing in place; marks it dirty."""
        self._dirty = True
        return self._value

    @property
    def dirty(self) -> bool:
        return self._dirty

    def sync(self) -> None:
        """Mark the value clean."""
        self._dirty = False

    def close(self) -> None:
        """Check that the value is not left dirty."""
        if self._dirty:
            raise RuntimeError("data dirty when dropping")

    def __enter__(self) -> "Dirty[T]":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()

    def __repr__(self) -> str:
        tag = "Dirty" if self._dirty else "Clean"
        return f"[{tag}] {self._value!r}"