"""The interface every TUN device implements."""

from __future__ import annotations

import abc
import enum
from collections.abc import Iterable, Sequence
from typing import BinaryIO


class Event(enum.IntFlag):
    """Events a device reports about its link."""

    UP = 1
    DOWN = 2
    MTU_UPDATE = 4


class Device(abc.ABC):
    """A TUN device that moves whole IP packets in batches.

    A device is a context manager: leaving the ``with`` block closes it.
    """

    @abc.abstractmethod
    def file(self) -> BinaryIO | None:
        """Return the file object backing the device, if there is one."""

    @abc.abstractmethod
    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Read one or more packets into ``bufs``, each starting at ``offset``.

        Returns the size of every packet read, in order; the length of the
        returned list is the number of packets read and never exceeds
        ``len(bufs)``.
        """

    @abc.abstractmethod
    def write(self, bufs: Sequence[bytearray], offset: int) -> int:
        """Write the packets in ``bufs``, each starting at ``offset``.

        Returns the number of packets (or bytes, for batching devices)
        written.
        """

    @abc.abstractmethod
    def mtu(self) -> int:
        """Return the MTU of the device."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the current name of the device."""

    @abc.abstractmethod
    def events(self) -> Iterable[Event]:
        """Return the source of device events; it ends when the device closes."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop the device and end its event stream."""

    @abc.abstractmethod
    def batch_size(self) -> int:
        """Return the preferred and maximum number of packets per read or write.

        The value never changes over the lifetime of a device.
        """

    def __enter__(self) -> Device:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()