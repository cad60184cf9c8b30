"""An in-memory TUN device fed through queues, and a ping packet builder."""

from __future__ import annotations

import errno
import ipaddress
import queue
import struct
import threading
from collections.abc import Iterator, Sequence

from .checksum import checksum
from .device import Device, Event

DEFAULT_MTU = 1420

_ICMPV4_PROTOCOL_NUMBER = 1
_ICMPV4_ECHO = 8
_ICMPV4_CHECKSUM_OFFSET = 2
_ICMPV4_SIZE = 8
_IPV4_SIZE = 20
_IPV4_TOTAL_LEN_OFFSET = 2
_IPV4_CHECKSUM_OFFSET = 10
_TTL = 65
_HEADER_SIZE = _IPV4_SIZE + _ICMPV4_SIZE

_POLL_INTERVAL = 0.05
_END = object()


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "device already closed")


def _gen_icmpv4(payload: bytes, dst, src) -> bytes:
    pkt = bytearray(_HEADER_SIZE + len(payload))

    # ICMP echo header (type, code, checksum, rest zero).
    icmp_at = _IPV4_SIZE
    pkt[icmp_at] = _ICMPV4_ECHO
    pkt[icmp_at + 1] = 0
    payload_sum = ~checksum(payload) & 0xFFFF
    icmp_csum = checksum(pkt[icmp_at:icmp_at + _ICMPV4_SIZE], payload_sum)
    struct.pack_into(">H", pkt, icmp_at + _ICMPV4_CHECKSUM_OFFSET, icmp_csum)

    # IPv4 header.
    pkt[0] = (4 << 4) | (_IPV4_SIZE // 4)
    struct.pack_into(">H", pkt, _IPV4_TOTAL_LEN_OFFSET, len(pkt))
    pkt[8] = _TTL
    pkt[9] = _ICMPV4_PROTOCOL_NUMBER
    pkt[12:16] = src.packed
    pkt[16:20] = dst.packed
    ip_csum = checksum(pkt[:_IPV4_SIZE])
    struct.pack_into(">H", pkt, _IPV4_CHECKSUM_OFFSET, ip_csum)

    pkt[_HEADER_SIZE:] = payload
    return bytes(pkt)


def ping(dst, src) -> bytes:
    """Build an ICMPv4 echo request from ``src`` to ``dst``.

    Addresses may be strings or ``ipaddress.IPv4Address`` objects.
    """
    dst_addr = ipaddress.IPv4Address(dst) if not isinstance(dst, ipaddress.IPv4Address) else dst
    src_addr = ipaddress.IPv4Address(src) if not isinstance(src, ipaddress.IPv4Address) else src
    local_port = 1337
    seq = 0
    payload = struct.pack(">HH", local_port, seq)
    return _gen_icmpv4(payload, dst_addr, src_addr)


class ChannelTUN:
    """A loopback TUN whose traffic passes through two queues.

    Packets the device writes appear on ``inbound``; packets put on
    ``outbound`` are what the device reads.
    """

    def __init__(self) -> None:
        self.inbound: queue.Queue[bytes] = queue.Queue()
        self.outbound: queue.Queue[bytes] = queue.Queue()
        self._closed = threading.Event()
        self._events: queue.Queue = queue.Queue()
        self._events.put(Event.UP)
        self._device = ChannelDevice(self)

    def tun(self) -> ChannelDevice:
        """Return the device side of this loopback."""
        return self._device


class ChannelDevice(Device):
    """The device view of a :class:`ChannelTUN`."""

    def __init__(self, channel: ChannelTUN) -> None:
        self._c = channel
        self._close_lock = threading.Lock()

    def file(self) -> None:
        return None

    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Wait for one packet on ``outbound`` and copy it into ``bufs[0]``."""
        while True:
            if self._c._closed.is_set():
                raise _closed_error()
            try:
                msg = self._c.outbound.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if self._c._closed.is_set():
                raise _closed_error()
            buf = bufs[0]
            n = min(len(msg), max(0, len(buf) - offset))
            buf[offset:offset + n] = msg[:n]
            return [n]

    def write(self, bufs: Sequence[bytearray], offset: int) -> int:
        """Deliver each packet, from ``offset`` on, to ``inbound``."""
        for data in bufs:
            if self._c._closed.is_set():
                raise _closed_error()
            self._c.inbound.put(bytes(data[offset:]))
        return len(bufs)

    def mtu(self) -> int:
        return DEFAULT_MTU

    def name(self) -> str:
        return "loopbackTun1"

    def events(self) -> Iterator[Event]:
        """Yield device events until the device is closed."""
        while True:
            event = self._c._events.get()
            if event is _END:
                self._c._events.put(_END)
                return
            yield event

    def close(self) -> None:
        with self._close_lock:
            if self._c._closed.is_set():
                return
            self._c._closed.set()
            self._c._events.put(_END)

    def batch_size(self) -> int:
        return 1