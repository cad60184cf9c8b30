"""The virtio-net header that prefixes packets on an offload-capable TUN."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

# Layout of struct virtio_net_hdr in native byte order.
_HDR = struct.Struct("=BBHHHH")

VIRTIO_NET_HDR_LEN = _HDR.size
VIRTIO_NET_HDR_F_NEEDS_CSUM = 0x01
VIRTIO_NET_HDR_F_DATA_VALID = 0x02


class GSOType(enum.IntEnum):
    """Segmentation offload kinds carried in ``VirtioNetHdr.gso_type``."""

    NONE = 0
    TCPV4 = 1
    UDP = 3
    TCPV6 = 4
    UDP_L4 = 5
    ECN = 0x80


@dataclass
class VirtioNetHdr:
    """A virtio-net header: offload metadata for one (possibly large) packet."""

    flags: int = 0
    gso_type: int = GSOType.NONE
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    def __post_init__(self) -> None:
        for name, limit in (
            ("flags", 0xFF),
            ("gso_type", 0xFF),
            ("hdr_len", 0xFFFF),
            ("gso_size", 0xFFFF),
            ("csum_start", 0xFFFF),
            ("csum_offset", 0xFFFF),
        ):
            value = getattr(self, name)
            if not 0 <= value <= limit:
                raise ValueError(f"{name} out of range: {value}")

    @classmethod
    def decode(cls, data) -> VirtioNetHdr:
        """Parse a header from the start of ``data``."""
        if len(data) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        return cls(*_HDR.unpack_from(data, 0))

    def _fields(self) -> tuple[int, ...]:
        return (
            self.flags,
            int(self.gso_type),
            self.hdr_len,
            self.gso_size,
            self.csum_start,
            self.csum_offset,
        )

    def encode(self) -> bytes:
        """Return the header as bytes."""
        try:
            return _HDR.pack(*self._fields())
        except struct.error as exc:
            raise ValueError(str(exc)) from exc

    def encode_into(self, buf, at: int = 0) -> None:
        """Write the header into the writable buffer ``buf`` at index ``at``."""
        if at < 0 or len(buf) - at < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        try:
            _HDR.pack_into(buf, at, *self._fields())
        except struct.error as exc:
            raise ValueError(str(exc)) from exc