"""Generic segmentation offload: splitting oversized packets read from a TUN."""

from __future__ import annotations

import struct
from dataclasses import replace

from .checksum import checksum, pseudo_header_checksum_no_fold
from .flows import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_FIN,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDPH_LEN,
)
from .virtio import VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_LEN, GSOType, VirtioNetHdr


class TooManySegmentsError(Exception):
    """A packet splits into more segments than there are output buffers.

    ``sizes`` holds the sizes of the segments written before running out.
    """

    def __init__(self, sizes: list[int]) -> None:
        super().__init__("too many segments")
        self.sizes = sizes


def _u16(data, at: int) -> int:
    return struct.unpack_from(">H", data, at)[0]


def _u32(data, at: int) -> int:
    return struct.unpack_from(">I", data, at)[0]


def _put_u16(buf, at: int, value: int) -> None:
    struct.pack_into(">H", buf, at, value & 0xFFFF)


def _put_u32(buf, at: int, value: int) -> None:
    struct.pack_into(">I", buf, at, value & 0xFFFFFFFF)


def gso_split(data, hdr: VirtioNetHdr, out_bufs, out_offset, is_v6) -> list[int]:
    """Split the large packet ``data`` described by ``hdr`` into ``out_bufs``.

    Every segment is written at ``out_offset`` of its buffer. Returns the
    size of each segment written, in order.
    """
    pkt = bytearray(data)
    iph_len = hdr.csum_start
    if is_v6:
        src_at, addr_len = IPV6_SRC_ADDR_OFFSET, 16
    else:
        pkt[10:12] = b"\x00\x00"
        src_at, addr_len = IPV4_SRC_ADDR_OFFSET, 4
    transport_csum_at = hdr.csum_start + hdr.csum_offset
    pkt[transport_csum_at:transport_csum_at + 2] = b"\x00\x00"

    if hdr.gso_type in (GSOType.TCPV4, GSOType.TCPV6):
        protocol = IPPROTO_TCP
        first_seq = _u32(pkt, hdr.csum_start + 4)
    else:
        protocol = IPPROTO_UDP
        first_seq = 0

    src_addr = bytes(pkt[src_at:src_at + addr_len])
    dst_addr = bytes(pkt[src_at + addr_len:src_at + addr_len * 2])
    transport_hdr_len = hdr.hdr_len - hdr.csum_start

    sizes: list[int] = []
    next_at = hdr.hdr_len
    i = 0
    while next_at < len(pkt):
        if i == len(out_bufs):
            raise TooManySegmentsError(sizes)
        end = min(next_at + hdr.gso_size, len(pkt))
        seg_len = end - next_at
        total = hdr.hdr_len + seg_len
        seg = bytearray(total)

        seg[:iph_len] = pkt[:iph_len]
        if is_v6:
            _put_u16(seg, 4, total - iph_len)
        else:
            # IPv4: bump the ID, set the total length, redo the header checksum.
            if i > 0:
                _put_u16(seg, 4, _u16(seg, 4) + i)
            _put_u16(seg, 2, total)
            _put_u16(seg, 10, ~checksum(seg[:iph_len]))

        seg[hdr.csum_start:hdr.hdr_len] = pkt[hdr.csum_start:hdr.hdr_len]
        if protocol == IPPROTO_TCP:
            seq = first_seq + ((hdr.gso_size * i) & 0xFFFF)
            _put_u32(seg, hdr.csum_start + 4, seq)
            if end != len(pkt):
                # FIN and PSH belong on the last segment only.
                seg[hdr.csum_start + TCP_FLAGS_OFFSET] &= ~(TCP_FLAG_FIN | TCP_FLAG_PSH) & 0xFF
        else:
            _put_u16(seg, hdr.csum_start + 4, seg_len + transport_hdr_len)

        seg[hdr.hdr_len:] = pkt[next_at:end]

        partial = pseudo_header_checksum_no_fold(
            protocol, src_addr, dst_addr, (transport_hdr_len + seg_len) & 0xFFFF
        )
        _put_u16(seg, transport_csum_at, ~checksum(seg[hdr.csum_start:total], partial))

        out = out_bufs[i]
        if len(out) < out_offset + total:
            raise ValueError(
                f"segment of {total} bytes overflows bufs element len {max(0, len(out) - out_offset)}"
            )
        out[out_offset:out_offset + total] = seg
        sizes.append(total)

        next_at += hdr.gso_size
        i += 1
    return sizes


def gso_none_checksum(data, csum_start, csum_offset) -> None:
    """Complete a partial transport checksum of ``data`` in place.

    The value already at the checksum field (usually the pseudo header sum)
    is folded into the checksum computed from ``csum_start`` onwards.
    """
    at = csum_start + csum_offset
    if at < 0 or at + 2 > len(data):
        raise ValueError(f"checksum offset {at} exceeds packet length {len(data)}")
    initial = _u16(data, at)
    data[at:at + 2] = b"\x00\x00"
    _put_u16(data, at, ~checksum(data[csum_start:], initial))


def handle_virtio_read(data, bufs, offset) -> list[int]:
    """Turn one read from an offload TUN into packets in ``bufs``.

    ``data`` starts with a virtio-net header. Each packet is placed at
    ``offset`` of its buffer; returns the size of each packet, in order.
    """
    hdr = VirtioNetHdr.decode(data)
    pkt = bytearray(data[VIRTIO_NET_HDR_LEN:])

    if hdr.gso_type == GSOType.NONE:
        if hdr.flags & VIRTIO_NET_HDR_F_NEEDS_CSUM:
            # CHECKSUM_PARTIAL: the checksum must be finished here.
            gso_none_checksum(pkt, hdr.csum_start, hdr.csum_offset)
        room = max(0, len(bufs[0]) - offset)
        if len(pkt) > room:
            raise ValueError(f"read len {len(pkt)} overflows bufs element len {room}")
        bufs[0][offset:offset + len(pkt)] = pkt
        return [len(pkt)]

    if hdr.gso_type not in (GSOType.TCPV4, GSOType.TCPV6, GSOType.UDP_L4):
        raise ValueError(f"unsupported virtio GSO type: {hdr.gso_type}")
    if not pkt:
        raise ValueError("packet is too short")

    ip_version = pkt[0] >> 4
    if ip_version == 4:
        if hdr.gso_type not in (GSOType.TCPV4, GSOType.UDP_L4):
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    elif ip_version == 6:
        if hdr.gso_type not in (GSOType.TCPV6, GSOType.UDP_L4):
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    else:
        raise ValueError(f"invalid ip header version: {ip_version}")

    # The kernel's hdr_len may span the whole first packet on the forward
    # path, so derive it from the transport header instead.
    if hdr.gso_type == GSOType.UDP_L4:
        hdr = replace(hdr, hdr_len=hdr.csum_start + UDPH_LEN)
    else:
        if len(pkt) <= hdr.csum_start + 12:
            raise ValueError("packet is too short")
        tcph_len = (pkt[hdr.csum_start + 12] >> 4) * 4
        if not 20 <= tcph_len <= 60:
            raise ValueError(f"tcp header len is invalid: {tcph_len}")
        hdr = replace(hdr, hdr_len=hdr.csum_start + tcph_len)

    if len(pkt) < hdr.hdr_len:
        raise ValueError(f"length of packet ({len(pkt)}) < virtioNetHdr.hdrLen ({hdr.hdr_len})")
    if hdr.hdr_len < hdr.csum_start:
        raise ValueError(
            f"virtioNetHdr.hdrLen ({hdr.hdr_len}) < virtioNetHdr.csumStart ({hdr.csum_start})"
        )
    csum_at = hdr.csum_start + hdr.csum_offset
    if csum_at + 1 >= len(pkt):
        raise ValueError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({len(pkt)})"
        )

    return gso_split(pkt, hdr, bufs, offset, ip_version == 6)