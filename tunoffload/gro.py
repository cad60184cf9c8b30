"""Generic receive offload: merging runs of TCP and UDP packets in a batch."""

from __future__ import annotations

import enum
import struct
from dataclasses import replace

from .checksum import checksum, pseudo_header_checksum_no_fold
from .flows import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_FLAG_MORE_FRAGMENTS,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    MAX_UINT16,
    TCP_FLAG_ACK,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDPH_LEN,
    CanCoalesce,
    GROCandidate,
    TCPGROItem,
    TCPGROTable,
    UDPGROItem,
    UDPGROTable,
    packet_is_gro_candidate,
    tcp_packets_can_coalesce,
    udp_packets_can_coalesce,
)
from .virtio import VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_LEN, GSOType, VirtioNetHdr

# Largest size any packet buffer may grow to, header room included.
DEFAULT_CAPACITY = 65535


class CoalesceResult(enum.IntEnum):
    """Outcome of an attempt to merge two packets."""

    INSUFFICIENT_CAP = 0
    PSH_ENDING = 1
    ITEM_INVALID_CSUM = 2
    PKT_INVALID_CSUM = 3
    SUCCESS = 4


class GROResult(enum.IntEnum):
    """What a GRO evaluation did with a packet."""

    NOOP = 0
    TABLE_INSERT = 1
    COALESCED = 2


def _u16(data, at: int) -> int:
    return struct.unpack_from(">H", data, at)[0]


def _u32(data, at: int) -> int:
    return struct.unpack_from(">I", data, at)[0]


def _put_u16(buf, at: int, value: int) -> None:
    struct.pack_into(">H", buf, at, value & 0xFFFF)


def _addr_layout(is_v6: bool) -> tuple[int, int]:
    return (IPV6_SRC_ADDR_OFFSET, 16) if is_v6 else (IPV4_SRC_ADDR_OFFSET, 4)


def checksum_valid(pkt, iph_len, proto, is_v6) -> bool:
    """Return whether the transport checksum of the IP packet ``pkt`` is correct."""
    src_at, addr_size = _addr_layout(is_v6)
    length = (len(pkt) - iph_len) & 0xFFFF
    partial = pseudo_header_checksum_no_fold(
        proto,
        pkt[src_at:src_at + addr_size],
        pkt[src_at + addr_size:src_at + addr_size * 2],
        length,
    )
    return ~checksum(pkt[iph_len:], partial) & 0xFFFF == 0


def coalesce_udp_packets(pkt, item: UDPGROItem, bufs, bufs_offset, is_v6, capacity=DEFAULT_CAPACITY) -> CoalesceResult:
    """Append the payload of UDP ``pkt`` to the packet of ``item``, updating ``item``."""
    head = bufs[item.bufs_index]
    headers_len = item.iph_len + UDPH_LEN
    coalesced_len = len(head) - bufs_offset + len(pkt) - headers_len
    if capacity - 2 * bufs_offset < coalesced_len:
        return CoalesceResult.INSUFFICIENT_CAP
    if item.num_merged == 0:
        if item.csum_known_invalid or not checksum_valid(
            bytes(head[bufs_offset:]), item.iph_len, IPPROTO_UDP, is_v6
        ):
            return CoalesceResult.ITEM_INVALID_CSUM
    if not checksum_valid(pkt, item.iph_len, IPPROTO_UDP, is_v6):
        return CoalesceResult.PKT_INVALID_CSUM
    head.extend(pkt[headers_len:])
    item.num_merged = (item.num_merged + 1) & 0xFFFF
    return CoalesceResult.SUCCESS


def coalesce_tcp_packets(
    mode,
    pkt,
    pkt_bufs_index,
    gso_size,
    seq,
    psh_set,
    item: TCPGROItem,
    bufs,
    bufs_offset,
    is_v6,
    capacity=DEFAULT_CAPACITY,
) -> CoalesceResult:
    """Merge TCP ``pkt`` before or after the packet of ``item``, updating ``item``.

    On a prepend the two entries of ``bufs`` are swapped, so that the merged
    packet stays at the index ``item`` already tracks.
    """
    headers_len = item.iph_len + item.tcph_len
    item_buf = bufs[item.bufs_index]
    coalesced_len = len(item_buf) - bufs_offset + len(pkt) - headers_len

    if mode == CanCoalesce.PREPEND:
        if capacity - 2 * bufs_offset < coalesced_len:
            return CoalesceResult.INSUFFICIENT_CAP
        if psh_set:
            return CoalesceResult.PSH_ENDING
        if item.num_merged == 0:
            if not checksum_valid(bytes(item_buf[bufs_offset:]), item.iph_len, IPPROTO_TCP, is_v6):
                return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        item.sent_seq = seq
        bufs[pkt_bufs_index].extend(item_buf[bufs_offset + headers_len:])
        bufs[item.bufs_index], bufs[pkt_bufs_index] = bufs[pkt_bufs_index], bufs[item.bufs_index]
    else:
        if capacity - 2 * bufs_offset < coalesced_len:
            return CoalesceResult.INSUFFICIENT_CAP
        if item.num_merged == 0:
            if not checksum_valid(bytes(item_buf[bufs_offset:]), item.iph_len, IPPROTO_TCP, is_v6):
                return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        if psh_set:
            item.psh_set = True
            item_buf[bufs_offset + item.iph_len + TCP_FLAGS_OFFSET] |= TCP_FLAG_PSH
        item_buf.extend(pkt[headers_len:])

    if gso_size > item.gso_size:
        item.gso_size = gso_size
    item.num_merged = (item.num_merged + 1) & 0xFFFF
    return CoalesceResult.SUCCESS


def _ip_prelude(pkt, is_v6) -> int | None:
    """Validate IP lengths of ``pkt`` and return its IP header length, or None."""
    if len(pkt) > MAX_UINT16:
        return None
    if is_v6:
        iph_len = 40
        if _u16(pkt, 4) != len(pkt) - iph_len:
            return None
    else:
        iph_len = (pkt[0] & 0x0F) * 4
        if _u16(pkt, 2) != len(pkt):
            return None
    if len(pkt) < iph_len:
        return None
    return iph_len


def _is_fragment(pkt) -> bool:
    return bool(pkt[6] & IPV4_FLAG_MORE_FRAGMENTS) or (pkt[6] << 3) & 0xFF != 0 or pkt[7] != 0


def tcp_gro(bufs, offset, pkt_i, table: TCPGROTable, is_v6, capacity=DEFAULT_CAPACITY) -> GROResult:
    """Evaluate the TCP packet at ``bufs[pkt_i]`` for merging with packets in ``table``."""
    pkt = bytes(bufs[pkt_i][offset:])
    iph_len = _ip_prelude(pkt, is_v6)
    if iph_len is None:
        return GROResult.NOOP
    tcph_len = (pkt[iph_len + 12] >> 4) * 4
    if not 20 <= tcph_len <= 60:
        return GROResult.NOOP
    if len(pkt) < iph_len + tcph_len:
        return GROResult.NOOP
    if not is_v6 and _is_fragment(pkt):
        # Fragmented segments are not merged.
        return GROResult.NOOP
    tcp_flags = pkt[iph_len + TCP_FLAGS_OFFSET]
    psh_set = False
    if tcp_flags != TCP_FLAG_ACK:
        if tcp_flags != TCP_FLAG_ACK | TCP_FLAG_PSH:
            return GROResult.NOOP
        psh_set = True
    gso_size = len(pkt) - tcph_len - iph_len
    if gso_size < 1:
        return GROResult.NOOP
    seq = _u32(pkt, iph_len + 4)
    src_at, addr_len = _addr_layout(is_v6)
    items = table.lookup_or_insert(pkt, src_at, src_at + addr_len, iph_len, tcph_len, pkt_i)
    if items is None:
        return GROResult.TABLE_INSERT
    # Newest first: in-order arrival finds its partner at once, and deleting
    # an item does not disturb the indices still to be visited.
    for i in reversed(range(len(items))):
        item = replace(items[i])
        can = tcp_packets_can_coalesce(pkt, iph_len, tcph_len, seq, psh_set, gso_size, item, bufs, offset)
        if can == CanCoalesce.UNAVAILABLE:
            continue
        result = coalesce_tcp_packets(can, pkt, pkt_i, gso_size, seq, psh_set, item, bufs, offset, is_v6, capacity)
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, i)
            return GROResult.COALESCED
        if result == CoalesceResult.ITEM_INVALID_CSUM:
            table.delete_at(item.key, i)
        elif result == CoalesceResult.PKT_INVALID_CSUM:
            return GROResult.NOOP
    table.insert(pkt, src_at, src_at + addr_len, iph_len, tcph_len, pkt_i)
    return GROResult.TABLE_INSERT


def udp_gro(bufs, offset, pkt_i, table: UDPGROTable, is_v6, capacity=DEFAULT_CAPACITY) -> GROResult:
    """Evaluate the UDP packet at ``bufs[pkt_i]`` for merging with packets in ``table``."""
    pkt = bytes(bufs[pkt_i][offset:])
    iph_len = _ip_prelude(pkt, is_v6)
    if iph_len is None:
        return GROResult.NOOP
    if len(pkt) < iph_len + UDPH_LEN:
        return GROResult.NOOP
    if not is_v6 and _is_fragment(pkt):
        return GROResult.NOOP
    gso_size = len(pkt) - UDPH_LEN - iph_len
    if gso_size < 1:
        return GROResult.NOOP
    src_at, addr_len = _addr_layout(is_v6)
    items = table.lookup_or_insert(pkt, src_at, src_at + addr_len, iph_len, pkt_i)
    if items is None:
        return GROResult.TABLE_INSERT
    # Only the newest item is considered, so packets of a flow never reorder.
    last = len(items) - 1
    item = replace(items[last])
    can = udp_packets_can_coalesce(pkt, iph_len, gso_size, item, bufs, offset)
    pkt_csum_known_invalid = False
    if can == CanCoalesce.APPEND:
        result = coalesce_udp_packets(pkt, item, bufs, offset, is_v6, capacity)
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, last)
            return GROResult.COALESCED
        if result == CoalesceResult.PKT_INVALID_CSUM:
            pkt_csum_known_invalid = True
    table.insert(pkt, src_at, src_at + addr_len, iph_len, pkt_i, pkt_csum_known_invalid)
    return GROResult.TABLE_INSERT


def _finish_merged(buf, offset, iph_len, is_v6, hdr: VirtioNetHdr, proto) -> None:
    """Fix IP lengths and checksum, write ``hdr`` and the pseudo header sum."""
    pkt_len = len(buf) - offset
    if is_v6:
        _put_u16(buf, offset + 4, pkt_len - iph_len)
    else:
        buf[offset + 10:offset + 12] = b"\x00\x00"
        _put_u16(buf, offset + 2, pkt_len)
        _put_u16(buf, offset + 10, ~checksum(buf[offset:offset + iph_len]))
    hdr.encode_into(buf, offset - VIRTIO_NET_HDR_LEN)
    if proto == IPPROTO_UDP:
        _put_u16(buf, offset + iph_len + 4, pkt_len - iph_len)
    src_at, addr_len = _addr_layout(is_v6)
    src_at += offset
    partial = pseudo_header_checksum_no_fold(
        proto,
        buf[src_at:src_at + addr_len],
        buf[src_at + addr_len:src_at + addr_len * 2],
        (pkt_len - iph_len) & 0xFFFF,
    )
    _put_u16(buf, offset + hdr.csum_start + hdr.csum_offset, checksum(b"", partial))


def apply_tcp_coalesce_accounting(bufs, offset, table: TCPGROTable) -> None:
    """Write virtio headers and fix up every packet tracked in ``table``."""
    for items in table.items_by_flow.values():
        for item in items:
            buf = bufs[item.bufs_index]
            if item.num_merged == 0:
                VirtioNetHdr().encode_into(buf, offset - VIRTIO_NET_HDR_LEN)
                continue
            hdr = VirtioNetHdr(
                flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
                gso_type=GSOType.TCPV6 if item.key.is_v6 else GSOType.TCPV4,
                hdr_len=item.iph_len + item.tcph_len,
                gso_size=item.gso_size,
                csum_start=item.iph_len,
                csum_offset=16,
            )
            _finish_merged(buf, offset, item.iph_len, item.key.is_v6, hdr, IPPROTO_TCP)


def apply_udp_coalesce_accounting(bufs, offset, table: UDPGROTable) -> None:
    """Write virtio headers and fix up every packet tracked in ``table``."""
    for items in table.items_by_flow.values():
        for item in items:
            buf = bufs[item.bufs_index]
            if item.num_merged == 0:
                VirtioNetHdr().encode_into(buf, offset - VIRTIO_NET_HDR_LEN)
                continue
            hdr = VirtioNetHdr(
                flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
                gso_type=GSOType.UDP_L4,
                hdr_len=item.iph_len + UDPH_LEN,
                gso_size=item.gso_size,
                csum_start=item.iph_len,
                csum_offset=6,
            )
            _finish_merged(buf, offset, item.iph_len, item.key.is_v6, hdr, IPPROTO_UDP)


def handle_gro(bufs, offset, tcp_table, udp_table, can_udp_gro, capacity=DEFAULT_CAPACITY) -> list[int]:
    """Merge what can be merged in ``bufs`` and return the indices to write.

    ``bufs`` is a list of bytearrays, each holding a packet at ``offset``
    with room for a virtio header just before it; entries may be extended
    or swapped. The tables should start empty.
    """
    to_write: list[int] = []
    for i, buf in enumerate(bufs):
        if offset < VIRTIO_NET_HDR_LEN or offset > len(buf) - 1:
            raise ValueError("invalid offset")
        candidate = packet_is_gro_candidate(bytes(buf[offset:]), can_udp_gro)
        if candidate == GROCandidate.TCP4:
            result = tcp_gro(bufs, offset, i, tcp_table, False, capacity)
        elif candidate == GROCandidate.TCP6:
            result = tcp_gro(bufs, offset, i, tcp_table, True, capacity)
        elif candidate == GROCandidate.UDP4:
            result = udp_gro(bufs, offset, i, udp_table, False, capacity)
        elif candidate == GROCandidate.UDP6:
            result = udp_gro(bufs, offset, i, udp_table, True, capacity)
        else:
            result = GROResult.NOOP
        if result == GROResult.NOOP:
            VirtioNetHdr().encode_into(bufs[i], offset - VIRTIO_NET_HDR_LEN)
            to_write.append(i)
        elif result == GROResult.TABLE_INSERT:
            to_write.append(i)
    apply_tcp_coalesce_accounting(bufs, offset, tcp_table)
    apply_udp_coalesce_accounting(bufs, offset, udp_table)
    return to_write