"""Flow tracking and coalescing checks for generic receive offload."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field

TCP_FLAGS_OFFSET = 13
TCP_FLAG_FIN = 0x01
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10

UDPH_LEN = 8

IPPROTO_TCP = 6
IPPROTO_UDP = 17

IPV4_SRC_ADDR_OFFSET = 12
IPV6_SRC_ADDR_OFFSET = 8
IPV4_FLAG_MORE_FRAGMENTS = 0x20
MAX_UINT16 = (1 << 16) - 1


def _u16(data, at: int) -> int:
    return struct.unpack_from(">H", data, at)[0]


def _u32(data, at: int) -> int:
    return struct.unpack_from(">I", data, at)[0]


class CanCoalesce(enum.IntEnum):
    """Outcome of checking whether two packets may be coalesced."""

    PREPEND = -1
    UNAVAILABLE = 0
    APPEND = 1


class GROCandidate(enum.IntEnum):
    """Kind of GRO candidate a packet is, if any."""

    NOT_CANDIDATE = 0
    TCP4 = 1
    TCP6 = 2
    UDP4 = 3
    UDP6 = 4


@dataclass(frozen=True)
class TCPFlowKey:
    """Identifies a TCP flow; differing ACK values count as separate flows."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    rx_ack: int
    is_v6: bool

    @classmethod
    def from_packet(cls, pkt, src_addr_offset: int, dst_addr_offset: int, tcph_offset: int) -> TCPFlowKey:
        """Build the key of the TCP packet ``pkt``."""
        addr_size = dst_addr_offset - src_addr_offset
        return cls(
            src_addr=bytes(pkt[src_addr_offset:dst_addr_offset]),
            dst_addr=bytes(pkt[dst_addr_offset:dst_addr_offset + addr_size]),
            src_port=_u16(pkt, tcph_offset),
            dst_port=_u16(pkt, tcph_offset + 2),
            rx_ack=_u32(pkt, tcph_offset + 8),
            is_v6=addr_size == 16,
        )


@dataclass(frozen=True)
class UDPFlowKey:
    """Identifies a UDP flow."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    is_v6: bool

    @classmethod
    def from_packet(cls, pkt, src_addr_offset: int, dst_addr_offset: int, udph_offset: int) -> UDPFlowKey:
        """Build the key of the UDP packet ``pkt``."""
        addr_size = dst_addr_offset - src_addr_offset
        return cls(
            src_addr=bytes(pkt[src_addr_offset:dst_addr_offset]),
            dst_addr=bytes(pkt[dst_addr_offset:dst_addr_offset + addr_size]),
            src_port=_u16(pkt, udph_offset),
            dst_port=_u16(pkt, udph_offset + 2),
            is_v6=addr_size == 16,
        )


@dataclass
class TCPGROItem:
    """Bookkeeping for one TCP packet during a GRO pass."""

    key: TCPFlowKey
    sent_seq: int = 0
    bufs_index: int = 0
    num_merged: int = 0
    gso_size: int = 0
    iph_len: int = 0
    tcph_len: int = 0
    psh_set: bool = False


@dataclass
class UDPGROItem:
    """Bookkeeping for one UDP packet during a GRO pass.

    ``csum_known_invalid`` being false does not mean the checksum is valid,
    only that it has not been found invalid.
    """

    key: UDPFlowKey
    bufs_index: int = 0
    num_merged: int = 0
    gso_size: int = 0
    iph_len: int = 0
    csum_known_invalid: bool = False


@dataclass
class TCPGROTable:
    """TCP flows seen in the current batch, with their candidate packets."""

    items_by_flow: dict[TCPFlowKey, list[TCPGROItem]] = field(default_factory=dict)

    def lookup_or_insert(self, pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index):
        """Return the items of the packet's flow, or insert the packet and return None."""
        key = TCPFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index)
        return None

    def insert(self, pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index) -> None:
        """Add an item for ``pkt`` to its flow."""
        key = TCPFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        item = TCPGROItem(
            key=key,
            sent_seq=_u32(pkt, tcph_offset + 4),
            bufs_index=bufs_index & 0xFFFF,
            gso_size=max(0, len(pkt) - (tcph_offset + tcph_len)) & 0xFFFF,
            iph_len=tcph_offset & 0xFF,
            tcph_len=tcph_len & 0xFF,
            psh_set=bool(pkt[tcph_offset + TCP_FLAGS_OFFSET] & TCP_FLAG_PSH),
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def update_at(self, item: TCPGROItem, i: int) -> None:
        """Replace the ``i``-th item of ``item``'s flow."""
        self.items_by_flow[item.key][i] = item

    def delete_at(self, key: TCPFlowKey, i: int) -> TCPGROItem:
        """Remove the ``i``-th item of the flow ``key`` and return it."""
        return self.items_by_flow[key].pop(i)

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()


@dataclass
class UDPGROTable:
    """UDP flows seen in the current batch, with their candidate packets."""

    items_by_flow: dict[UDPFlowKey, list[UDPGROItem]] = field(default_factory=dict)

    def lookup_or_insert(self, pkt, src_addr_offset, dst_addr_offset, udph_offset, bufs_index):
        """Return the items of the packet's flow, or insert the packet and return None."""
        key = UDPFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, udph_offset, bufs_index, False)
        return None

    def insert(self, pkt, src_addr_offset, dst_addr_offset, udph_offset, bufs_index, csum_known_invalid) -> None:
        """Add an item for ``pkt`` to its flow."""
        key = UDPFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        item = UDPGROItem(
            key=key,
            bufs_index=bufs_index & 0xFFFF,
            gso_size=max(0, len(pkt) - (udph_offset + UDPH_LEN)) & 0xFFFF,
            iph_len=udph_offset & 0xFF,
            csum_known_invalid=bool(csum_known_invalid),
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def update_at(self, item: UDPGROItem, i: int) -> None:
        """Replace the ``i``-th item of ``item``'s flow."""
        self.items_by_flow[item.key][i] = item

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()


def ip_headers_can_coalesce(pkt_a, pkt_b) -> bool:
    """Return whether the IP headers of two packets allow merging them."""
    if len(pkt_a) < 9 or len(pkt_b) < 9:
        return False
    if pkt_a[0] >> 4 == 6:
        if pkt_a[0] != pkt_b[0] or pkt_a[1] >> 4 != pkt_b[1] >> 4:
            return False  # traffic class differs
        if pkt_a[7] != pkt_b[7]:
            return False  # hop limit differs
    else:
        if pkt_a[1] != pkt_b[1]:
            return False  # ToS differs
        if pkt_a[6] >> 5 != pkt_b[6] >> 5:
            return False  # DF or reserved bits differ; MF is checked elsewhere
        if pkt_a[8] != pkt_b[8]:
            return False  # TTL differs
    return True


def udp_packets_can_coalesce(pkt, iph_len, gso_size, item, bufs, bufs_offset) -> CanCoalesce:
    """Decide whether UDP ``pkt`` can be appended to the packet of ``item``."""
    target = bufs[item.bufs_index]
    if not ip_headers_can_coalesce(pkt, target[bufs_offset:bufs_offset + 9]):
        return CanCoalesce.UNAVAILABLE
    target_payload = max(0, len(target) - bufs_offset - (iph_len + UDPH_LEN))
    if target_payload % item.gso_size != 0:
        # A smaller segment was appended before; nothing may follow it.
        return CanCoalesce.UNAVAILABLE
    if gso_size > item.gso_size:
        return CanCoalesce.UNAVAILABLE
    return CanCoalesce.APPEND


def tcp_packets_can_coalesce(pkt, iph_len, tcph_len, seq, psh_set, gso_size, item, bufs, bufs_offset) -> CanCoalesce:
    """Decide whether TCP ``pkt`` can be merged before or after ``item``'s packet."""
    target = bufs[item.bufs_index]
    if tcph_len != item.tcph_len:
        return CanCoalesce.UNAVAILABLE
    if tcph_len > 20:
        ours = bytes(pkt[iph_len + 20:iph_len + tcph_len])
        theirs = bytes(target[bufs_offset + item.iph_len + 20:bufs_offset + iph_len + tcph_len])
        if ours != theirs:
            return CanCoalesce.UNAVAILABLE
    if not ip_headers_can_coalesce(pkt, target[bufs_offset:bufs_offset + 9]):
        return CanCoalesce.UNAVAILABLE
    lhs_len = (item.gso_size + item.num_merged * item.gso_size) & 0xFFFF
    if seq == (item.sent_seq + lhs_len) & 0xFFFFFFFF:
        if item.psh_set:
            # PSH may only be set on the final segment of a merged group.
            return CanCoalesce.UNAVAILABLE
        target_payload = max(0, len(target) - bufs_offset - (iph_len + tcph_len))
        if target_payload % item.gso_size != 0:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.APPEND
    if (seq + gso_size) & 0xFFFFFFFF == item.sent_seq:
        if psh_set:
            return CanCoalesce.UNAVAILABLE
        if gso_size < item.gso_size:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size and item.num_merged > 0:
            # Would leave several smaller segments at the end.
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.PREPEND
    return CanCoalesce.UNAVAILABLE


def packet_is_gro_candidate(b, can_udp_gro) -> GROCandidate:
    """Classify the IP packet ``b`` for GRO."""
    if len(b) < 28:
        return GROCandidate.NOT_CANDIDATE
    version = b[0] >> 4
    if version == 4:
        if b[0] & 0x0F != 5:
            # IPv4 packets with options do not coalesce.
            return GROCandidate.NOT_CANDIDATE
        if b[9] == IPPROTO_TCP and len(b) >= 40:
            return GROCandidate.TCP4
        if b[9] == IPPROTO_UDP and can_udp_gro:
            return GROCandidate.UDP4
    elif version == 6:
        if b[6] == IPPROTO_TCP and len(b) >= 60:
            return GROCandidate.TCP6
        if b[6] == IPPROTO_UDP and len(b) >= 48 and can_udp_gro:
            return GROCandidate.UDP6
    return GROCandidate.NOT_CANDIDATE