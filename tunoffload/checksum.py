"""Internet checksum helpers (RFC 1071)."""

from __future__ import annotations

import struct


def _sum_words(data) -> int:
    """Sum ``data`` as big-endian 16-bit words without folding.

    A trailing odd byte is treated as the high byte of a final word.
    """
    view = memoryview(data).cast("B")
    even = len(view) & ~1
    total = sum(struct.unpack_from(f">{even // 2}H", view)) if even else 0
    if len(view) & 1:
        total += view[-1] << 8
    return total


def checksum(data, initial: int = 0) -> int:
    """Return the folded ones' complement sum of ``data`` plus ``initial``.

    The result is not inverted: a region whose checksum field is correct
    sums to ``0xFFFF``, and the value to store in a checksum field is
    ``~checksum(...) & 0xFFFF``.
    """
    total = initial + _sum_words(data)
    while total > 0xFFFF:
        total = (total >> 16) + (total & 0xFFFF)
    return total


def pseudo_header_checksum_no_fold(protocol: int, src_addr, dst_addr, length: int) -> int:
    """Return the unfolded sum of a TCP/UDP pseudo header.

    The pseudo header is the source and destination addresses, the
    protocol number and the 16-bit transport length.
    """
    return _sum_words(src_addr) + _sum_words(dst_addr) + protocol + (length & 0xFFFF)