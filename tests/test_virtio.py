import pytest

from tunoffload.virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_LEN,
    GSOType,
    VirtioNetHdr,
)


def _sample():
    return VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        gso_type=GSOType.TCPV4,
        hdr_len=40,
        gso_size=100,
        csum_start=20,
        csum_offset=16,
    )


def test_header_length_matches_c_abi():
    assert VIRTIO_NET_HDR_LEN == 10
    assert len(_sample().encode()) == VIRTIO_NET_HDR_LEN


def test_round_trip():
    hdr = _sample()
    assert VirtioNetHdr.decode(hdr.encode()) == hdr


def test_round_trip_udp_l4():
    hdr = VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        gso_type=GSOType.UDP_L4,
        hdr_len=48,
        gso_size=100,
        csum_start=40,
        csum_offset=6,
    )
    decoded = VirtioNetHdr.decode(hdr.encode())
    assert decoded == hdr
    assert decoded.gso_type == GSOType.UDP_L4


def test_byte_fields_lead_the_encoding():
    raw = _sample().encode()
    assert raw[0] == VIRTIO_NET_HDR_F_NEEDS_CSUM
    assert raw[1] == GSOType.TCPV4


def test_default_header_is_all_zero():
    assert VirtioNetHdr().encode() == bytes(VIRTIO_NET_HDR_LEN)
    assert VirtioNetHdr.decode(bytes(VIRTIO_NET_HDR_LEN)) == VirtioNetHdr()


def test_decode_ignores_trailing_bytes():
    hdr = _sample()
    assert VirtioNetHdr.decode(hdr.encode() + b"\x45\x00\x00") == hdr


def test_decode_short_buffer_raises():
    with pytest.raises(ValueError):
        VirtioNetHdr.decode(bytes(VIRTIO_NET_HDR_LEN - 1))


def test_encode_into_writes_at_offset():
    hdr = _sample()
    buf = bytearray(b"\xaa" * (VIRTIO_NET_HDR_LEN + 6))
    hdr.encode_into(buf, 3)
    assert buf[3:3 + VIRTIO_NET_HDR_LEN] == hdr.encode()
    assert buf[:3] == b"\xaa" * 3
    assert buf[3 + VIRTIO_NET_HDR_LEN:] == b"\xaa" * 3


def test_encode_into_overwrites_previous_header():
    buf = bytearray(VIRTIO_NET_HDR_LEN)
    _sample().encode_into(buf)
    VirtioNetHdr().encode_into(buf)
    assert bytes(buf) == bytes(VIRTIO_NET_HDR_LEN)


def test_encode_into_short_buffer_raises():
    with pytest.raises(ValueError):
        _sample().encode_into(bytearray(VIRTIO_NET_HDR_LEN + 2), 3)


def test_encode_into_negative_offset_raises():
    with pytest.raises(ValueError):
        _sample().encode_into(bytearray(VIRTIO_NET_HDR_LEN), -1)


@pytest.mark.parametrize(
    "kwargs",
    [{"flags": 256}, {"gso_type": -1}, {"hdr_len": 65536}, {"csum_offset": -5}],
)
def test_out_of_range_field_raises(kwargs):
    with pytest.raises(ValueError):
        VirtioNetHdr(**kwargs)


def test_mutated_out_of_range_field_fails_to_encode():
    hdr = _sample()
    hdr.gso_size = 70000
    with pytest.raises(ValueError):
        hdr.encode()