# tunoffload

Packet offload helpers for TUN devices that put a virtio-net header in
front of each packet. The package works on packets held in memory, as
`bytearray` buffers.

## What is in it

- `tunoffload.gro`: receive coalescing (GRO).
  - `handle_gro(bufs, offset, tcp_table, udp_table, can_udp_gro, capacity=65535)`
    takes a batch of IPv4 and IPv6 TCP and UDP packets. Each packet sits at
    `offset` of its buffer, with room for a virtio-net header just before it.
    The function merges adjacent segments of the same flow into one large
    packet. It extends or swaps entries of `bufs` as needed.
  - It writes the virtio-net header for every packet and fixes up the IP
    lengths, the IPv4 header checksum and the transport pseudo-header sum.
  - It returns the list of indices into `bufs` that should be written.
  - It raises `ValueError` if `offset` is too small for the header or lies
    beyond a packet.
  - The tables are `tunoffload.flows.TCPGROTable` and `UDPGROTable`. They
    should start empty; call `reset()` to reuse them.
  - The lower-level steps are also available: `tcp_gro`, `udp_gro`,
    `coalesce_tcp_packets`, `coalesce_udp_packets`, `checksum_valid` and the
    `apply_*_coalesce_accounting` functions.
- `tunoffload.gso`: segmentation (GSO).
  - `handle_virtio_read(data, bufs, offset)` takes one read that starts with
    a virtio-net header.
  - Without GSO it copies the packet into `bufs[0]`, finishing a partial
    checksum when the header asks for it.
  - With TCP or UDP GSO it splits the packet into segments, one per buffer,
    and recomputes the IP and transport checksums.
  - It returns the size of each packet written.
  - Malformed input raises `ValueError`. Running out of buffers raises
    `TooManySegmentsError`, whose `sizes` attribute lists the segments
    already written.
  - `gso_split` and `gso_none_checksum` are the underlying steps.
- `tunoffload.flows`: the flow keys and tables, and the rules that decide
  whether two packets may be merged:
  - `ip_headers_can_coalesce`
  - `tcp_packets_can_coalesce`
  - `udp_packets_can_coalesce`
  - `packet_is_gro_candidate`
- `tunoffload.virtio`: `VirtioNetHdr` (`decode`, `encode`, `encode_into`),
  the `GSOType` values and `VIRTIO_NET_HDR_LEN` (10 bytes).
- `tunoffload.checksum`: `checksum(data, initial=0)` returns the folded,
  uninverted internet checksum. `pseudo_header_checksum_no_fold(...)`
  returns the TCP/UDP pseudo-header sum.
- `tunoffload.device`:
  - the abstract `Device` interface, with `file`, `read`, `write`, `mtu`,
    `name`, `events`, `close` and `batch_size`; a device is also a context
    manager that closes on exit;
  - the `Event` flags `UP`, `DOWN` and `MTU_UPDATE`.
- `tunoffload.tuntest`:
  - `ChannelTUN`, an in-memory loopback whose device (`ChannelTUN.tun()`)
    writes packets to the `inbound` queue and reads them from the `outbound`
    queue;
  - `ping(dst, src)`, which builds an ICMPv4 echo request.

## Installation

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Examples

Splitting a read with TCP segmentation offload:

```python
from tunoffload.gso import handle_virtio_read
from tunoffload.virtio import GSOType, VirtioNetHdr, VIRTIO_NET_HDR_F_NEEDS_CSUM

hdr = VirtioNetHdr(flags=VIRTIO_NET_HDR_F_NEEDS_CSUM, gso_type=GSOType.TCPV4,
                   hdr_len=40, gso_size=100, csum_start=20, csum_offset=16)
# `raw` is a bytearray: 10 bytes of room for the header, then an IPv4/TCP
# packet with a 20-byte TCP header and 200 bytes of payload.
hdr.encode_into(raw, 0)
bufs = [bytearray(65535) for _ in range(128)]
sizes = handle_virtio_read(raw, bufs, 10)
# sizes == [140, 140]
```

Coalescing a batch before writing it:

```python
from tunoffload.flows import TCPGROTable, UDPGROTable
from tunoffload.gro import handle_gro

# Each entry of `bufs` is a bytearray holding a packet at offset 10.
to_write = handle_gro(bufs, 10, TCPGROTable(), UDPGROTable(), True)
for i in to_write:
    packet_with_header = bufs[i]  # virtio-net header at 0, packet at 10
```

The in-memory device:

```python
from tunoffload.tuntest import ChannelTUN, ping

chan = ChannelTUN()
with chan.tun() as dev:
    dev.write([bytearray(ping("192.0.2.2", "192.0.2.1"))], 0)
    packet = chan.inbound.get()
```

## What it does not do

The package does not open or configure an operating-system TUN interface.
It has no code that creates a device, sets its MTU, reads from or writes to
a real file descriptor, or watches the link for up, down or MTU changes.
`Device` is only an interface. The one implementation provided is the
in-memory `ChannelDevice` from `tunoffload.tuntest`. To use the offload
functions with a real interface, read and write its buffers yourself and
pass them to `handle_virtio_read` and `handle_gro`.