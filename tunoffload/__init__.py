"""Receive coalescing and segmentation offload for TUN packets with virtio-net headers."""

__version__ = "0.1.0"

__all__ = ["checksum", "device", "flows", "gro", "gso", "tuntest", "virtio"]