[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunoffload"
version = "0.1.0"
description = "Generic receive and segmentation offload for TUN packets: coalescing and splitting TCP and UDP packets with virtio-net headers"
requires-python = ">=3.10"
dependencies = []
keywords = ["tun", "gro", "gso", "virtio", "tcp", "udp", "offload", "checksum", "networking"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tunoffload"]

[tool.pytest.ini_options]
addopts = "-ra"
