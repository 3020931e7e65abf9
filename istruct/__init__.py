"""istruct - single-host machine and device control plane on libvirt."""

__version__ = "0.1.0"
