"""Typed view over libvirt domain and network XML.

The engine never string-templates domain XML. A ``DomainDescriptor`` wraps
the parsed ElementTree of a live domain, exposes the handful of fields the
engine reads and edits, and serializes everything else back untouched.
Comments are kept and namespace prefixes declared in the document are
registered before parsing, so `qemu:` elements come back as `qemu:`.
"""

from __future__ import annotations

import io
import ipaddress
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator
from uuid import UUID

# Disk target names the allocator manages: vda, vdb, ...
DISK_TARGET_PREFIX = "vd"

NAT_NETWORK_NAME = "istruct_nat"
NAT_SUBNET = ipaddress.ip_network("192.168.100.0/24")
NAT_DHCP_START = ipaddress.ip_address("192.168.100.128")
NAT_DHCP_END = ipaddress.ip_address("192.168.100.254")

# Extension namespaces libvirt domain XML commonly carries.
LIBVIRT_NAMESPACES = {
    "qemu": "http://libvirt.org/schemas/domain/qemu/1.0",
    "lxc": "http://libvirt.org/schemas/domain/lxc/1.0",
    "bhyve": "http://libvirt.org/schemas/domain/bhyve/1.0",
}

for _prefix, _uri in LIBVIRT_NAMESPACES.items():
    ET.register_namespace(_prefix, _uri)

# libvirt memory units -> bytes. A missing unit attribute means KiB.
_MEMORY_UNITS = {
    "b": 1,
    "bytes": 1,
    "KB": 1000,
    "k": 1024,
    "KiB": 1024,
    "MB": 1000 ** 2,
    "M": 1024 ** 2,
    "MiB": 1024 ** 2,
    "GB": 1000 ** 3,
    "G": 1024 ** 3,
    "GiB": 1024 ** 3,
    "TB": 1000 ** 4,
    "T": 1024 ** 4,
    "TiB": 1024 ** 4,
}


def _disk_suffixes() -> Iterator[str]:
    """Yield a, b, ..., z, aa, ab, ..., az, ba, ..., zz, aaa, ..."""
    n = 1
    while True:
        value = n
        suffix = ""
        while value > 0:
            value -= 1
            suffix = chr(ord("a") + value % 26) + suffix
            value //= 26
        yield suffix
        n += 1


def next_disk_target(target_names: Iterable[str]) -> str:
    """Return the lowest free ``vd*`` target name.

    Only names with the ``vd`` prefix count. Gaps are filled first, so
    existing vda, vdb, vdd yields vdc rather than vde.
    """
    used = {
        name[len(DISK_TARGET_PREFIX):]
        for name in target_names
        if name.startswith(DISK_TARGET_PREFIX)
    }
    for suffix in _disk_suffixes():
        if suffix not in used:
            return f"{DISK_TARGET_PREFIX}{suffix}"
    raise AssertionError("unreachable: suffix sequence is infinite")


def _register_document_namespaces(xml: str) -> None:
    for _event, (prefix, uri) in ET.iterparse(io.StringIO(xml), events=("start-ns",)):
        if not prefix:
            continue
        try:
            ET.register_namespace(prefix, uri)
        except ValueError:
            # ns0, ns1, ... are reserved for generated prefixes.
            pass


@dataclass
class DiskEntry:
    """One <disk> element of a domain."""
    device: str | None
    target_dev: str | None
    bus: str | None
    source_file: str | None
    boot_order: int | None = None

    @classmethod
    def from_element(cls, elem: ET.Element) -> "DiskEntry":
        target = elem.find("target")
        source = elem.find("source")
        boot = elem.find("boot")
        return cls(
            device=elem.get("device"),
            target_dev=target.get("dev") if target is not None else None,
            bus=target.get("bus") if target is not None else None,
            source_file=source.get("file") if source is not None else None,
            boot_order=int(boot.get("order")) if boot is not None and boot.get("order") else None,
        )


@dataclass
class InterfaceEntry:
    """One <interface> element of a domain."""
    type: str | None
    network: str | None
    bridge: str | None
    mac: str | None
    model: str | None

    @classmethod
    def from_element(cls, elem: ET.Element) -> "InterfaceEntry":
        source = elem.find("source")
        mac = elem.find("mac")
        model = elem.find("model")
        return cls(
            type=elem.get("type"),
            network=source.get("network") if source is not None else None,
            bridge=source.get("bridge") if source is not None else None,
            mac=mac.get("address") if mac is not None else None,
            model=model.get("type") if model is not None else None,
        )


class DomainDescriptor:
    """Editable libvirt domain configuration."""

    def __init__(self, root: ET.Element):
        if root.tag != "domain":
            raise ValueError(f"Expected <domain> root element, got <{root.tag}>")
        self._root = root

    @classmethod
    def from_xml(cls, xml: str) -> "DomainDescriptor":
        _register_document_namespaces(xml)
        parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True))
        parser.feed(xml)
        return cls(parser.close())

    def to_xml(self) -> str:
        return ET.tostring(self._root, encoding="unicode")

    @property
    def root(self) -> ET.Element:
        return self._root

    @property
    def domain_type(self) -> str | None:
        return self._root.get("type")

    @property
    def name(self) -> str | None:
        return self._root.findtext("name")

    @property
    def uuid(self) -> UUID | None:
        text = self._root.findtext("uuid")
        return UUID(text.strip()) if text else None

    def _child(self, tag: str) -> ET.Element:
        elem = self._root.find(tag)
        if elem is None:
            elem = ET.SubElement(self._root, tag)
        return elem

    @property
    def vcpus(self) -> int:
        text = self._root.findtext("vcpu")
        return int(text) if text else 1

    @vcpus.setter
    def vcpus(self, count: int) -> None:
        self._child("vcpu").text = str(count)

    @property
    def memory_bytes(self) -> int:
        elem = self._root.find("memory")
        if elem is None or not elem.text:
            return 0
        unit = elem.get("unit", "KiB")
        if unit not in _MEMORY_UNITS:
            raise ValueError(f"Unsupported memory unit: {unit}")
        return int(elem.text.strip()) * _MEMORY_UNITS[unit]

    @memory_bytes.setter
    def memory_bytes(self, size: int) -> None:
        elem = self._child("memory")
        elem.set("unit", "bytes")
        elem.text = str(size)
        # libvirt would clamp the new size to a stale currentMemory.
        current = self._root.find("currentMemory")
        if current is not None:
            self._root.remove(current)

    @property
    def devices(self) -> ET.Element:
        return self._child("devices")

    # --- Disks ---

    @property
    def disks(self) -> list[DiskEntry]:
        return [DiskEntry.from_element(d) for d in self.devices.findall("disk")]

    def next_disk_target(self) -> str:
        return next_disk_target(d.target_dev for d in self.disks if d.target_dev)

    def add_file_disk(
        self,
        source_file: str,
        target_dev: str,
        bus: str,
        driver_type: str = "qcow2",
    ) -> DiskEntry:
        """Append a file-backed disk after the existing disks."""
        disk = ET.Element("disk", {"type": "file", "device": "disk"})
        ET.SubElement(disk, "driver", {"name": "qemu", "type": driver_type})
        ET.SubElement(disk, "source", {"file": source_file})
        ET.SubElement(disk, "target", {"dev": target_dev, "bus": bus})
        self._insert_after_last(disk, "disk")
        return DiskEntry.from_element(disk)

    def remove_disks(self, predicate: Callable[[DiskEntry], bool]) -> int:
        devices = self.devices
        removed = 0
        for elem in list(devices.findall("disk")):
            if predicate(DiskEntry.from_element(elem)):
                devices.remove(elem)
                removed += 1
        return removed

    # --- Network interfaces ---

    @property
    def interfaces(self) -> list[InterfaceEntry]:
        return [InterfaceEntry.from_element(i) for i in self.devices.findall("interface")]

    def add_network_interface(self, network: str) -> InterfaceEntry:
        iface = ET.Element("interface", {"type": "network"})
        ET.SubElement(iface, "source", {"network": network})
        self._insert_after_last(iface, "interface")
        return InterfaceEntry.from_element(iface)

    def remove_network_interfaces(self, network: str) -> int:
        devices = self.devices
        removed = 0
        for elem in list(devices.findall("interface")):
            if InterfaceEntry.from_element(elem).network == network:
                devices.remove(elem)
                removed += 1
        return removed

    def _insert_after_last(self, elem: ET.Element, tag: str) -> None:
        devices = self.devices
        children = list(devices)
        positions = [i for i, child in enumerate(children) if child.tag == tag]
        if positions:
            devices.insert(positions[-1] + 1, elem)
        else:
            devices.append(elem)


def build_default_domain(
    machine: UUID,
    vcpus: int,
    memory_bytes: int,
    emulator: str,
) -> DomainDescriptor:
    """Build the descriptor every new machine starts from.

    KVM, an empty SATA CD-ROM as first boot device, and a SPICE display.
    """
    root = ET.Element("domain", {"type": "kvm"})
    ET.SubElement(root, "name").text = str(machine)
    ET.SubElement(root, "uuid").text = str(machine)
    memory = ET.SubElement(root, "memory", {"unit": "bytes"})
    memory.text = str(memory_bytes)
    ET.SubElement(root, "vcpu").text = str(vcpus)

    os_elem = ET.SubElement(root, "os")
    ET.SubElement(os_elem, "type").text = "hvm"

    devices = ET.SubElement(root, "devices")
    ET.SubElement(devices, "emulator").text = emulator

    cdrom = ET.SubElement(devices, "disk", {"type": "file", "device": "cdrom"})
    ET.SubElement(cdrom, "target", {"dev": "sda", "bus": "sata"})
    ET.SubElement(cdrom, "readonly")
    ET.SubElement(cdrom, "boot", {"order": "1"})

    graphics = ET.SubElement(devices, "graphics", {"type": "spice", "autoport": "yes"})
    ET.SubElement(graphics, "listen", {"type": "address"})

    ET.indent(root)
    return DomainDescriptor(root)


def build_nat_network_xml() -> str:
    """Network XML for the shared NAT network all NAT devices plug into."""
    gateway = next(NAT_SUBNET.hosts())

    root = ET.Element("network")
    ET.SubElement(root, "name").text = NAT_NETWORK_NAME
    ET.SubElement(root, "forward", {"mode": "nat"})
    ET.SubElement(root, "domain", {"name": "network"})
    ip = ET.SubElement(
        root,
        "ip",
        {"address": str(gateway), "netmask": str(NAT_SUBNET.netmask)},
    )
    dhcp = ET.SubElement(ip, "dhcp")
    ET.SubElement(dhcp, "range", {"start": str(NAT_DHCP_START), "end": str(NAT_DHCP_END)})

    ET.indent(root)
    return ET.tostring(root, encoding="unicode")
