from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path
from types import SimpleNamespace

import pytest

import istruct.hypervisor as hypervisor_module
import istruct.storage as storage_module
from istruct.config import settings
from istruct.engine import Engine
from istruct.hypervisor import Hypervisor
from istruct.registry import DeviceRegistry
from istruct.storage import BlockStore


@pytest.fixture(autouse=True)
def _set_testing_paths(monkeypatch, tmp_path):
    """Keep registry and block files out of /var/lib/istruct."""
    monkeypatch.setattr(settings, "registry_path", str(tmp_path / "registry.db"))
    monkeypatch.setattr(settings, "block_dir", str(tmp_path / "block"))
    monkeypatch.setattr(settings, "libvirt_uri", "test:///default")
    yield


# --- In-memory libvirt ---

VIR_DOMAIN_NOSTATE = 0
VIR_DOMAIN_RUNNING = 1
VIR_DOMAIN_BLOCKED = 2
VIR_DOMAIN_PAUSED = 3
VIR_DOMAIN_SHUTDOWN = 4
VIR_DOMAIN_SHUTOFF = 5
VIR_DOMAIN_CRASHED = 6
VIR_DOMAIN_PMSUSPENDED = 7

VIR_ERR_INTERNAL_ERROR = 1
VIR_ERR_XML_ERROR = 27
VIR_ERR_XML_DETAIL = 35
VIR_ERR_NO_DOMAIN = 42
VIR_ERR_NO_NETWORK = 43
VIR_ERR_OPERATION_INVALID = 55


class FakeLibvirtError(Exception):
    def __init__(self, message: str, code: int = VIR_ERR_INTERNAL_ERROR):
        super().__init__(message)
        self._code = code

    def get_error_code(self):
        return self._code


def _make_libvirt_module(conn) -> SimpleNamespace:
    return SimpleNamespace(
        libvirtError=FakeLibvirtError,
        open=lambda uri: conn,
        VIR_DOMAIN_NOSTATE=VIR_DOMAIN_NOSTATE,
        VIR_DOMAIN_RUNNING=VIR_DOMAIN_RUNNING,
        VIR_DOMAIN_BLOCKED=VIR_DOMAIN_BLOCKED,
        VIR_DOMAIN_PAUSED=VIR_DOMAIN_PAUSED,
        VIR_DOMAIN_SHUTDOWN=VIR_DOMAIN_SHUTDOWN,
        VIR_DOMAIN_SHUTOFF=VIR_DOMAIN_SHUTOFF,
        VIR_DOMAIN_CRASHED=VIR_DOMAIN_CRASHED,
        VIR_DOMAIN_PMSUSPENDED=VIR_DOMAIN_PMSUSPENDED,
        VIR_ERR_XML_ERROR=VIR_ERR_XML_ERROR,
        VIR_ERR_XML_DETAIL=VIR_ERR_XML_DETAIL,
        VIR_ERR_XML_INVALID_SCHEMA=92,
        VIR_ERR_CONFIG_UNSUPPORTED=67,
        VIR_ERR_NO_DOMAIN=VIR_ERR_NO_DOMAIN,
        VIR_ERR_NO_NETWORK=VIR_ERR_NO_NETWORK,
        VIR_ERR_OPERATION_INVALID=VIR_ERR_OPERATION_INVALID,
        VIR_DOMAIN_DEFINE_VALIDATE=1,
        VIR_DOMAIN_DESTROY_GRACEFUL=1,
    )


class FakeDomain:
    def __init__(self, conn: "FakeConnection", xml: str):
        self._conn = conn
        self.xml = xml
        self.state_value = VIR_DOMAIN_SHUTOFF
        self.calls: list[str] = []

    def UUIDString(self):  # noqa: N802
        return ET.fromstring(self.xml).findtext("uuid")

    def XMLDesc(self, flags=0):  # noqa: N802
        return self.xml

    def state(self):
        return [self.state_value, 0]

    def _require(self, *states):
        if self.state_value not in states:
            raise FakeLibvirtError(
                f"domain is in state {self.state_value}", VIR_ERR_OPERATION_INVALID,
            )

    def create(self):
        self.calls.append("create")
        self._require(VIR_DOMAIN_SHUTOFF, VIR_DOMAIN_NOSTATE)
        self.state_value = VIR_DOMAIN_RUNNING

    def destroyFlags(self, flags=0):  # noqa: N802
        self.calls.append(f"destroyFlags({flags})")
        self._require(VIR_DOMAIN_RUNNING, VIR_DOMAIN_PAUSED, VIR_DOMAIN_CRASHED)
        self.state_value = VIR_DOMAIN_SHUTOFF

    def reset(self, flags=0):
        self.calls.append("reset")
        self._require(VIR_DOMAIN_RUNNING)

    def shutdown(self):
        self.calls.append("shutdown")
        self._require(VIR_DOMAIN_RUNNING)
        self.state_value = VIR_DOMAIN_SHUTOFF

    def suspend(self):
        self.calls.append("suspend")
        self._require(VIR_DOMAIN_RUNNING)
        self.state_value = VIR_DOMAIN_PAUSED

    def resume(self):
        self.calls.append("resume")
        self._require(VIR_DOMAIN_PAUSED)
        self.state_value = VIR_DOMAIN_RUNNING

    def undefine(self):
        self._conn.domains.pop(self.UUIDString(), None)


class FakeNetwork:
    def __init__(self, xml: str):
        self.xml = xml
        self.active = 0
        self.autostart: list[bool] = []
        self.fail_autostart = False

    def isActive(self):  # noqa: N802
        return self.active

    def create(self):
        self.active = 1

    def setAutostart(self, value: bool):  # noqa: N802
        if self.fail_autostart:
            raise FakeLibvirtError("autostart not supported")
        self.autostart.append(value)


class FakeConnection:
    """libvirt connection keeping domains and networks in dicts."""

    def __init__(self):
        self.domains: dict[str, FakeDomain] = {}
        self.networks: dict[str, FakeNetwork] = {}
        self.define_calls: list[tuple[str, int]] = []
        self.network_defines = 0
        self.reject_xml = False
        self.closed = False

    def isAlive(self):  # noqa: N802
        return not self.closed

    def close(self):
        self.closed = True

    def lookupByUUIDString(self, uuid: str):  # noqa: N802
        if uuid not in self.domains:
            raise FakeLibvirtError(f"no domain with uuid {uuid}", VIR_ERR_NO_DOMAIN)
        return self.domains[uuid]

    def defineXMLFlags(self, xml: str, flags: int = 0):  # noqa: N802
        self.define_calls.append((xml, flags))
        if self.reject_xml:
            raise FakeLibvirtError("XML error: invalid domain", VIR_ERR_XML_DETAIL)
        root = ET.fromstring(xml)
        uuid = root.findtext("uuid")
        domain = self.domains.get(uuid)
        if domain is None:
            domain = FakeDomain(self, xml)
            self.domains[uuid] = domain
        else:
            domain.xml = xml
        return domain

    def listAllDomains(self, flags=0):  # noqa: N802
        return list(self.domains.values())

    def networkLookupByName(self, name: str):  # noqa: N802
        if name not in self.networks:
            raise FakeLibvirtError(f"no network named {name}", VIR_ERR_NO_NETWORK)
        return self.networks[name]

    def networkDefineXML(self, xml: str):  # noqa: N802
        self.network_defines += 1
        name = ET.fromstring(xml).findtext("name")
        network = FakeNetwork(xml)
        self.networks[name] = network
        return network


@pytest.fixture
def libvirt_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_libvirt(monkeypatch, libvirt_conn):
    module = _make_libvirt_module(libvirt_conn)
    monkeypatch.setattr(hypervisor_module, "libvirt", module)
    return module


@pytest.fixture
def hypervisor(fake_libvirt) -> Hypervisor:
    return Hypervisor("test:///default")


# --- Registry and block store ---

@pytest.fixture
def registry(tmp_path):
    reg = DeviceRegistry(tmp_path / "registry.db")
    yield reg
    reg.close()


@pytest.fixture
def qemu_img_calls(monkeypatch) -> list[list[str]]:
    """Replace qemu-img with a stub that creates an empty file."""
    calls: list[list[str]] = []

    def _run(cmd, **kwargs):
        calls.append(list(cmd))
        Path(cmd[4]).write_bytes(b"")
        return SimpleNamespace(returncode=0, stdout="", stderr="")

    monkeypatch.setattr(storage_module.subprocess, "run", _run)
    return calls


@pytest.fixture
def block_store(tmp_path, qemu_img_calls) -> BlockStore:
    return BlockStore(tmp_path / "block")


@pytest.fixture
def engine(registry, hypervisor, block_store) -> Engine:
    return Engine(registry, hypervisor, block_store)


@pytest.fixture
def set_domain_state(libvirt_conn):
    def _set(machine, state: int):
        libvirt_conn.domains[str(machine)].state_value = state
    return _set
