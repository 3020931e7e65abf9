"""Tests for the libvirt adapter against an in-memory connection."""

from __future__ import annotations

from uuid import uuid4

import pytest

import istruct.hypervisor as hypervisor_module
from istruct.devices import MachineAction, MachineState
from istruct.domain_xml import NAT_NETWORK_NAME, build_default_domain
from istruct.errors import BackendFailure, InvalidConfiguration, InvariantViolation, NotFound
from istruct.hypervisor import Hypervisor, map_domain_state


def _define(hypervisor, machine=None):
    machine = machine or uuid4()
    hypervisor.define_domain(
        build_default_domain(machine, 1, 128 * 1024 * 1024, "/usr/bin/qemu-system-x86_64")
    )
    return machine


def test_missing_bindings_raise_backend_failure(monkeypatch):
    monkeypatch.setattr(hypervisor_module, "libvirt", None)
    with pytest.raises(BackendFailure, match="not installed"):
        Hypervisor("qemu:///system").list_domain_ids()


def test_connection_is_reopened_when_dead(hypervisor, libvirt_conn):
    assert hypervisor.conn is libvirt_conn
    libvirt_conn.closed = True
    opened = []

    def _open(uri):
        opened.append(uri)
        libvirt_conn.closed = False
        return libvirt_conn

    hypervisor_module.libvirt.open = _open
    assert hypervisor.conn is libvirt_conn
    assert opened == ["test:///default"]


def test_state_mapping_is_total(fake_libvirt):
    expected = {
        fake_libvirt.VIR_DOMAIN_NOSTATE: MachineState.OFF,
        fake_libvirt.VIR_DOMAIN_RUNNING: MachineState.RUNNING,
        fake_libvirt.VIR_DOMAIN_BLOCKED: MachineState.ERROR,
        fake_libvirt.VIR_DOMAIN_PAUSED: MachineState.SUSPENDED,
        fake_libvirt.VIR_DOMAIN_SHUTDOWN: MachineState.RUNNING,
        fake_libvirt.VIR_DOMAIN_SHUTOFF: MachineState.OFF,
        fake_libvirt.VIR_DOMAIN_CRASHED: MachineState.ERROR,
        fake_libvirt.VIR_DOMAIN_PMSUSPENDED: MachineState.SUSPENDED,
    }
    for state, machine_state in expected.items():
        assert map_domain_state(state) is machine_state


def test_unknown_state_is_invariant_violation(fake_libvirt):
    with pytest.raises(InvariantViolation):
        map_domain_state(99)


def test_define_uses_validate_flag(hypervisor, libvirt_conn, fake_libvirt):
    machine = _define(hypervisor)
    assert str(machine) in libvirt_conn.domains
    (_xml, flags), = libvirt_conn.define_calls
    assert flags == fake_libvirt.VIR_DOMAIN_DEFINE_VALIDATE


def test_define_rejected_xml_is_invalid_configuration(hypervisor, libvirt_conn):
    libvirt_conn.reject_xml = True
    with pytest.raises(InvalidConfiguration):
        _define(hypervisor)


def test_lookup_missing_domain_returns_none(hypervisor):
    machine = uuid4()
    assert hypervisor.lookup_domain(machine) is None
    assert hypervisor.get_descriptor(machine) is None
    assert hypervisor.domain_state(machine) is None


def test_lookup_other_error_is_backend_failure(hypervisor, libvirt_conn, fake_libvirt):
    def _broken(uuid):
        raise fake_libvirt.libvirtError("connection reset")

    libvirt_conn.lookupByUUIDString = _broken
    with pytest.raises(BackendFailure, match="connection reset"):
        hypervisor.lookup_domain(uuid4())


def test_edit_domain_round_trips_and_redefines(hypervisor, libvirt_conn):
    machine = _define(hypervisor)

    def _mutate(desc):
        desc.vcpus = 4

    hypervisor.edit_domain(machine, _mutate)
    assert hypervisor.get_descriptor(machine).vcpus == 4
    assert len(libvirt_conn.define_calls) == 2


def test_edit_missing_domain_is_not_found(hypervisor):
    with pytest.raises(NotFound):
        hypervisor.edit_domain(uuid4(), lambda desc: None)


def test_list_domain_ids_skips_unparsable_uuids(hypervisor, libvirt_conn):
    machine = _define(hypervisor)

    class _Odd:
        def UUIDString(self):  # noqa: N802
            return "not-a-uuid"

    libvirt_conn.domains["odd"] = _Odd()
    assert hypervisor.list_domain_ids() == [machine]


def test_undefine(hypervisor, libvirt_conn):
    machine = _define(hypervisor)
    assert hypervisor.undefine_domain(machine) is True
    assert libvirt_conn.domains == {}
    assert hypervisor.undefine_domain(machine) is False


@pytest.mark.parametrize(
    "action,call",
    [
        (MachineAction.FORCE_SHUTDOWN, "destroyFlags(1)"),
        (MachineAction.FORCE_RESET, "reset"),
        (MachineAction.SHUTDOWN, "shutdown"),
        (MachineAction.SUSPEND, "suspend"),
    ],
)
def test_act_on_running_domain(hypervisor, libvirt_conn, fake_libvirt, action, call):
    machine = _define(hypervisor)
    libvirt_conn.domains[str(machine)].state_value = fake_libvirt.VIR_DOMAIN_RUNNING
    hypervisor.act(machine, action)
    assert libvirt_conn.domains[str(machine)].calls == [call]


def test_act_boot_and_resume(hypervisor, libvirt_conn):
    machine = _define(hypervisor)
    hypervisor.act(machine, MachineAction.BOOT)
    assert hypervisor.domain_state(machine) is MachineState.RUNNING
    hypervisor.act(machine, MachineAction.SUSPEND)
    assert hypervisor.domain_state(machine) is MachineState.SUSPENDED
    hypervisor.act(machine, MachineAction.RESUME)
    assert hypervisor.domain_state(machine) is MachineState.RUNNING


def test_act_rejected_transition_is_backend_failure(hypervisor):
    machine = _define(hypervisor)
    with pytest.raises(BackendFailure):
        hypervisor.act(machine, MachineAction.RESUME)


def test_act_missing_domain_is_not_found(hypervisor):
    with pytest.raises(NotFound):
        hypervisor.act(uuid4(), MachineAction.BOOT)


def test_ensure_nat_network_is_idempotent(hypervisor, libvirt_conn):
    assert hypervisor.ensure_nat_network() is True
    assert hypervisor.ensure_nat_network() is False

    assert libvirt_conn.network_defines == 1
    network = libvirt_conn.networks[NAT_NETWORK_NAME]
    assert network.isActive() == 1
    assert network.autostart == [True, True]


def test_ensure_nat_network_ignores_autostart_failure(hypervisor, libvirt_conn, caplog):
    hypervisor.ensure_nat_network()
    libvirt_conn.networks[NAT_NETWORK_NAME].fail_autostart = True
    libvirt_conn.networks[NAT_NETWORK_NAME].active = 0

    hypervisor.ensure_nat_network()
    assert libvirt_conn.networks[NAT_NETWORK_NAME].isActive() == 1
    assert "autostart" in caplog.text
