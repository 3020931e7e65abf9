"""Tests for the device taxonomy."""

from __future__ import annotations

import pytest

from istruct.devices import DeviceClass, DeviceKind, MachineAction
from istruct.errors import Corruption


@pytest.mark.parametrize(
    "kind,wire",
    [
        (DeviceKind.CPU, "is.compute.cpu"),
        (DeviceKind.MEM, "is.compute.mem"),
        (DeviceKind.BLOCK, "is.storage.block"),
        (DeviceKind.NAT, "is.network.nat"),
    ],
)
def test_wire_strings_are_stable(kind, wire):
    assert kind.value == wire
    assert DeviceKind.parse(wire) is kind


def test_parse_unknown_kind_is_corruption():
    with pytest.raises(Corruption, match="is.compute.gpu"):
        DeviceKind.parse("is.compute.gpu")


def test_device_classes():
    assert DeviceKind.CPU.device_class is DeviceClass.COMPUTE
    assert DeviceKind.MEM.is_compute
    assert DeviceKind.BLOCK.device_class is DeviceClass.STORAGE
    assert DeviceKind.NAT.device_class is DeviceClass.NETWORK
    assert not DeviceKind.BLOCK.is_compute
    assert not DeviceKind.NAT.is_compute


def test_machine_action_wire_values():
    assert MachineAction("force_shutdown") is MachineAction.FORCE_SHUTDOWN
    assert {a.value for a in MachineAction} == {
        "force_shutdown", "force_reset", "shutdown", "suspend", "resume", "boot",
    }
