"""Device taxonomy and machine state/action vocabulary.

Device kinds are persisted in the registry and exposed to callers as dotted
wire strings. Changing a string is a breaking format change.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from istruct.errors import Corruption

MachineId = UUID
DeviceId = UUID


class DeviceClass(str, Enum):
    """Top-level grouping of device kinds."""
    COMPUTE = "compute"
    STORAGE = "storage"
    NETWORK = "network"


class DeviceKind(str, Enum):
    """Closed set of device variants, valued by their wire string."""
    CPU = "is.compute.cpu"
    MEM = "is.compute.mem"
    BLOCK = "is.storage.block"
    NAT = "is.network.nat"

    @property
    def device_class(self) -> DeviceClass:
        return _DEVICE_CLASSES[self]

    @property
    def is_compute(self) -> bool:
        return self.device_class is DeviceClass.COMPUTE

    @classmethod
    def parse(cls, value: str) -> "DeviceKind":
        """Decode a wire string.

        Raises:
            Corruption: if the string is not a known kind. The registry only
                ever stores values written by ``DeviceKind``, so this means the
                file was tampered with or written by an incompatible version.
        """
        try:
            return cls(value)
        except ValueError:
            raise Corruption(f"unknown device kind {value!r}") from None


_DEVICE_CLASSES = {
    DeviceKind.CPU: DeviceClass.COMPUTE,
    DeviceKind.MEM: DeviceClass.COMPUTE,
    DeviceKind.BLOCK: DeviceClass.STORAGE,
    DeviceKind.NAT: DeviceClass.NETWORK,
}


class MachineState(str, Enum):
    """Coarse machine run state reported to callers."""
    RUNNING = "running"
    SUSPENDED = "suspended"
    OFF = "off"
    ERROR = "error"


class MachineAction(str, Enum):
    """Lifecycle actions a caller can issue against a machine."""
    FORCE_SHUTDOWN = "force_shutdown"
    FORCE_RESET = "force_reset"
    SHUTDOWN = "shutdown"
    SUSPEND = "suspend"
    RESUME = "resume"
    BOOT = "boot"


@dataclass
class Device:
    """Snapshot of one registry device."""
    id: DeviceId
    kind: DeviceKind
    owner: MachineId | None = None
