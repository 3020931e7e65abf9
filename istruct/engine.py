"""Resource orchestration engine.

Owns the device registry, the libvirt adapter and the block store, and
implements machine lifecycle, attach/detach and device CRUD on top of them.

The engine is synchronous and not thread-safe. Check-then-act sequences
(look up owner, edit the domain, record the owner) are only correct because
every call runs on the single engine worker thread, one at a time.
"""

from __future__ import annotations

import functools
import logging
from uuid import uuid4

from istruct.devices import DeviceId, DeviceKind, MachineAction, MachineId, MachineState
from istruct.domain_xml import NAT_NETWORK_NAME, DomainDescriptor, build_default_domain
from istruct.errors import (
    Conflict,
    ConflictReason,
    Corruption,
    InvalidArgument,
    InvariantViolation,
    IstructError,
    NotFound,
)
from istruct.hypervisor import Hypervisor
from istruct.metrics import track_operation
from istruct.registry import MAX_ATTRIBUTE_VALUE, DeviceRegistry
from istruct.storage import BlockStore

logger = logging.getLogger(__name__)

# Bus used for block devices attached to a machine.
BLOCK_BUS = "ide"


def _check_range(what: str, value: int, minimum: int) -> None:
    if not minimum <= value <= MAX_ATTRIBUTE_VALUE:
        raise InvalidArgument(
            f"{what} must be between {minimum} and {MAX_ATTRIBUTE_VALUE}, got {value}"
        )


def _operation(name: str):
    """Record metrics for an engine operation and escalate broken invariants."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            with track_operation(name):
                try:
                    return func(self, *args, **kwargs)
                except (Corruption, InvariantViolation) as e:
                    logger.critical(f"{name} aborted: {e}")
                    raise
        return wrapper
    return decorator


class Engine:
    """Single-host machine and device engine."""

    def __init__(
        self,
        registry: DeviceRegistry,
        hypervisor: Hypervisor,
        block_store: BlockStore,
        emulator: str = "/usr/bin/qemu-system-x86_64",
        default_vcpus: int = 1,
        default_memory_bytes: int = 128 * 1024 * 1024,
    ):
        self.registry = registry
        self.hypervisor = hypervisor
        self.block_store = block_store
        self.emulator = emulator
        self.default_vcpus = default_vcpus
        self.default_memory_bytes = default_memory_bytes

    @classmethod
    def from_settings(cls, settings) -> "Engine":
        return cls(
            registry=DeviceRegistry(settings.registry_path),
            hypervisor=Hypervisor(settings.libvirt_uri),
            block_store=BlockStore(settings.block_dir, settings.qemu_img_path),
            emulator=settings.emulator_path,
            default_vcpus=settings.default_vcpus,
            default_memory_bytes=settings.default_memory_bytes,
        )

    def close(self) -> None:
        self.hypervisor.close()
        self.registry.close()

    # --- Helpers ---

    def _require_known_machine(self, machine: MachineId) -> None:
        if not self.registry.is_known_machine(machine):
            raise NotFound(f"unknown machine {machine}")

    def _require_kind(self, device: DeviceId) -> DeviceKind:
        kind = self.registry.get_kind(device)
        if kind is None:
            raise NotFound(f"unknown device {device}")
        return kind

    def _require_detached(self, device: DeviceId, expected: DeviceKind) -> None:
        """Check device exists, is of the expected kind and has no owner."""
        kind = self._require_kind(device)
        if kind is not expected:
            raise Conflict(
                f"device {device} is {kind.value}, not {expected.value}",
                ConflictReason.WRONG_KIND,
            )
        owner = self.registry.get_owner(device)
        if owner is not None:
            raise Conflict(
                f"device {device} is attached to machine {owner}",
                ConflictReason.ATTACHED,
            )

    def _compute_owner(self, device: DeviceId, expected: DeviceKind) -> MachineId:
        kind = self._require_kind(device)
        if kind is not expected:
            raise Conflict(
                f"device {device} is {kind.value}, not {expected.value}",
                ConflictReason.WRONG_KIND,
            )
        owner = self.registry.get_owner(device)
        if owner is None:
            raise InvariantViolation(f"compute device {device} has no owner")
        return owner

    # --- Machine lifecycle ---

    @_operation("create")
    def create(self) -> MachineId:
        """Define a new machine with one CPU and one MEM device."""
        machine = uuid4()
        descriptor = build_default_domain(
            machine,
            vcpus=self.default_vcpus,
            memory_bytes=self.default_memory_bytes,
            emulator=self.emulator,
        )
        self.hypervisor.define_domain(descriptor)

        cpu = uuid4()
        self.registry.set_kind(cpu, DeviceKind.CPU)
        self.registry.set_cpu(cpu, self.default_vcpus)
        self.registry.set_owner(cpu, machine)

        mem = uuid4()
        self.registry.set_kind(mem, DeviceKind.MEM)
        self.registry.set_mem(mem, self.default_memory_bytes)
        self.registry.set_owner(mem, machine)

        self.registry.add_known_machine(machine)
        logger.info(f"Created machine {machine} (cpu={cpu}, mem={mem})")
        return machine

    @_operation("destroy")
    def destroy(self, machine: MachineId) -> None:
        """Detach everything from an Off machine and remove it.

        Raises:
            NotFound: the machine is unknown or has no domain.
            Conflict: the machine is not Off.
            InvariantViolation: the machine does not own exactly one CPU and
                one MEM device, or a non-compute device would not detach.
        """
        self._require_known_machine(machine)
        state = self.hypervisor.domain_state(machine)
        if state is None:
            raise NotFound(f"machine {machine} has no domain")
        if state is not MachineState.OFF:
            raise Conflict(
                f"machine is not off (state: {state.value})", ConflictReason.STATE,
            )

        cpus: list[DeviceId] = []
        mems: list[DeviceId] = []
        others: list[tuple[DeviceId, DeviceKind]] = []
        for device in self.registry.owned_by(machine):
            kind = self.registry.get_kind(device)
            if kind is None:
                raise InvariantViolation(
                    f"device {device} owned by machine {machine} has no kind"
                )
            if kind is DeviceKind.CPU:
                cpus.append(device)
            elif kind is DeviceKind.MEM:
                mems.append(device)
            else:
                others.append((device, kind))

        if len(cpus) != 1 or len(mems) != 1:
            raise InvariantViolation(
                f"machine {machine} owns {len(cpus)} cpu and {len(mems)} mem devices"
            )

        for device, kind in others:
            try:
                self._detach(machine, device, kind)
            except IstructError as e:
                raise InvariantViolation(
                    f"cannot detach {device} from machine {machine} being destroyed: {e}"
                ) from e

        cpu, mem = cpus[0], mems[0]
        self.registry.delete_cpu(cpu)
        self.registry.clear_owner(cpu)
        self.registry.delete_kind(cpu)
        self.registry.delete_mem(mem)
        self.registry.clear_owner(mem)
        self.registry.delete_kind(mem)

        if not self.hypervisor.undefine_domain(machine):
            logger.warning(f"Domain for machine {machine} vanished before undefine")
        self.registry.remove_known_machine(machine)
        logger.info(f"Destroyed machine {machine}")

    @_operation("list")
    def list_machines(self) -> list[MachineId]:
        """Machines that are both known and have a libvirt domain."""
        known = self.registry.known_machine_ids()
        return [uid for uid in self.hypervisor.list_domain_ids() if uid in known]

    @_operation("status")
    def status(self, machine: MachineId) -> MachineState | None:
        return self.hypervisor.domain_state(machine)

    @_operation("act")
    def act(self, machine: MachineId, action: MachineAction) -> None:
        self.hypervisor.act(machine, action)

    @_operation("dev_list")
    def dev_list(self, machine: MachineId) -> dict[DeviceId, str] | None:
        if not self.registry.is_known_machine(machine):
            return None
        devices = {}
        for device in self.registry.owned_by(machine):
            kind = self.registry.get_kind(device)
            if kind is None:
                logger.warning(f"Device {device} owned by {machine} has no kind")
                continue
            devices[device] = kind.value
        return devices

    # --- Attach / detach ---

    @_operation("attach")
    def attach(self, machine: MachineId, device: DeviceId) -> None:
        """Plug a storage or network device into a machine.

        The domain is redefined before the owner is recorded.
        """
        self._require_known_machine(machine)
        kind = self._require_kind(device)
        if kind.is_compute:
            raise Conflict("cannot reassign compute devices", ConflictReason.COMPUTE_DEVICE)

        owner = self.registry.get_owner(device)
        if owner == machine:
            raise Conflict(
                "device already attached to this machine", ConflictReason.SAME_MACHINE,
            )
        if owner is not None:
            raise Conflict(
                "device already attached to other machine", ConflictReason.OTHER_MACHINE,
            )

        if kind is DeviceKind.BLOCK:
            self._attach_block(machine, device)
        elif kind is DeviceKind.NAT:
            self._attach_nat(machine)
        else:
            raise InvariantViolation(f"no attach procedure for {kind.value}")

        self.registry.set_owner(device, machine)
        logger.info(f"Attached {kind.value} device {device} to machine {machine}")

    def _attach_block(self, machine: MachineId, device: DeviceId) -> None:
        source = str(self.block_store.path_for(device))

        def add_disk(descriptor: DomainDescriptor) -> None:
            target = descriptor.next_disk_target()
            descriptor.add_file_disk(source, target, bus=BLOCK_BUS)
            logger.debug(f"Block device {device} gets target {target} on {machine}")

        self.hypervisor.edit_domain(machine, add_disk)

    def _attach_nat(self, machine: MachineId) -> None:
        self.hypervisor.ensure_nat_network()

        def add_interface(descriptor: DomainDescriptor) -> None:
            if any(i.network == NAT_NETWORK_NAME for i in descriptor.interfaces):
                # Detach removes every interface on the NAT network at once.
                logger.warning(
                    f"Machine {machine} already has an interface on {NAT_NETWORK_NAME}"
                )
            descriptor.add_network_interface(NAT_NETWORK_NAME)

        self.hypervisor.edit_domain(machine, add_interface)

    @_operation("detach")
    def detach(self, machine: MachineId, device: DeviceId) -> None:
        """Unplug a storage or network device from the machine that owns it."""
        kind = self._require_kind(device)
        if kind.is_compute:
            raise Conflict("cannot reassign compute devices", ConflictReason.COMPUTE_DEVICE)

        owner = self.registry.get_owner(device)
        if owner is None:
            raise Conflict("device is not attached", ConflictReason.NOT_ATTACHED)
        if owner != machine:
            raise Conflict(
                f"device is attached to machine {owner}", ConflictReason.OTHER_MACHINE,
            )

        self._detach(machine, device, kind)

    def _detach(self, machine: MachineId, device: DeviceId, kind: DeviceKind) -> None:
        if kind is DeviceKind.BLOCK:
            device_str = str(device)

            def mutate(descriptor: DomainDescriptor) -> None:
                removed = descriptor.remove_disks(
                    lambda disk: disk.source_file is not None and device_str in disk.source_file
                )
                if not removed:
                    logger.warning(f"No disk for block device {device} on machine {machine}")
        elif kind is DeviceKind.NAT:
            def mutate(descriptor: DomainDescriptor) -> None:
                if not descriptor.remove_network_interfaces(NAT_NETWORK_NAME):
                    logger.warning(f"No {NAT_NETWORK_NAME} interface on machine {machine}")
        else:
            raise InvariantViolation(f"no detach procedure for {kind.value}")

        self.hypervisor.edit_domain(machine, mutate)
        self.registry.clear_owner(device)
        logger.info(f"Detached {kind.value} device {device} from machine {machine}")

    # --- Compute devices ---

    @_operation("get_cpu")
    def get_cpu(self, device: DeviceId) -> int | None:
        return self.registry.get_cpu(device)

    @_operation("set_cpu")
    def set_cpu(self, device: DeviceId, cores: int) -> None:
        _check_range("core count", cores, 1)
        machine = self._compute_owner(device, DeviceKind.CPU)

        def set_vcpus(descriptor: DomainDescriptor) -> None:
            descriptor.vcpus = cores

        self.hypervisor.edit_domain(machine, set_vcpus)
        self.registry.set_cpu(device, cores)
        logger.info(f"Set machine {machine} to {cores} cores")

    @_operation("get_mem")
    def get_mem(self, device: DeviceId) -> int | None:
        return self.registry.get_mem(device)

    @_operation("set_mem")
    def set_mem(self, device: DeviceId, size: int) -> None:
        _check_range("memory size", size, 1)
        machine = self._compute_owner(device, DeviceKind.MEM)

        def set_memory(descriptor: DomainDescriptor) -> None:
            descriptor.memory_bytes = size

        self.hypervisor.edit_domain(machine, set_memory)
        self.registry.set_mem(device, size)
        logger.info(f"Set machine {machine} memory to {size} bytes")

    # --- Storage devices ---

    @_operation("create_block")
    def create_block(self, size: int) -> DeviceId:
        _check_range("block size", size, 0)
        device = uuid4()
        self.block_store.create(device, size)
        self.registry.set_kind(device, DeviceKind.BLOCK)
        self.registry.set_block_bytes(device, size)
        logger.info(f"Created block device {device} ({size} bytes)")
        return device

    @_operation("get_block")
    def get_block(self, device: DeviceId) -> int | None:
        return self.registry.get_block_bytes(device)

    @_operation("delete_block")
    def delete_block(self, device: DeviceId) -> None:
        self._require_detached(device, DeviceKind.BLOCK)
        self.block_store.delete(device)
        self.registry.delete_block_bytes(device)
        self.registry.delete_kind(device)
        logger.info(f"Deleted block device {device}")

    # --- Network devices ---

    @_operation("create_nat")
    def create_nat(self) -> DeviceId:
        self.hypervisor.ensure_nat_network()
        device = uuid4()
        self.registry.set_kind(device, DeviceKind.NAT)
        logger.info(f"Created NAT device {device}")
        return device

    @_operation("delete_nat")
    def delete_nat(self, device: DeviceId) -> None:
        self._require_detached(device, DeviceKind.NAT)
        self.registry.delete_kind(device)
        logger.info(f"Deleted NAT device {device}")

    # --- Device administration ---

    @_operation("all_devices")
    def all_devices(self) -> dict[DeviceId, str]:
        return {device: kind.value for device, kind in self.registry.all_kinds().items()}

    @_operation("device_kind")
    def device_kind(self, device: DeviceId) -> str | None:
        kind = self.registry.get_kind(device)
        return kind.value if kind is not None else None
