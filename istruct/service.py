"""Async facade over the engine worker.

Each method is exactly one unit of work on the worker, so it observes and
leaves the registry and libvirt in a consistent state relative to every other
call.
"""

from __future__ import annotations

from istruct.devices import DeviceId, MachineAction, MachineId, MachineState
from istruct.engine import Engine
from istruct.worker import EngineWorker


class ResourceService:
    """Machine and device operations for async callers."""

    def __init__(self, worker: EngineWorker):
        self._worker = worker

    @classmethod
    def from_settings(cls, settings) -> "ResourceService":
        return cls(EngineWorker(lambda: Engine.from_settings(settings)))

    @property
    def worker(self) -> EngineWorker:
        return self._worker

    def close(self) -> None:
        self._worker.shutdown()

    # Machines

    async def create(self) -> MachineId:
        return await self._worker.submit(Engine.create)

    async def destroy(self, machine: MachineId) -> None:
        await self._worker.submit(Engine.destroy, machine)

    async def list_machines(self) -> list[MachineId]:
        return await self._worker.submit(Engine.list_machines)

    async def status(self, machine: MachineId) -> MachineState | None:
        return await self._worker.submit(Engine.status, machine)

    async def act(self, machine: MachineId, action: MachineAction) -> None:
        await self._worker.submit(Engine.act, machine, action)

    async def dev_list(self, machine: MachineId) -> dict[DeviceId, str] | None:
        return await self._worker.submit(Engine.dev_list, machine)

    async def attach(self, machine: MachineId, device: DeviceId) -> None:
        await self._worker.submit(Engine.attach, machine, device)

    async def detach(self, machine: MachineId, device: DeviceId) -> None:
        await self._worker.submit(Engine.detach, machine, device)

    # Compute devices

    async def get_cpu(self, device: DeviceId) -> int | None:
        return await self._worker.submit(Engine.get_cpu, device)

    async def set_cpu(self, device: DeviceId, cores: int) -> None:
        await self._worker.submit(Engine.set_cpu, device, cores)

    async def get_mem(self, device: DeviceId) -> int | None:
        return await self._worker.submit(Engine.get_mem, device)

    async def set_mem(self, device: DeviceId, size: int) -> None:
        await self._worker.submit(Engine.set_mem, device, size)

    # Storage devices

    async def create_block(self, size: int) -> DeviceId:
        return await self._worker.submit(Engine.create_block, size)

    async def get_block(self, device: DeviceId) -> int | None:
        return await self._worker.submit(Engine.get_block, device)

    async def delete_block(self, device: DeviceId) -> None:
        await self._worker.submit(Engine.delete_block, device)

    # Network devices

    async def create_nat(self) -> DeviceId:
        return await self._worker.submit(Engine.create_nat)

    async def delete_nat(self, device: DeviceId) -> None:
        await self._worker.submit(Engine.delete_nat, device)

    # Device administration

    async def all_devices(self) -> dict[DeviceId, str]:
        return await self._worker.submit(Engine.all_devices)

    async def device_kind(self, device: DeviceId) -> str | None:
        return await self._worker.submit(Engine.device_kind, device)
