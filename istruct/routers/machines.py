"""Machine lifecycle and device plugging endpoints (is.compute.machine)."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response

from istruct.devices import MachineAction, MachineState
from istruct.routing import VersionedRouter, get_service
from istruct.service import ResourceService

PREFIX = "is.compute.machine"

router = APIRouter()


@router.post("/act/{mid}/{action}", status_code=204)
async def act(
    mid: UUID,
    action: MachineAction,
    service: ResourceService = Depends(get_service),
) -> Response:
    await service.act(mid, action)
    return Response(status_code=204)


@router.get("/status/{mid}")
async def status(
    mid: UUID,
    service: ResourceService = Depends(get_service),
) -> MachineState:
    state = await service.status(mid)
    if state is None:
        raise HTTPException(status_code=404, detail=f"machine {mid} has no domain")
    return state


@router.get("/dev/{mid}")
async def dev_list(
    mid: UUID,
    service: ResourceService = Depends(get_service),
) -> dict[UUID, str]:
    devices = await service.dev_list(mid)
    if devices is None:
        raise HTTPException(status_code=404, detail=f"unknown machine {mid}")
    return devices


@router.put("/dev/{mid}/plug/{did}", status_code=204)
async def attach(
    mid: UUID,
    did: UUID,
    service: ResourceService = Depends(get_service),
) -> Response:
    await service.attach(mid, did)
    return Response(status_code=204)


@router.delete("/dev/{mid}/plug/{did}", status_code=204)
async def detach(
    mid: UUID,
    did: UUID,
    service: ResourceService = Depends(get_service),
) -> Response:
    await service.detach(mid, did)
    return Response(status_code=204)


@router.get("/m")
async def list_machines(service: ResourceService = Depends(get_service)) -> list[UUID]:
    return await service.list_machines()


@router.post("/m")
async def create_machine(service: ResourceService = Depends(get_service)) -> UUID:
    return await service.create()


@router.delete("/m/{mid}", status_code=204)
async def destroy_machine(
    mid: UUID,
    service: ResourceService = Depends(get_service),
) -> Response:
    await service.destroy(mid)
    return Response(status_code=204)


versioned = [VersionedRouter(router, PREFIX, 0, 1)]
