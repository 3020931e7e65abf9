"""CPU and memory device endpoints (is.compute.machine.device)."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response

from istruct.routing import VersionedRouter, get_service
from istruct.schemas import CpuDevice, MemoryDevice
from istruct.service import ResourceService

PREFIX = "is.compute.machine.device"

router = APIRouter()


@router.get("/cpu/{did}", response_model=CpuDevice)
async def get_cpu(did: UUID, service: ResourceService = Depends(get_service)) -> CpuDevice:
    cores = await service.get_cpu(did)
    if cores is None:
        raise HTTPException(status_code=404, detail=f"no cpu device {did}")
    return CpuDevice(cores=cores)


@router.patch("/cpu/{did}", status_code=204)
async def set_cpu(
    did: UUID,
    body: CpuDevice,
    service: ResourceService = Depends(get_service),
) -> Response:
    await service.set_cpu(did, body.cores)
    return Response(status_code=204)


@router.get("/mem/{did}", response_model=MemoryDevice)
async def get_mem(did: UUID, service: ResourceService = Depends(get_service)) -> MemoryDevice:
    size = await service.get_mem(did)
    if size is None:
        raise HTTPException(status_code=404, detail=f"no memory device {did}")
    return MemoryDevice(bytes=size)


@router.patch("/mem/{did}", status_code=204)
async def set_mem(
    did: UUID,
    body: MemoryDevice,
    service: ResourceService = Depends(get_service),
) -> Response:
    await service.set_mem(did, body.bytes)
    return Response(status_code=204)


versioned = [VersionedRouter(router, PREFIX, 0, 1)]
