"""Block device endpoints (is.storage.device)."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response

from istruct.routing import VersionedRouter, get_service
from istruct.schemas import BlockDevice
from istruct.service import ResourceService

PREFIX = "is.storage.device"

router = APIRouter()


@router.post("/block")
async def create_block(
    body: BlockDevice,
    service: ResourceService = Depends(get_service),
) -> UUID:
    return await service.create_block(body.bytes)


@router.get("/block/{did}", response_model=BlockDevice)
async def get_block(did: UUID, service: ResourceService = Depends(get_service)) -> BlockDevice:
    size = await service.get_block(did)
    if size is None:
        raise HTTPException(status_code=404, detail=f"no block device {did}")
    return BlockDevice(bytes=size)


@router.delete("/block/{did}", status_code=204)
async def delete_block(did: UUID, service: ResourceService = Depends(get_service)) -> Response:
    await service.delete_block(did)
    return Response(status_code=204)


versioned = [VersionedRouter(router, PREFIX, 0, 1)]
