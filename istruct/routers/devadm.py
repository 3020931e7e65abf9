"""Device administration endpoints (is.compute.devadm)."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from istruct.routing import VersionedRouter, get_service
from istruct.service import ResourceService

PREFIX = "is.compute.devadm"

router = APIRouter()


@router.get("/all")
async def all_devices(service: ResourceService = Depends(get_service)) -> dict[UUID, str]:
    return await service.all_devices()


@router.get("/type/{did}")
async def device_kind(did: UUID, service: ResourceService = Depends(get_service)) -> str:
    kind = await service.device_kind(did)
    if kind is None:
        raise HTTPException(status_code=404, detail=f"unknown device {did}")
    return kind


versioned = [VersionedRouter(router, PREFIX, 0, 1)]
