"""NAT device endpoints (is.network.device)."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Response

from istruct.routing import VersionedRouter, get_service
from istruct.service import ResourceService

PREFIX = "is.network.device"

router = APIRouter()


@router.post("/nat")
async def create_nat(service: ResourceService = Depends(get_service)) -> UUID:
    return await service.create_nat()


@router.delete("/nat/{did}", status_code=204)
async def delete_nat(did: UUID, service: ResourceService = Depends(get_service)) -> Response:
    await service.delete_nat(did)
    return Response(status_code=204)


versioned = [VersionedRouter(router, PREFIX, 0, 1)]
