"""Request and response bodies for the HTTP API."""

from pydantic import BaseModel, Field

from istruct.registry import MAX_ATTRIBUTE_VALUE


class CpuDevice(BaseModel):
    """CPU device attributes."""
    cores: int = Field(gt=0, le=MAX_ATTRIBUTE_VALUE)


class MemoryDevice(BaseModel):
    """Memory device attributes, in bytes."""
    bytes: int = Field(gt=0, le=MAX_ATTRIBUTE_VALUE)


class BlockDevice(BaseModel):
    """Block device capacity, in bytes. Fixed at creation."""
    bytes: int = Field(ge=0, le=MAX_ATTRIBUTE_VALUE)


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    timestamp: str
