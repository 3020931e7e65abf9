"""Typed failures raised by the resource engine.

Every public engine operation either returns a value (or ``None`` for an
absent query result) or raises exactly one of these.
"""

from __future__ import annotations

from enum import Enum


class IstructError(Exception):
    """Base class for all engine failures."""

    status_code = 500


class NotFound(IstructError):
    """Raised when a device or machine id is unknown."""

    status_code = 404


class ConflictReason(str, Enum):
    """Which ownership or state invariant a rejected operation would break."""
    COMPUTE_DEVICE = "compute_device"
    SAME_MACHINE = "same_machine"
    OTHER_MACHINE = "other_machine"
    NOT_ATTACHED = "not_attached"
    ATTACHED = "attached"
    WRONG_KIND = "wrong_kind"
    STATE = "state"


class Conflict(IstructError):
    """Raised when an operation would violate an ownership or state invariant."""

    status_code = 409

    def __init__(self, message: str, reason: ConflictReason):
        super().__init__(message)
        self.reason = reason


class InvalidArgument(IstructError):
    """Raised when a device attribute value is out of range."""

    status_code = 422


class InvalidConfiguration(IstructError):
    """Raised when libvirt rejects a domain descriptor."""

    status_code = 422


class Corruption(IstructError):
    """Raised when the registry holds a value that cannot be decoded."""


class InvariantViolation(IstructError):
    """Raised when a condition that cannot happen under correct operation does.

    The operation that hit it is aborted; state is left as found so it can
    be inspected.
    """


class BackendFailure(IstructError):
    """Raised when libvirt, qemu-img or the filesystem fails."""

    status_code = 502
