"""Versioned router registry.

Every API surface is registered under a dotted prefix and a (major, minor)
version. Mounting exposes each router at ``/<prefix>/v<major>.<minor>``, and
the highest minor of each major also at ``/<prefix>/v<major>``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import APIRouter, FastAPI, Request

from istruct.service import ResourceService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionedRouter:
    """An APIRouter tagged with the prefix and version it serves."""
    router: APIRouter
    prefix: str
    major: int
    minor: int


class CompositeRouter:
    """Collects versioned routers and mounts them on an app."""

    def __init__(self, routers: list[VersionedRouter] | None = None):
        self._routers: dict[tuple[str, int, int], APIRouter] = {}
        for versioned in routers or []:
            self.add(versioned)

    def add(self, versioned: VersionedRouter) -> None:
        """Register a router.

        Raises:
            ValueError: the prefix contains a slash, or the same prefix and
                version were already registered.
        """
        if "/" in versioned.prefix:
            raise ValueError("routing prefixes cannot contain slashes")
        key = (versioned.prefix, versioned.major, versioned.minor)
        if key in self._routers:
            raise ValueError(f"router {key} already registered")
        self._routers[key] = versioned.router

    def mount_paths(self) -> list[tuple[str, APIRouter]]:
        """Return every (path prefix, router) pair mount() would include."""
        grouped: dict[tuple[str, int], list[tuple[int, APIRouter]]] = {}
        for (prefix, major, minor), router in self._routers.items():
            grouped.setdefault((prefix, major), []).append((minor, router))

        paths = []
        for (prefix, major), versions in sorted(grouped.items()):
            versions.sort(key=lambda v: v[0])
            for minor, router in versions:
                paths.append((f"/{prefix}/v{major}.{minor}", router))
            paths.append((f"/{prefix}/v{major}", versions[-1][1]))
        return paths

    def mount(self, app: FastAPI) -> None:
        for path, router in self.mount_paths():
            app.include_router(router, prefix=path, tags=[path.split("/")[1]])
            logger.debug(f"Mounted router at {path}")


def get_service(request: Request) -> ResourceService:
    """FastAPI dependency returning the app's ResourceService."""
    return request.app.state.service
