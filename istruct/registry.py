"""Persistent device registry.

The registry is a set of independent key/value indexes keyed by 128-bit ids
(stored as 32-char hex strings) in a SQLite file. Every single write commits
its own transaction. Nothing here makes a sequence of reads and writes atomic;
callers get that by running on the engine worker thread.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, TypeVar
from uuid import UUID

from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, create_engine, delete, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from istruct.devices import Device, DeviceId, DeviceKind, MachineId

logger = logging.getLogger(__name__)

V = TypeVar("V")

KNOWN_MACHINES = "known_machines"
DEV_OWNER = "dev_owner"
DEV_TYPE = "dev_type"
DEV_CPU = "dev_cpu"
DEV_MEM = "dev_mem"
DEV_BLOCK_BYTES = "dev_block_bytes"

# Largest attribute value a BigInteger column holds (SQLite INTEGER is signed).
MAX_ATTRIBUTE_VALUE = 2 ** 63 - 1

metadata = MetaData()


def _index_table(name: str, value_type: Any) -> Table:
    return Table(
        name,
        metadata,
        Column("key", String(32), primary_key=True),
        Column("value", value_type, nullable=False),
    )


_TABLES = {
    DEV_TYPE: _index_table(DEV_TYPE, String(64)),
    DEV_OWNER: _index_table(DEV_OWNER, String(32)),
    DEV_CPU: _index_table(DEV_CPU, BigInteger),
    DEV_MEM: _index_table(DEV_MEM, BigInteger),
    DEV_BLOCK_BYTES: _index_table(DEV_BLOCK_BYTES, BigInteger),
    KNOWN_MACHINES: _index_table(KNOWN_MACHINES, Integer),
}


def _key(value: UUID) -> str:
    return value.hex


class RegistryIndex(Generic[V]):
    """One named index: get / set / delete / scan over UUID keys."""

    def __init__(
        self,
        engine: Engine,
        table: Table,
        encode: Callable[[V], Any],
        decode: Callable[[Any], V],
    ):
        self._engine = engine
        self._table = table
        self._encode = encode
        self._decode = decode

    @property
    def name(self) -> str:
        return self._table.name

    def get(self, key: UUID) -> V | None:
        with self._engine.connect() as conn:
            raw = conn.execute(
                select(self._table.c.value).where(self._table.c.key == _key(key))
            ).scalar_one_or_none()
        if raw is None:
            return None
        return self._decode(raw)

    def set(self, key: UUID, value: V) -> None:
        """Insert or replace the value for key in a single transaction."""
        with self._engine.begin() as conn:
            conn.execute(delete(self._table).where(self._table.c.key == _key(key)))
            conn.execute(insert(self._table).values(key=_key(key), value=self._encode(value)))

    def delete(self, key: UUID) -> None:
        with self._engine.begin() as conn:
            conn.execute(delete(self._table).where(self._table.c.key == _key(key)))

    def scan(self) -> Iterator[tuple[UUID, V]]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(self._table.c.key, self._table.c.value).order_by(self._table.c.key)
            ).all()
        for key, raw in rows:
            yield UUID(hex=key), self._decode(raw)


def _uuid_hex(value: UUID) -> str:
    return value.hex


def _parse_uuid(raw: str) -> UUID:
    return UUID(hex=raw)


def _unit(_value: Any) -> int:
    return 1


class DeviceRegistry:
    """Typed access to the six registry indexes."""

    def __init__(self, path: str | Path):
        engine_kwargs: dict = dict(
            future=True,
            # Opened on the worker thread, closed from whichever thread shuts down.
            connect_args={"check_same_thread": False},
        )
        if str(path) == ":memory:":
            url = "sqlite:///:memory:"
            engine_kwargs["poolclass"] = StaticPool
        else:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{path}"
        self._engine = create_engine(url, **engine_kwargs)
        metadata.create_all(self._engine)
        logger.info(f"Opened device registry at {path}")

        self.dev_type: RegistryIndex[str] = RegistryIndex(
            self._engine, _TABLES[DEV_TYPE], str, str,
        )
        self.dev_owner: RegistryIndex[UUID] = RegistryIndex(
            self._engine, _TABLES[DEV_OWNER], _uuid_hex, _parse_uuid,
        )
        self.dev_cpu: RegistryIndex[int] = RegistryIndex(
            self._engine, _TABLES[DEV_CPU], int, int,
        )
        self.dev_mem: RegistryIndex[int] = RegistryIndex(
            self._engine, _TABLES[DEV_MEM], int, int,
        )
        self.dev_block_bytes: RegistryIndex[int] = RegistryIndex(
            self._engine, _TABLES[DEV_BLOCK_BYTES], int, int,
        )
        self.known_machines: RegistryIndex[int] = RegistryIndex(
            self._engine, _TABLES[KNOWN_MACHINES], _unit, int,
        )

    def close(self) -> None:
        self._engine.dispose()

    # --- Device kind ---

    def get_kind(self, dev: DeviceId) -> DeviceKind | None:
        raw = self.dev_type.get(dev)
        if raw is None:
            return None
        return DeviceKind.parse(raw)

    def set_kind(self, dev: DeviceId, kind: DeviceKind) -> None:
        self.dev_type.set(dev, kind.value)

    def delete_kind(self, dev: DeviceId) -> None:
        self.dev_type.delete(dev)

    def all_kinds(self) -> dict[DeviceId, DeviceKind]:
        return {dev: DeviceKind.parse(raw) for dev, raw in self.dev_type.scan()}

    def get_device(self, dev: DeviceId) -> Device | None:
        kind = self.get_kind(dev)
        if kind is None:
            return None
        return Device(id=dev, kind=kind, owner=self.get_owner(dev))

    # --- Ownership ---

    def get_owner(self, dev: DeviceId) -> MachineId | None:
        return self.dev_owner.get(dev)

    def set_owner(self, dev: DeviceId, machine: MachineId) -> None:
        self.dev_owner.set(dev, machine)

    def clear_owner(self, dev: DeviceId) -> None:
        self.dev_owner.delete(dev)

    def owned_by(self, machine: MachineId) -> list[DeviceId]:
        return [dev for dev, owner in self.dev_owner.scan() if owner == machine]

    # --- Compute attributes ---

    def get_cpu(self, dev: DeviceId) -> int | None:
        return self.dev_cpu.get(dev)

    def set_cpu(self, dev: DeviceId, cores: int) -> None:
        self.dev_cpu.set(dev, cores)

    def delete_cpu(self, dev: DeviceId) -> None:
        self.dev_cpu.delete(dev)

    def get_mem(self, dev: DeviceId) -> int | None:
        return self.dev_mem.get(dev)

    def set_mem(self, dev: DeviceId, size: int) -> None:
        self.dev_mem.set(dev, size)

    def delete_mem(self, dev: DeviceId) -> None:
        self.dev_mem.delete(dev)

    # --- Storage attributes ---

    def get_block_bytes(self, dev: DeviceId) -> int | None:
        return self.dev_block_bytes.get(dev)

    def set_block_bytes(self, dev: DeviceId, size: int) -> None:
        self.dev_block_bytes.set(dev, size)

    def delete_block_bytes(self, dev: DeviceId) -> None:
        self.dev_block_bytes.delete(dev)

    # --- Known machines ---

    def is_known_machine(self, machine: MachineId) -> bool:
        return self.known_machines.get(machine) is not None

    def add_known_machine(self, machine: MachineId) -> None:
        self.known_machines.set(machine, 1)

    def remove_known_machine(self, machine: MachineId) -> None:
        self.known_machines.delete(machine)

    def known_machine_ids(self) -> set[MachineId]:
        return {machine for machine, _ in self.known_machines.scan()}
