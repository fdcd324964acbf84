"""Per-host port allocation for deployed applications."""
from __future__ import annotations

from typing import Dict, FrozenSet, Mapping, Optional

from .database import Database

APP_PORT_POOLS: Dict[str, range] = {
    "nodejs": range(3000, 4000),
    "static": range(4000, 5000),
    "python": range(5000, 6000),
    "wordpress": range(7000, 8000),
    "php": range(8000, 9000),
}

# Ports held by the panel itself and its ancillary services.
RESERVED_PORTS: FrozenSet[int] = frozenset(
    {22, 80, 443, 3000, 3001, 3002, 3306, 5432, 8080, 9090, 9091, 9093, 9100}
)


class PortAllocationError(RuntimeError):
    """Raised when a port cannot be assigned without a collision."""


class PortAllocator:
    """Hands out ports from type-specific pools, tracking assignments in the panel store."""

    def __init__(
        self,
        database: Database,
        *,
        pools: Mapping[str, range] | None = None,
        reserved: FrozenSet[int] = RESERVED_PORTS,
    ) -> None:
        self._database = database
        self._pools = dict(pools or APP_PORT_POOLS)
        self._reserved = reserved

    def pool(self, app_type: str) -> range:
        try:
            return self._pools[app_type]
        except KeyError as exc:
            raise ValueError(f"No port pool defined for application type '{app_type}'") from exc

    def allocate(self, app_type: str, *, user_id: int, name: str) -> int:
        """Return the port for ``name``; a redeploy keeps its existing port."""

        pool = self.pool(app_type)
        existing = self._database.find_application(user_id, name)
        if existing is not None and existing.port is not None:
            if existing.type != app_type:
                raise PortAllocationError(
                    f"Application '{name}' already exists with type '{existing.type}'"
                )
            return existing.port

        taken = self._database.assigned_ports() | self._reserved
        for port in pool:
            if port not in taken:
                return port
        raise PortAllocationError(
            f"Port pool for '{app_type}' ({pool.start}-{pool.stop - 1}) is exhausted"
        )

    def reserve(self, app_type: str, port: int, *, app_id: Optional[int] = None) -> int:
        """Validate an explicitly requested port."""

        pool = self.pool(app_type)
        if port not in pool:
            raise PortAllocationError(
                f"Port {port} is outside the '{app_type}' pool ({pool.start}-{pool.stop - 1})"
            )
        if port in self._reserved:
            raise PortAllocationError(f"Port {port} is reserved for system services")
        if port in self._database.assigned_ports(exclude_app_id=app_id):
            raise PortAllocationError(f"Port {port} is already assigned to another application")
        return port


__all__ = ["APP_PORT_POOLS", "PortAllocationError", "PortAllocator", "RESERVED_PORTS"]
