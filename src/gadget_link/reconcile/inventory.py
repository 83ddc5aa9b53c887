"""Adapter inventory reader.

Takes read-only snapshots of the host through a backend. Nothing here
changes host state.
"""
import logging
from typing import Iterable, Optional

from ..backends.base import HostBackend
from .errors import InventoryError
from .schema import AdapterState, RouteEntry, ServiceState

logger = logging.getLogger(__name__)


class InventoryReader:
    """Read adapters, services and routes from a host backend."""

    def __init__(self, backend: HostBackend):
        self.backend = backend

    @property
    def host(self) -> str:
        return self.backend.host

    def read(self) -> list[AdapterState]:
        """Snapshot all adapters.

        Raises:
            InventoryError: If the host query is unavailable or malformed
        """
        try:
            adapters = self.backend.list_adapters()
        except InventoryError:
            raise
        except (ValueError, KeyError, TypeError) as e:
            raise InventoryError(f"Malformed adapter data from {self.host}: {e}") from e

        logger.debug(f"Read {len(adapters)} adapters from {self.host}")
        return adapters

    def find(self, name: str) -> Optional[AdapterState]:
        """Re-query a single adapter by name, preferring active profiles."""
        matches = [a for a in self.read() if a.name == name]
        if not matches:
            return None
        return sorted(matches, key=lambda a: (not a.active, not a.is_profile))[0]

    def read_services(self, names: Iterable[str]) -> list[ServiceState]:
        """Snapshot the named background services."""
        return [self.backend.get_service(name) for name in names]

    def read_routes(self) -> list[RouteEntry]:
        """Snapshot the IPv4 routing table."""
        try:
            return self.backend.list_routes()
        except (ValueError, KeyError, TypeError) as e:
            raise InventoryError(f"Malformed route data from {self.host}: {e}") from e
