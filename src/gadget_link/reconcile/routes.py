"""Route selection over a routing table snapshot."""
import ipaddress
from typing import Iterable, Optional

from .schema import RouteEntry


def sort_routes(routes: Iterable[RouteEntry]) -> list[RouteEntry]:
    """Order routes by preference: most specific prefix first, then lowest metric."""
    return sorted(routes, key=lambda r: (-r.network.prefixlen, r.metric))


def resolve_route(routes: Iterable[RouteEntry], destination: str) -> Optional[RouteEntry]:
    """Pick the route the kernel would use for ``destination``.

    Longest prefix wins; among equal prefixes the lowest metric wins.
    """
    address = ipaddress.ip_address(destination)
    for route in sort_routes(routes):
        if address in route.network:
            return route
    return None
