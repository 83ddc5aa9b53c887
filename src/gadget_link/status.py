"""Status report: adapter table, route table, egress check."""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .reconcile.inventory import InventoryReader
from .reconcile.routes import resolve_route, sort_routes
from .reconcile.schema import AdapterState, RouteEntry

logger = logging.getLogger(__name__)


@dataclass
class EgressResult:
    """Outcome of the public-IP check."""
    ok: bool
    address: Optional[str] = None
    error: Optional[str] = None


def check_egress(
    url: str = "https://ifconfig.me/ip",
    timeout: float = 5.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> EgressResult:
    """Fetch the public IPv4 address seen by ``url``.

    Failures are reported, never raised.
    """
    # IPv4 only, like curl -4
    transport = transport or httpx.HTTPTransport(local_address="0.0.0.0")
    try:
        with httpx.Client(transport=transport, timeout=httpx.Timeout(timeout)) as client:
            response = client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Egress check against {url} failed: {e}")
        return EgressResult(ok=False, error=str(e))

    address = response.text.strip()
    logger.debug(f"Egress address: {address}")
    return EgressResult(ok=True, address=address)


def format_adapter_table(adapters: list[AdapterState]) -> str:
    rows = [("NAME", "DEVICE", "LINK", "ADDRESS", "METRIC", "SHARING", "MANAGED")]
    for a in adapters:
        rows.append((
            a.name,
            a.interface or "-",
            a.link.value,
            a.address_display,
            "-" if a.route_metric is None else str(a.route_metric),
            a.sharing.value,
            "yes" if a.managed else "no",
        ))
    return _format_rows(rows)


def format_route_table(routes: list[RouteEntry]) -> str:
    rows = [("DESTINATION", "GATEWAY", "ADAPTER", "METRIC")]
    for r in sort_routes(routes):
        rows.append((r.destination, r.gateway or "-", r.adapter, str(r.metric)))
    return _format_rows(rows)


def _format_rows(rows: list[tuple[str, ...]]) -> str:
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return "\n".join(
        "  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip()
        for row in rows
    )


def build_status_report(
    inventory: InventoryReader,
    egress_url: Optional[str] = None,
    egress_timeout: float = 5.0,
) -> str:
    """
    Render the host status as text.

    Args:
        inventory: Reader for the host being reported
        egress_url: URL for the public-IP check; None skips it
        egress_timeout: Seconds before the egress check gives up

    Returns:
        Multi-line report
    """
    adapters = inventory.read()
    routes = inventory.read_routes()

    lines = [f"Host: {inventory.host}", "", "Adapters:", format_adapter_table(adapters)]
    lines += ["", "Routes:", format_route_table(routes)]

    default = resolve_route(routes, "1.1.1.1")
    lines.append("")
    if default:
        lines.append(f"Internet traffic leaves via {default.adapter} (metric {default.metric})")
    else:
        lines.append("No default route")

    if egress_url:
        egress = check_egress(egress_url, egress_timeout)
        if egress.ok:
            lines.append(f"Egress address: {egress.address}")
        else:
            lines.append(f"Egress check failed: {egress.error}")

    return "\n".join(lines)
