"""Exceptions raised by the reconciler.

Fatal errors (AdapterNotFound, ServiceUnavailable, ConnectionResolutionFailed)
abort the run. ActionFailed is recorded per action and the run continues.
"""
from typing import Optional

from .schema import ActionKind


class GadgetLinkError(Exception):
    """Base class for reconciler errors."""
    pass


class InventoryError(GadgetLinkError):
    """The host query command is unavailable or returned malformed output."""
    pass


class AdapterNotFound(GadgetLinkError):
    """A named adapter does not exist on the host."""

    def __init__(self, adapter: str, detail: str = ""):
        self.adapter = adapter
        self.detail = detail
        message = f"Adapter not found: '{adapter}'"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class UnresolvedAdapterError(AdapterNotFound):
    """An intent names an adapter missing from the inventory snapshot."""
    pass


class ServiceUnavailable(GadgetLinkError):
    """A required background service is not running and cannot be started."""

    def __init__(self, service: str, detail: str = ""):
        self.service = service
        self.detail = detail
        message = f"Service '{service}' is unavailable"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ConnectionResolutionFailed(GadgetLinkError):
    """No usable configuration handle (connection UUID) could be determined."""

    def __init__(self, adapter: str, detail: str = ""):
        self.adapter = adapter
        self.detail = detail
        message = f"Could not resolve a connection for '{adapter}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ActionFailed(GadgetLinkError):
    """A single host action did not succeed."""

    def __init__(self, kind: ActionKind, detail: str, adapter: Optional[str] = None):
        self.kind = kind
        self.detail = detail
        self.adapter = adapter
        target = f" on '{adapter}'" if adapter else ""
        super().__init__(f"{kind.value}{target} failed: {detail}")
