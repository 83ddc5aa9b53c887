"""Reconciler - Declarative host network configuration.

The reconciler brings a host's adapters to a declared topology:
- Send desired state, not individual commands
- Validation and planning before anything changes
- Already-satisfied actions are skipped, so re-runs are no-ops
- Post-apply address verification with a single remediation

Usage:
    from gadget_link.reconcile import Reconciler

    result = Reconciler(backend).reconcile({
        "host": {"type": "windows-ics"},
        "sharing": {"public": "Wi-Fi", "private": "Ethernet 2"},
    }, dry_run=True)
"""

from .engine import Reconciler
from .schema import (
    Action,
    ActionKind,
    ActionOutcome,
    AdapterState,
    AddressingIntent,
    ApplyOptions,
    ApplyResult,
    DesiredTopology,
    DuplicatePolicy,
    ICS_SUBNET,
    IPMethod,
    LinkStatus,
    OutcomeStatus,
    PriorityIntent,
    ReconciliationPlan,
    RouteEntry,
    ServiceState,
    SharingIntent,
    SharingPhase,
    SharingRole,
    ValidationResult,
    VerificationMismatch,
)
from .errors import (
    ActionFailed,
    AdapterNotFound,
    ConnectionResolutionFailed,
    GadgetLinkError,
    InventoryError,
    ServiceUnavailable,
    UnresolvedAdapterError,
)
from .parser import IntentParser, ParseError
from .validator import IntentValidator
from .inventory import InventoryReader
from .planner import Planner, action_satisfied, summarize_plan
from .applier import Applier
from .routes import resolve_route, sort_routes

__all__ = [
    # Main entry point
    "Reconciler",
    # Schema classes
    "Action",
    "ActionKind",
    "ActionOutcome",
    "AdapterState",
    "AddressingIntent",
    "ApplyOptions",
    "ApplyResult",
    "DesiredTopology",
    "DuplicatePolicy",
    "ICS_SUBNET",
    "IPMethod",
    "LinkStatus",
    "OutcomeStatus",
    "PriorityIntent",
    "ReconciliationPlan",
    "RouteEntry",
    "ServiceState",
    "SharingIntent",
    "SharingPhase",
    "SharingRole",
    "ValidationResult",
    "VerificationMismatch",
    # Errors
    "ActionFailed",
    "AdapterNotFound",
    "ConnectionResolutionFailed",
    "GadgetLinkError",
    "InventoryError",
    "ServiceUnavailable",
    "UnresolvedAdapterError",
    # Components (for advanced use)
    "IntentParser",
    "ParseError",
    "IntentValidator",
    "InventoryReader",
    "Planner",
    "action_satisfied",
    "summarize_plan",
    "Applier",
    "resolve_route",
    "sort_routes",
]
