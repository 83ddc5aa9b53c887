"""Schema definitions for the reconciler.

Host snapshots (AdapterState, ServiceState, RouteEntry), declarative intents,
the reconciliation plan and the apply result.
"""
import ipaddress
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Optional

# Windows ICS always hands out addresses from this subnet on the private side
ICS_SUBNET = "192.168.137.0/24"


class LinkStatus(str, Enum):
    """Link-layer status of an adapter."""
    UP = "up"
    DOWN = "down"
    UNKNOWN = "unknown"


class SharingRole(str, Enum):
    """Role of an adapter in connection sharing."""
    NONE = "none"
    PUBLIC = "public"     # Upstream side, gets NATed
    PRIVATE = "private"   # Downstream side, gets 192.168.137.1 + DHCP


class IPMethod(str, Enum):
    """IP assignment method (NetworkManager vocabulary)."""
    AUTO = "auto"              # DHCP / SLAAC
    MANUAL = "manual"
    LINK_LOCAL = "link-local"
    SHARED = "shared"
    DISABLED = "disabled"
    IGNORE = "ignore"          # IPv6 only


class DuplicatePolicy(str, Enum):
    """What to do with several profiles carrying the same name."""
    WARN = "warn"     # Report, keep all
    PRUNE = "prune"   # Delete all but the resolved one


class ActionKind(str, Enum):
    """Kind of host action. Declaration order is plan order."""
    START_SERVICE = "start_service"
    SET_MANAGED = "set_managed"
    CREATE_CONNECTION = "create_connection"
    DELETE_CONNECTION = "delete_connection"
    BIND_INTERFACE = "bind_interface"
    DISABLE_SHARING = "disable_sharing"
    ENABLE_SHARING = "enable_sharing"
    SET_IP_METHOD = "set_ip_method"
    SET_AUTOCONNECT = "set_autoconnect"
    SET_METRIC = "set_metric"
    RESTART_ADAPTER = "restart_adapter"


class OutcomeStatus(str, Enum):
    """What happened to a planned action."""
    APPLIED = "applied"
    SKIPPED = "skipped"   # Already in target state
    FAILED = "failed"
    DRY_RUN = "dry_run"


class SharingPhase(str, Enum):
    """Progress of sharing setup for the public/private pair."""
    UNCONFIGURED = "unconfigured"
    DISABLED_EVERYWHERE = "disabled_everywhere"
    BOUND = "bound"
    VERIFIED = "verified"


# --- Host snapshot ---

@dataclass(frozen=True)
class AdapterState:
    """Read-only snapshot of one adapter or NetworkManager connection.

    On NetworkManager hosts each connection profile is one entry (``uuid``
    set), and devices without any profile appear as bare entries
    (``uuid`` is None). On Windows every adapter is a bare entry.
    """
    name: str
    link: LinkStatus = LinkStatus.UNKNOWN
    ipv4_address: Optional[str] = None
    prefix_length: Optional[int] = None
    route_metric: Optional[int] = None
    managed: bool = True
    uuid: Optional[str] = None
    interface: Optional[str] = None
    kind: str = ""
    active: bool = False
    sharing: SharingRole = SharingRole.NONE
    ipv4_method: Optional[IPMethod] = None
    ipv6_method: Optional[IPMethod] = None
    never_default: Optional[bool] = None
    autoconnect: Optional[bool] = None
    autoconnect_priority: Optional[int] = None

    @property
    def is_profile(self) -> bool:
        return self.uuid is not None

    @property
    def has_link_local_address(self) -> bool:
        if not self.ipv4_address:
            return False
        return ipaddress.ip_address(self.ipv4_address).is_link_local

    def in_subnet(self, subnet: str) -> bool:
        """Check whether the IPv4 address lies inside ``subnet``."""
        if not self.ipv4_address:
            return False
        return ipaddress.ip_address(self.ipv4_address) in ipaddress.ip_network(subnet, strict=False)

    @property
    def address_display(self) -> str:
        if not self.ipv4_address:
            return "-"
        if self.prefix_length is None:
            return self.ipv4_address
        return f"{self.ipv4_address}/{self.prefix_length}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data


@dataclass(frozen=True)
class ServiceState:
    """State of a host background service."""
    name: str
    running: bool
    detail: str = ""


@dataclass(frozen=True)
class RouteEntry:
    """One IPv4 route from the host routing table."""
    destination: str  # CIDR, "0.0.0.0/0" for default
    adapter: str
    metric: int = 0
    gateway: Optional[str] = None

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.ip_network(self.destination, strict=False)


# --- Intents ---

@dataclass(frozen=True)
class SharingIntent:
    """Which adapter shares (public) to which (private)."""
    public: str
    private: str
    expected_subnet: Optional[str] = ICS_SUBNET


@dataclass
class PriorityIntent:
    """Desired route metric per adapter; lower is preferred."""
    metrics: dict[str, int] = field(default_factory=dict)

    def get(self, adapter: str) -> Optional[int]:
        return self.metrics.get(adapter)

    def items(self):
        return self.metrics.items()

    def __len__(self) -> int:
        return len(self.metrics)


@dataclass
class AddressingIntent:
    """Desired IP configuration for one adapter/connection."""
    name: str
    interface: Optional[str] = None
    create: Optional[str] = None  # Connection type to create when absent
    ipv4_method: Optional[IPMethod] = None
    ipv6_method: Optional[IPMethod] = None
    never_default: Optional[bool] = None
    autoconnect: Optional[bool] = None
    autoconnect_priority: Optional[int] = None
    optional: bool = False
    expect_subnet: Optional[str] = None


@dataclass
class DesiredTopology:
    """Everything one configuration asks for."""
    host_type: str = "networkmanager"
    sharing: Optional[SharingIntent] = None
    priority: PriorityIntent = field(default_factory=PriorityIntent)
    addressing: dict[str, AddressingIntent] = field(default_factory=dict)
    required_services: list[str] = field(default_factory=list)
    duplicates: DuplicatePolicy = DuplicatePolicy.WARN

    def adapter_names(self) -> list[str]:
        """All adapter names referenced by any intent, in first-seen order."""
        names: list[str] = []
        if self.sharing:
            names.extend([self.sharing.public, self.sharing.private])
        names.extend(self.priority.metrics)
        names.extend(self.addressing)
        return list(dict.fromkeys(names))


# --- Validation Results ---

@dataclass
class ValidationResult:
    """Result of intent validation."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# --- Plan ---

@dataclass
class Action:
    """One idempotent host action."""
    kind: ActionKind
    adapter: str
    params: dict[str, Any] = field(default_factory=dict)
    handle: Optional[str] = None  # NetworkManager UUID when known
    reason: str = ""

    def describe(self) -> str:
        if self.params:
            details = ", ".join(f"{k}={v}" for k, v in self.params.items())
            return f"{self.kind.value} {self.adapter} ({details})"
        return f"{self.kind.value} {self.adapter}"


@dataclass(frozen=True)
class VerificationTarget:
    """Address check to run once the plan has been applied."""
    adapter: str
    subnet: str
    sharing: bool = False  # Private side of the ICS pair


@dataclass
class ReconciliationPlan:
    """Ordered actions to move the host to the desired state."""
    actions: list[Action] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    verifications: list[VerificationTarget] = field(default_factory=list)
    sharing: Optional[SharingIntent] = None

    @property
    def no_change(self) -> bool:
        return len(self.actions) == 0

    @property
    def total_changes(self) -> int:
        return len(self.actions)

    def actions_for(self, adapter: str) -> list[Action]:
        return [a for a in self.actions if a.adapter == adapter]

    def kinds(self) -> list[ActionKind]:
        return [a.kind for a in self.actions]


# --- Execution Results ---

@dataclass
class ApplyOptions:
    """Options for plan execution."""
    dry_run: bool = False
    stop_on_error: bool = False
    verify: bool = True
    audit_context: str = ""


@dataclass
class ActionOutcome:
    """Result of one planned action."""
    action: Action
    status: OutcomeStatus
    detail: str = ""
    commands: list[str] = field(default_factory=list)


@dataclass
class VerificationMismatch:
    """Post-apply address check that still failed after remediation."""
    adapter: str
    expected_subnet: str
    observed: Optional[str] = None
    remediated: bool = False
    link_local: bool = False  # Observed address is 169.254.x.x (no DHCP lease)

    def __str__(self) -> str:
        observed = self.observed or "no address"
        if self.link_local:
            observed += " (link-local, no DHCP lease)"
        return (
            f"{self.adapter}: expected an address in {self.expected_subnet}, "
            f"found {observed}"
        )


@dataclass
class ApplyResult:
    """Result of applying a plan."""
    success: bool = False
    dry_run: bool = False
    outcomes: list[ActionOutcome] = field(default_factory=list)
    changes_made: list[str] = field(default_factory=list)
    failures: list[Any] = field(default_factory=list)  # ActionFailed
    verified: list[str] = field(default_factory=list)
    mismatches: list[VerificationMismatch] = field(default_factory=list)
    remediations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    sharing_phase: Optional[SharingPhase] = None
    error: Optional[str] = None

    @property
    def changed(self) -> int:
        """Number of actions that actually changed the host."""
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.APPLIED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.SKIPPED)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "changed": self.changed,
            "skipped": self.skipped,
            "changes_made": self.changes_made,
            "outcomes": [
                {"action": o.action.describe(), "status": o.status.value, "detail": o.detail}
                for o in self.outcomes
            ],
            "failures": [str(f) for f in self.failures],
            "verified": self.verified,
            "mismatches": [str(m) for m in self.mismatches],
            "remediations": self.remediations,
            "warnings": self.warnings,
            "sharing_phase": self.sharing_phase.value if self.sharing_phase else None,
            "error": self.error,
        }
