"""Desired-state planner.

Computes the minimal ordered set of actions needed to move a host snapshot
to the desired intents. Pure: the same inputs always give the same plan,
and nothing here touches the host.
"""
from collections import defaultdict
from typing import Iterable, Optional

from .errors import UnresolvedAdapterError
from .schema import (
    Action,
    ActionKind,
    AdapterState,
    AddressingIntent,
    DesiredTopology,
    DuplicatePolicy,
    PriorityIntent,
    ReconciliationPlan,
    ServiceState,
    SharingIntent,
    SharingRole,
    VerificationTarget,
)

# Actions after which a NetworkManager profile has to be re-activated
_PROFILE_CHANGES = {
    ActionKind.CREATE_CONNECTION,
    ActionKind.BIND_INTERFACE,
    ActionKind.SET_IP_METHOD,
    ActionKind.SET_AUTOCONNECT,
    ActionKind.SET_METRIC,
}

# Marker for optional adapters that are absent
_ABSENT = object()


def select_profile(
    adapters: Iterable[AdapterState],
    name: str,
    handle: Optional[str] = None,
) -> Optional[AdapterState]:
    """Find the entry an action targets.

    A UUID handle wins. Otherwise profiles beat bare devices and the active
    profile beats inactive ones; ties keep inventory order.
    """
    adapters = list(adapters)
    if handle:
        return next((a for a in adapters if a.uuid == handle), None)
    matches = [a for a in adapters if a.name == name]
    if not matches:
        return None
    return sorted(matches, key=lambda a: (not a.is_profile, not a.active))[0]


def service_starts(services: Iterable[ServiceState], required: Iterable[str]) -> list[Action]:
    """START_SERVICE actions for every required service that is not running."""
    by_name = {s.name: s for s in services}
    actions = []
    for name in required:
        action = Action(
            kind=ActionKind.START_SERVICE,
            adapter=name,
            reason=f"service is {by_name[name].detail or 'stopped'}" if name in by_name else "service state unknown",
        )
        if not action_satisfied(action, [], by_name):
            actions.append(action)
    return actions


def action_satisfied(
    action: Action,
    adapters: list[AdapterState],
    services: Optional[dict[str, ServiceState]] = None,
) -> bool:
    """Check whether the host snapshot already matches what an action sets.

    RESTART_ADAPTER is never satisfied by state alone.
    """
    kind = action.kind
    params = action.params

    if kind == ActionKind.START_SERVICE:
        state = (services or {}).get(action.adapter)
        return state is not None and state.running

    if kind == ActionKind.SET_MANAGED:
        devices = [a for a in adapters if a.interface == params["interface"]]
        return bool(devices) and all(a.managed for a in devices)

    if kind == ActionKind.CREATE_CONNECTION:
        return any(a.name == action.adapter and a.is_profile for a in adapters)

    if kind == ActionKind.DELETE_CONNECTION:
        return not any(a.uuid == action.handle for a in adapters)

    if kind == ActionKind.DISABLE_SHARING:
        state = select_profile(adapters, action.adapter)
        return state is None or state.sharing == SharingRole.NONE

    if kind == ActionKind.ENABLE_SHARING:
        public = select_profile(adapters, params["public"])
        private = select_profile(adapters, params["private"])
        return (
            public is not None and public.sharing == SharingRole.PUBLIC
            and private is not None and private.sharing == SharingRole.PRIVATE
        )

    if kind == ActionKind.RESTART_ADAPTER:
        return False

    state = select_profile(adapters, action.adapter, action.handle)
    if state is None:
        return False

    if kind == ActionKind.BIND_INTERFACE:
        return state.interface == params["interface"]
    if kind == ActionKind.SET_METRIC:
        return state.route_metric == params["metric"]
    if kind in (ActionKind.SET_IP_METHOD, ActionKind.SET_AUTOCONNECT):
        return not _setting_changes(state, params)

    return False


def _current_settings(state: Optional[AdapterState]) -> dict:
    if state is None:
        return {}
    return {
        "ipv4_method": state.ipv4_method.value if state.ipv4_method else None,
        "ipv6_method": state.ipv6_method.value if state.ipv6_method else None,
        "never_default": state.never_default,
        "autoconnect": state.autoconnect,
        "autoconnect_priority": state.autoconnect_priority,
    }


def _setting_changes(state: Optional[AdapterState], desired: dict) -> dict:
    """Return the subset of desired settings that differ from ``state``."""
    current = _current_settings(state)
    return {
        key: value
        for key, value in desired.items()
        if value is not None and current.get(key) != value
    }


class Planner:
    """Diff host snapshots against intents."""

    def plan(
        self,
        current: list[AdapterState],
        sharing: Optional[SharingIntent] = None,
        priority: Optional[PriorityIntent] = None,
        addressing: Optional[dict[str, AddressingIntent]] = None,
        services: Optional[list[ServiceState]] = None,
        required_services: Iterable[str] = (),
        duplicates: DuplicatePolicy = DuplicatePolicy.WARN,
    ) -> ReconciliationPlan:
        """
        Compute the plan that moves ``current`` to the intents.

        Args:
            current: Adapter snapshot from the inventory reader
            sharing: Which adapter shares to which (Windows ICS)
            priority: Desired route metric per adapter
            addressing: Desired IP configuration per adapter
            services: Snapshot of required services
            required_services: Services that must run before anything else
            duplicates: Policy for several profiles carrying one name

        Returns:
            ReconciliationPlan with no-op actions already removed

        Raises:
            UnresolvedAdapterError: If an intent names an adapter that is
                not in ``current`` and may not be created
        """
        priority = priority or PriorityIntent()
        addressing = addressing or {}
        plan = ReconciliationPlan(sharing=sharing)
        buckets: dict[ActionKind, list[Action]] = defaultdict(list)

        # Resolve everything first so a missing adapter fails before any action exists
        resolved = self._resolve_all(current, sharing, priority, addressing, duplicates, plan, buckets)

        self._plan_services(services or [], required_services, buckets)

        for name, intent in addressing.items():
            self._plan_addressing(current, name, intent, resolved[name], plan, buckets)

        for name, metric in priority.items():
            state = resolved[name]
            if state is _ABSENT:
                continue
            action = Action(
                kind=ActionKind.SET_METRIC,
                adapter=name,
                params={"metric": metric},
                handle=state.uuid if state else None,
                reason=f"route metric {state.route_metric if state else None} -> {metric}",
            )
            if state is None or not action_satisfied(action, [state]):
                buckets[ActionKind.SET_METRIC].append(action)

        if sharing is not None:
            self._plan_sharing(current, sharing, plan, buckets)

        self._plan_restarts(addressing, priority, resolved, buckets)

        for kind in ActionKind:
            plan.actions.extend(buckets.get(kind, []))
        return plan

    def plan_topology(
        self,
        current: list[AdapterState],
        desired: DesiredTopology,
        services: Optional[list[ServiceState]] = None,
    ) -> ReconciliationPlan:
        """Plan from a parsed DesiredTopology."""
        return self.plan(
            current,
            sharing=desired.sharing,
            priority=desired.priority,
            addressing=desired.addressing,
            services=services,
            required_services=desired.required_services,
            duplicates=desired.duplicates,
        )

    # === Resolution ===

    def _resolve_all(
        self,
        current: list[AdapterState],
        sharing: Optional[SharingIntent],
        priority: PriorityIntent,
        addressing: dict[str, AddressingIntent],
        duplicates: DuplicatePolicy,
        plan: ReconciliationPlan,
        buckets: dict[ActionKind, list[Action]],
    ) -> dict:
        names: list[str] = []
        if sharing:
            names.extend([sharing.public, sharing.private])
        names.extend(priority.metrics)
        names.extend(addressing)

        shared = {sharing.public, sharing.private} if sharing else set()
        resolved = {}
        for name in dict.fromkeys(names):
            intent = addressing.get(name)
            candidates = [a for a in current if a.name == name]
            profiles = [a for a in candidates if a.is_profile]

            if intent and intent.create and not profiles:
                resolved[name] = None  # Created by the plan
                continue

            if not candidates:
                if intent and intent.optional and name not in shared:
                    plan.warnings.append(f"Adapter '{name}' not found; skipping")
                    resolved[name] = _ABSENT
                    continue
                raise UnresolvedAdapterError(name, "not present in inventory")

            chosen = select_profile(candidates, name)
            resolved[name] = chosen

            for extra in profiles:
                if extra is chosen:
                    continue
                if duplicates == DuplicatePolicy.PRUNE:
                    buckets[ActionKind.DELETE_CONNECTION].append(Action(
                        kind=ActionKind.DELETE_CONNECTION,
                        adapter=name,
                        handle=extra.uuid,
                        reason=f"duplicate of {chosen.uuid}",
                    ))
                else:
                    plan.warnings.append(
                        f"Duplicate connection '{name}' ({extra.uuid}) left in place; "
                        f"using {chosen.uuid}"
                    )
        return resolved

    # === Per-concern planning ===

    def _plan_services(
        self,
        services: list[ServiceState],
        required: Iterable[str],
        buckets: dict[ActionKind, list[Action]],
    ) -> None:
        buckets[ActionKind.START_SERVICE].extend(service_starts(services, required))

    def _plan_addressing(
        self,
        current: list[AdapterState],
        name: str,
        intent: AddressingIntent,
        state,
        plan: ReconciliationPlan,
        buckets: dict[ActionKind, list[Action]],
    ) -> None:
        if state is _ABSENT:
            return

        handle = state.uuid if state else None

        if intent.interface:
            devices = [a for a in current if a.interface == intent.interface]
            if not devices:
                plan.warnings.append(
                    f"Interface '{intent.interface}' is not present; "
                    f"a reboot may be needed after enabling the USB gadget"
                )
            else:
                action = Action(
                    kind=ActionKind.SET_MANAGED,
                    adapter=name,
                    params={"interface": intent.interface, "managed": True},
                    reason="device is unmanaged",
                )
                if not action_satisfied(action, current):
                    buckets[ActionKind.SET_MANAGED].append(action)

        if state is None:
            buckets[ActionKind.CREATE_CONNECTION].append(Action(
                kind=ActionKind.CREATE_CONNECTION,
                adapter=name,
                params={"type": intent.create, "interface": intent.interface},
                reason="no connection profile",
            ))
        elif intent.interface and state.is_profile and state.interface != intent.interface:
            buckets[ActionKind.BIND_INTERFACE].append(Action(
                kind=ActionKind.BIND_INTERFACE,
                adapter=name,
                params={"interface": intent.interface},
                handle=handle,
                reason=f"bound to {state.interface}",
            ))

        ip_changes = _setting_changes(state, {
            "ipv4_method": intent.ipv4_method.value if intent.ipv4_method else None,
            "ipv6_method": intent.ipv6_method.value if intent.ipv6_method else None,
            "never_default": intent.never_default,
        })
        if ip_changes:
            buckets[ActionKind.SET_IP_METHOD].append(Action(
                kind=ActionKind.SET_IP_METHOD,
                adapter=name,
                params=ip_changes,
                handle=handle,
            ))

        auto_changes = _setting_changes(state, {
            "autoconnect": intent.autoconnect,
            "autoconnect_priority": intent.autoconnect_priority,
        })
        if auto_changes:
            buckets[ActionKind.SET_AUTOCONNECT].append(Action(
                kind=ActionKind.SET_AUTOCONNECT,
                adapter=name,
                params=auto_changes,
                handle=handle,
            ))

        if intent.expect_subnet:
            plan.verifications.append(VerificationTarget(adapter=name, subnet=intent.expect_subnet))

    def _plan_sharing(
        self,
        current: list[AdapterState],
        sharing: SharingIntent,
        plan: ReconciliationPlan,
        buckets: dict[ActionKind, list[Action]],
    ) -> None:
        wanted = {sharing.public: SharingRole.PUBLIC, sharing.private: SharingRole.PRIVATE}

        disabled = []
        for adapter in current:
            if adapter.sharing == SharingRole.NONE:
                continue
            if wanted.get(adapter.name) == adapter.sharing:
                continue
            if adapter.name in disabled:
                continue
            disabled.append(adapter.name)
            buckets[ActionKind.DISABLE_SHARING].append(Action(
                kind=ActionKind.DISABLE_SHARING,
                adapter=adapter.name,
                reason=f"currently shared as {adapter.sharing.value}",
            ))

        enable = Action(
            kind=ActionKind.ENABLE_SHARING,
            adapter=sharing.public,
            params={"public": sharing.public, "private": sharing.private},
        )
        if not action_satisfied(enable, current):
            buckets[ActionKind.ENABLE_SHARING].append(enable)

        if sharing.expected_subnet:
            plan.verifications.append(VerificationTarget(
                adapter=sharing.private,
                subnet=sharing.expected_subnet,
                sharing=True,
            ))

    def _plan_restarts(
        self,
        addressing: dict[str, AddressingIntent],
        priority: PriorityIntent,
        resolved: dict,
        buckets: dict[ActionKind, list[Action]],
    ) -> None:
        changed = []
        for kind in _PROFILE_CHANGES:
            for action in buckets.get(kind, []):
                if action.adapter not in changed:
                    changed.append(action.adapter)

        for name in dict.fromkeys([*addressing, *priority.metrics]):
            if name not in changed:
                continue
            state = resolved.get(name)
            # Only NetworkManager profiles need re-activation to pick up settings
            if state is not None and (state is _ABSENT or not state.is_profile):
                continue
            intent = addressing.get(name)
            interface = (intent.interface if intent else None) or (state.interface if state else None)
            buckets[ActionKind.RESTART_ADAPTER].append(Action(
                kind=ActionKind.RESTART_ADAPTER,
                adapter=name,
                params={"interface": interface} if interface else {},
                handle=state.uuid if state else None,
                reason="apply changed settings",
            ))


def summarize_plan(plan: ReconciliationPlan) -> str:
    """
    Create a human-readable summary of a plan.

    Useful for dry-run output and logging.
    """
    lines = []

    if plan.no_change:
        lines.append("No changes needed - host already matches desired state")
    else:
        lines.append(f"Changes to apply ({plan.total_changes} total):")
        lines.append("")
        for index, action in enumerate(plan.actions, start=1):
            lines.append(f"  {index:2d}. {action.describe()}")
            if action.reason:
                lines.append(f"      ({action.reason})")

    if plan.verifications:
        lines.append("")
        lines.append("Verification:")
        for target in plan.verifications:
            lines.append(f"  - {target.adapter} address in {target.subnet}")

    if plan.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {w}" for w in plan.warnings)

    return "\n".join(lines)
