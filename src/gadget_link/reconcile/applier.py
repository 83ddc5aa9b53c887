"""Applier for reconciliation plans.

The only component allowed to change host network configuration. Runs the
planned actions in order, skips anything the host already satisfies, and
verifies expected addresses afterwards with a single remediation cycle.
"""
import logging
from dataclasses import replace
from typing import Optional

from ..backends.base import HostBackend
from ..utils.audit_log import ChangeTracker
from ..utils.logging_config import timed, timed_section
from .errors import (
    ActionFailed,
    ConnectionResolutionFailed,
    GadgetLinkError,
    ServiceUnavailable,
)
from .inventory import InventoryReader
from .planner import action_satisfied, select_profile
from .schema import (
    Action,
    ActionKind,
    ActionOutcome,
    AdapterState,
    ApplyOptions,
    ApplyResult,
    OutcomeStatus,
    ReconciliationPlan,
    SharingIntent,
    SharingPhase,
    SharingRole,
    VerificationMismatch,
    VerificationTarget,
)

logger = logging.getLogger(__name__)

# Actions after which the adapter snapshot is re-read
_REFRESH_AFTER = {
    ActionKind.CREATE_CONNECTION,
    ActionKind.DELETE_CONNECTION,
    ActionKind.DISABLE_SHARING,
    ActionKind.ENABLE_SHARING,
}


def sharing_phase(adapters: list[AdapterState], sharing: SharingIntent) -> SharingPhase:
    """Where the host stands in the sharing setup for one public/private pair."""
    public = select_profile(adapters, sharing.public)
    private = select_profile(adapters, sharing.private)
    bound = (
        public is not None and public.sharing == SharingRole.PUBLIC
        and private is not None and private.sharing == SharingRole.PRIVATE
    )
    if bound:
        return SharingPhase.BOUND
    if all(a.sharing == SharingRole.NONE for a in adapters):
        return SharingPhase.DISABLED_EVERYWHERE
    return SharingPhase.UNCONFIGURED


def _describe_address(state: Optional[AdapterState]) -> str:
    if state is None or not state.ipv4_address:
        return "no address"
    if state.has_link_local_address:
        return f"link-local {state.address_display}"
    return state.address_display


class Applier:
    """Execute reconciliation plans on a host backend."""

    def __init__(
        self,
        backend: HostBackend,
        inventory: Optional[InventoryReader] = None,
        tracker: Optional[ChangeTracker] = None,
    ):
        """
        Initialize applier.

        Args:
            backend: Host backend that runs the commands
            inventory: Reader used for re-checks (defaults to one on ``backend``)
            tracker: Audit change tracker (defaults to one for the backend host)
        """
        self.backend = backend
        self.inventory = inventory or InventoryReader(backend)
        self.tracker = tracker or ChangeTracker(backend.host)

    @property
    def host(self) -> str:
        return self.backend.host

    @timed("apply_plan")
    def apply(
        self,
        plan: ReconciliationPlan,
        options: Optional[ApplyOptions] = None,
    ) -> ApplyResult:
        """
        Apply a plan to the host.

        Args:
            plan: Plan from the planner
            options: Execution options (dry_run, stop_on_error, verify)

        Returns:
            ApplyResult with per-action outcomes and verification results

        Raises:
            ServiceUnavailable: If a required service cannot be started
            ConnectionResolutionFailed: If a created connection has no handle
        """
        options = options or ApplyOptions()
        result = ApplyResult(dry_run=options.dry_run)
        result.warnings.extend(plan.warnings)

        if options.dry_run:
            return self._dry_run(plan, result, options.audit_context)

        try:
            self._execute_actions(plan, options, result)
            if options.verify and plan.verifications and result.error is None:
                self._verify(plan, result)
        except GadgetLinkError:
            raise
        except Exception as e:
            logger.exception(f"Apply failed: {e}")
            result.error = str(e)

        result.success = result.error is None and not result.failures
        return result

    @timed("start_services")
    def start_services(self, actions: list[Action], context: str = "") -> list[ActionOutcome]:
        """
        Start required services ahead of the adapter inventory read.

        Adapter queries can depend on these services (nmcli needs a running
        NetworkManager), so this runs before anything else is read.

        Raises:
            ServiceUnavailable: If a service does not start
        """
        outcomes = []
        for action in actions:
            logger.info(f"Applying {action.describe()}")
            try:
                with timed_section(action.kind.value, target=action.adapter):
                    output = self.backend.execute(action)
            except ActionFailed as e:
                self._audit(action, None, success=False, error=e.detail, context=context)
                raise ServiceUnavailable(action.adapter, e.detail) from e

            self._audit(action, None, success=True, output=output, context=context)
            outcomes.append(ActionOutcome(action, OutcomeStatus.APPLIED, output))

        if outcomes:
            self.backend.settle()
        return outcomes

    def _execute_actions(
        self,
        plan: ReconciliationPlan,
        options: ApplyOptions,
        result: ApplyResult,
    ) -> None:
        adapters = self.inventory.read()
        service_names = [a.adapter for a in plan.actions if a.kind == ActionKind.START_SERVICE]
        services = {s.name: s for s in self.inventory.read_services(service_names)}

        if plan.sharing:
            result.sharing_phase = sharing_phase(adapters, plan.sharing)

        touched: set[str] = set()
        handles: dict[str, str] = {}

        for action in plan.actions:
            if action.handle is None and action.adapter in handles:
                action = replace(action, handle=handles[action.adapter])

            if self._satisfied(action, adapters, services, touched):
                logger.debug(f"Skipping {action.describe()}: already in target state")
                result.outcomes.append(ActionOutcome(action, OutcomeStatus.SKIPPED, "already in target state"))
                continue

            before = select_profile(adapters, action.adapter, action.handle)
            logger.info(f"Applying {action.describe()}")
            try:
                with timed_section(action.kind.value, target=action.adapter):
                    output = self.backend.execute(action)
            except ActionFailed as e:
                self._audit(action, before, success=False, error=e.detail, context=options.audit_context)
                if action.kind == ActionKind.START_SERVICE:
                    raise ServiceUnavailable(action.adapter, e.detail) from e

                logger.warning(str(e))
                result.failures.append(e)
                result.outcomes.append(ActionOutcome(action, OutcomeStatus.FAILED, e.detail))
                if options.stop_on_error:
                    result.error = str(e)
                    return
                continue

            self._audit(action, before, success=True, output=output, context=options.audit_context)
            touched.add(action.adapter)
            result.outcomes.append(ActionOutcome(action, OutcomeStatus.APPLIED, output))
            result.changes_made.append(action.describe())

            if action.kind in _REFRESH_AFTER:
                adapters = self.inventory.read()
            if action.kind == ActionKind.CREATE_CONNECTION:
                handles[action.adapter] = self._resolve_handle(action, adapters)
            if plan.sharing and action.kind in (ActionKind.DISABLE_SHARING, ActionKind.ENABLE_SHARING):
                result.sharing_phase = sharing_phase(adapters, plan.sharing)

    def _satisfied(
        self,
        action: Action,
        adapters: list[AdapterState],
        services: dict,
        touched: set[str],
    ) -> bool:
        # A restart only makes sense after this run changed the adapter
        if action.kind == ActionKind.RESTART_ADAPTER:
            return action.adapter not in touched
        return action_satisfied(action, adapters, services)

    def _resolve_handle(self, action: Action, adapters: list[AdapterState]) -> str:
        created = select_profile(adapters, action.adapter)
        if created is None or not created.uuid:
            raise ConnectionResolutionFailed(
                action.adapter, "connection was not found after creating it"
            )
        logger.info(f"Created connection {action.adapter} ({created.uuid})")
        return created.uuid

    # === Verification ===

    def _verify(self, plan: ReconciliationPlan, result: ApplyResult) -> None:
        for target in plan.verifications:
            state = self.inventory.find(target.adapter)
            if state is not None and state.in_subnet(target.subnet):
                self._mark_verified(target, result)
                continue

            logger.warning(
                f"{target.adapter} has {_describe_address(state)}, expected {target.subnet}; "
                f"restarting it once"
            )
            remediated = self._remediate(target, state, result)

            self.backend.settle()
            state = self.inventory.find(target.adapter)
            if state is not None and state.in_subnet(target.subnet):
                self._mark_verified(target, result)
                continue

            mismatch = VerificationMismatch(
                adapter=target.adapter,
                expected_subnet=target.subnet,
                observed=state.address_display if state and state.ipv4_address else None,
                remediated=remediated,
                link_local=state is not None and state.has_link_local_address,
            )
            logger.warning(f"Verification mismatch: {mismatch}")
            result.mismatches.append(mismatch)
            result.warnings.append(str(mismatch))

    def _remediate(
        self,
        target: VerificationTarget,
        state: Optional[AdapterState],
        result: ApplyResult,
    ) -> bool:
        """Run the single disable/re-enable cycle for a failed check."""
        interface = state.interface if state else None
        restart = Action(
            kind=ActionKind.RESTART_ADAPTER,
            adapter=target.adapter,
            params={"interface": interface} if interface else {},
            handle=state.uuid if state else None,
            reason=f"no address in {target.subnet}",
        )
        try:
            output = self.backend.execute(restart)
        except ActionFailed as e:
            self._audit(restart, state, success=False, error=e.detail, context="verification")
            result.warnings.append(str(e))
            return False

        self._audit(restart, state, success=True, output=output, context="verification")
        result.remediations.append(f"Restarted {target.adapter} to obtain an address in {target.subnet}")
        return True

    def _mark_verified(self, target: VerificationTarget, result: ApplyResult) -> None:
        logger.info(f"Verified {target.adapter} address in {target.subnet}")
        result.verified.append(target.adapter)
        if target.sharing:
            result.sharing_phase = SharingPhase.VERIFIED

    # === Dry run ===

    def _dry_run(self, plan: ReconciliationPlan, result: ApplyResult, context: str = "") -> ApplyResult:
        """Preview without executing."""
        for action in plan.actions:
            try:
                commands = [" ".join(argv) for argv in self.backend.commands_for(action)]
            except ActionFailed as e:
                result.warnings.append(str(e))
                result.outcomes.append(ActionOutcome(action, OutcomeStatus.FAILED, e.detail))
                continue

            result.outcomes.append(ActionOutcome(action, OutcomeStatus.DRY_RUN, commands=commands))
            result.changes_made.append(f"[PREVIEW] {action.describe()}")
            self._audit(action, None, success=True, dry_run=True, context=context)

        result.success = True
        return result

    def _audit(
        self,
        action: Action,
        before: Optional[AdapterState],
        success: bool,
        output: str = "",
        error: Optional[str] = None,
        dry_run: bool = False,
        context: str = "",
    ) -> None:
        parameters = dict(action.params)
        if action.handle:
            parameters["handle"] = action.handle
        self.tracker.log_change(
            operation=action.kind.value,
            adapter=action.adapter,
            parameters=parameters,
            success=success,
            output=output,
            error=error,
            dry_run=dry_run,
            before_state=before.to_dict() if before else None,
            context=context,
        )
