"""Reconciler - orchestrates the full apply workflow.

Provides a single entry point for:
1. Parsing desired topology
2. Validating it against the host type
3. Starting stopped required services, then reading the host inventory
4. Planning the minimal action list
5. Applying and verifying
"""
import logging
from typing import Any, Optional

from ..backends.base import HostBackend
from ..utils.audit_log import ChangeTracker
from .applier import Applier
from .inventory import InventoryReader
from .parser import IntentParser, ParseError
from .planner import Planner, service_starts, summarize_plan
from .schema import (
    ActionOutcome,
    ApplyOptions,
    ApplyResult,
    DesiredTopology,
    ReconciliationPlan,
    ServiceState,
    ValidationResult,
)
from .validator import IntentValidator

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Bring a host's network configuration to a declared topology.

    Usage:
        with create_backend(config) as backend:
            result = Reconciler(backend).reconcile(topology_dict, dry_run=True)
    """

    def __init__(self, backend: HostBackend, tracker: Optional[ChangeTracker] = None):
        """
        Initialize the reconciler.

        Args:
            backend: Host backend for the machine being configured
            tracker: Audit change tracker (optional)
        """
        self.backend = backend
        self.inventory = InventoryReader(backend)
        self.parser = IntentParser()
        self.planner = Planner()
        self.applier = Applier(backend, self.inventory, tracker)

    def reconcile(
        self,
        config: dict[str, Any],
        dry_run: bool = False,
        stop_on_error: bool = False,
        audit_context: str = "",
    ) -> ApplyResult:
        """
        Apply a desired topology to the host.

        Parse and validation problems are reported in ``result.error``.
        Inventory, resolution and service errors propagate.

        Args:
            config: Desired topology dict
            dry_run: If True, preview changes without applying
            stop_on_error: Abort at the first failed action
            audit_context: Description for the audit log

        Returns:
            ApplyResult with outcomes and verification details
        """
        result = ApplyResult(dry_run=dry_run)

        logger.info("Parsing desired topology")
        try:
            desired = self.parser.parse(config)
        except ParseError as e:
            result.error = f"Parse error: {e}"
            return result

        validation = self.validate(desired)
        if not validation.valid:
            result.error = f"Validation failed: {'; '.join(validation.errors)}"
            return result

        services = self.inventory.read_services(desired.required_services)
        started: list[ActionOutcome] = []
        starts = service_starts(services, desired.required_services)
        if starts and not dry_run:
            started = self.applier.start_services(starts, audit_context)
            services = self.inventory.read_services(desired.required_services)

        plan = self.plan(desired, services)
        plan.warnings[:0] = validation.warnings

        if plan.no_change and not plan.verifications:
            result.success = True
            result.warnings = plan.warnings
            logger.info("No changes needed - host already matches desired state")
            return self._with_started(result, started)

        logger.info(f"{'DRY RUN: ' if dry_run else ''}Applying {plan.total_changes} actions")
        options = ApplyOptions(
            dry_run=dry_run,
            stop_on_error=stop_on_error,
            audit_context=audit_context,
        )
        return self._with_started(self.applier.apply(plan, options), started)

    def validate(self, desired: DesiredTopology) -> ValidationResult:
        """Validate a DesiredTopology against this backend's host type."""
        logger.info(f"Validating topology for {self.backend.type_name} host {self.backend.host}")
        return IntentValidator(self.backend.type_name).validate(desired)

    def plan(
        self,
        desired: DesiredTopology,
        services: Optional[list[ServiceState]] = None,
    ) -> ReconciliationPlan:
        """Read the host and compute the plan for ``desired``.

        Services are read before adapters; pass ``services`` to reuse a
        snapshot already taken.
        """
        if services is None:
            services = self.inventory.read_services(desired.required_services)
        logger.info("Reading host inventory")
        current = self.inventory.read()
        plan = self.planner.plan_topology(current, desired, services)
        logger.info(f"Planned {plan.total_changes} actions")
        return plan

    def preview(self, config: dict[str, Any]) -> str:
        """
        Preview changes without applying.

        Returns human-readable plan summary.
        """
        desired = self.parser.parse(config)
        validation = self.validate(desired)
        if not validation.valid:
            return "Validation failed:\n" + "\n".join(validation.errors)

        plan = self.plan(desired)
        plan.warnings[:0] = validation.warnings
        return summarize_plan(plan)

    @staticmethod
    def _with_started(result: ApplyResult, started: list[ActionOutcome]) -> ApplyResult:
        """Put service starts done ahead of planning at the front of the result."""
        if started:
            result.outcomes[:0] = started
            result.changes_made[:0] = [o.action.describe() for o in started]
        return result
