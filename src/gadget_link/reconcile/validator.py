"""Pre-flight validation for desired topology.

Catches logical errors before any host command runs.
"""
import ipaddress
from collections import defaultdict
from typing import Optional

from .schema import (
    AddressingIntent,
    DesiredTopology,
    IPMethod,
    ValidationResult,
)

# NetworkManager accepts -1 (use device default) up to 2^32-1
NM_METRIC_RANGE = (0, 4294967295)
# Windows interface metrics
WINDOWS_METRIC_RANGE = (1, 9999)

# Connection types we know how to create with nmcli
CREATABLE_TYPES = {"ethernet"}

# Settings the windows-ics backend can apply
WINDOWS_IPV4_METHODS = {IPMethod.AUTO, IPMethod.MANUAL}
WINDOWS_UNSUPPORTED_SETTINGS = ("ipv6_method", "never_default", "autoconnect", "autoconnect_priority")


class IntentValidator:
    """Validate desired topology for logical errors before execution."""

    def __init__(self, host_type: Optional[str] = None):
        """
        Initialize validator.

        Args:
            host_type: Backend type; defaults to the topology's own host_type
        """
        self.host_type = host_type

    def validate(self, desired: DesiredTopology) -> ValidationResult:
        """
        Validate a desired topology.

        Performs pre-flight checks:
        - Sharing pair sanity and backend support
        - Route metric ranges and ties
        - Addressing methods and creatable connection types
        - Subnet syntax for verification targets

        Returns:
            ValidationResult with valid flag, errors, and warnings
        """
        errors: list[str] = []
        warnings: list[str] = []
        host_type = self.host_type or desired.host_type

        self._validate_sharing(desired, host_type, errors)
        self._validate_priority(desired, host_type, errors, warnings)
        self._validate_addressing(desired, host_type, errors, warnings)

        return ValidationResult(
            valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
        )

    def _validate_sharing(
        self,
        desired: DesiredTopology,
        host_type: str,
        errors: list[str],
    ) -> None:
        sharing = desired.sharing
        if sharing is None:
            return

        if host_type != "windows-ics":
            errors.append(
                f"Connection sharing is only supported on windows-ics hosts, not {host_type}"
            )

        if sharing.public == sharing.private:
            errors.append(
                f"Public and private adapter must differ (both are '{sharing.public}')"
            )

        if sharing.expected_subnet and not self._valid_subnet(sharing.expected_subnet):
            errors.append(f"Invalid expected_subnet: {sharing.expected_subnet}")

    def _validate_priority(
        self,
        desired: DesiredTopology,
        host_type: str,
        errors: list[str],
        warnings: list[str],
    ) -> None:
        low, high = WINDOWS_METRIC_RANGE if host_type == "windows-ics" else NM_METRIC_RANGE
        by_metric: dict[int, list[str]] = defaultdict(list)

        for adapter, metric in desired.priority.items():
            if metric < low or metric > high:
                errors.append(
                    f"Invalid route metric {metric} for {adapter}: must be between {low} and {high}"
                )
                continue
            by_metric[metric].append(adapter)

        for metric, adapters in by_metric.items():
            if len(adapters) > 1:
                warnings.append(
                    f"Adapters {', '.join(adapters)} share metric {metric}; "
                    f"route preference between them is undefined"
                )

    def _validate_addressing(
        self,
        desired: DesiredTopology,
        host_type: str,
        errors: list[str],
        warnings: list[str],
    ) -> None:
        for name, intent in desired.addressing.items():
            if intent.create:
                if host_type == "windows-ics":
                    errors.append(f"Cannot create adapter '{name}' on a Windows host")
                elif intent.create not in CREATABLE_TYPES:
                    errors.append(
                        f"Cannot create connection '{name}' of type '{intent.create}'. "
                        f"Valid: {', '.join(sorted(CREATABLE_TYPES))}"
                    )
                if intent.create == "ethernet" and not intent.interface:
                    errors.append(f"Ethernet connection '{name}' needs an interface to bind")

            if intent.ipv4_method == IPMethod.IGNORE:
                errors.append(f"ipv4_method 'ignore' is not valid for {name}; use 'disabled'")

            if intent.ipv4_method == IPMethod.MANUAL:
                warnings.append(
                    f"{name}: manual IPv4 keeps whatever addresses the profile already has"
                )

            if host_type == "windows-ics":
                self._validate_windows_addressing(name, intent, errors)

            if intent.expect_subnet and not self._valid_subnet(intent.expect_subnet):
                errors.append(f"Invalid expect_subnet for {name}: {intent.expect_subnet}")

            if intent.optional and intent.create:
                warnings.append(
                    f"{name} is both optional and creatable; it will be created when missing"
                )

    def _validate_windows_addressing(
        self,
        name: str,
        intent: AddressingIntent,
        errors: list[str],
    ) -> None:
        # Windows adapters report none of these
        unsupported = [
            key for key in WINDOWS_UNSUPPORTED_SETTINGS
            if getattr(intent, key) is not None
        ]
        if unsupported:
            errors.append(
                f"{name}: {', '.join(unsupported)} cannot be set on Windows; "
                f"only ipv4_method is supported"
            )
        if intent.ipv4_method and intent.ipv4_method not in WINDOWS_IPV4_METHODS:
            errors.append(
                f"{name}: ipv4_method '{intent.ipv4_method.value}' is not supported on Windows. "
                f"Valid: {', '.join(sorted(m.value for m in WINDOWS_IPV4_METHODS))}"
            )

    def _valid_subnet(self, subnet: str) -> bool:
        try:
            ipaddress.ip_network(subnet, strict=False)
        except ValueError:
            return False
        return True
