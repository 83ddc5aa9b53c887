"""Parser for desired topology configuration.

Converts dict/YAML input to strongly-typed DesiredTopology objects.
"""
from typing import Any, Optional

from .schema import (
    AddressingIntent,
    DesiredTopology,
    DuplicatePolicy,
    ICS_SUBNET,
    IPMethod,
    PriorityIntent,
    SharingIntent,
)

HOST_TYPES = ("networkmanager", "windows-ics")

_TRUE = {"yes", "true", "on", "1"}
_FALSE = {"no", "false", "off", "0"}


class ParseError(Exception):
    """Error parsing desired topology configuration."""
    pass


class IntentParser:
    """Parse desired topology from dict/YAML format."""

    def parse(self, config: dict[str, Any]) -> DesiredTopology:
        """
        Parse a configuration dict into a DesiredTopology.

        Args:
            config: Dict with host, sharing, priority, adapters, etc.

        Returns:
            DesiredTopology object

        Raises:
            ParseError: If config is invalid
        """
        if not isinstance(config, dict):
            raise ParseError("Configuration must be a mapping")

        host_type = (config.get("host") or {}).get("type", "networkmanager")
        if host_type not in HOST_TYPES:
            raise ParseError(
                f"Invalid host type: {host_type}. Must be one of {', '.join(HOST_TYPES)}"
            )

        duplicates_str = config.get("duplicates", DuplicatePolicy.WARN.value)
        try:
            duplicates = DuplicatePolicy(duplicates_str)
        except ValueError:
            raise ParseError(
                f"Invalid duplicates policy: {duplicates_str}. Must be 'warn' or 'prune'"
            )

        services = config.get("services") or []
        if isinstance(services, str):
            services = [services]

        return DesiredTopology(
            host_type=host_type,
            sharing=self._parse_sharing(config.get("sharing")),
            priority=self._parse_priority(config.get("priority") or {}),
            addressing=self._parse_adapters(config.get("adapters") or {}),
            required_services=[str(s) for s in services],
            duplicates=duplicates,
        )

    def _parse_sharing(self, config: Optional[dict[str, Any]]) -> Optional[SharingIntent]:
        """Parse the sharing section."""
        if not config:
            return None

        public = config.get("public")
        private = config.get("private")
        if not public or not private:
            raise ParseError("Sharing requires both 'public' and 'private' adapters")

        return SharingIntent(
            public=str(public),
            private=str(private),
            expected_subnet=config.get("expected_subnet", ICS_SUBNET),
        )

    def _parse_priority(self, config: dict[str, Any]) -> PriorityIntent:
        """Parse adapter -> route metric mapping."""
        metrics = {}
        for adapter, metric in config.items():
            try:
                metrics[str(adapter)] = int(metric)
            except (ValueError, TypeError):
                raise ParseError(f"Invalid route metric for {adapter}: {metric}")
        return PriorityIntent(metrics=metrics)

    def _parse_adapters(
        self,
        adapters_config: dict[str, Any]
    ) -> dict[str, AddressingIntent]:
        """Parse per-adapter addressing configuration."""
        adapters = {}
        for name, adapter_config in adapters_config.items():
            adapters[str(name)] = self._parse_single_adapter(str(name), adapter_config)
        return adapters

    def _parse_single_adapter(
        self,
        name: str,
        config: Optional[dict[str, Any]]
    ) -> AddressingIntent:
        """Parse a single adapter configuration."""
        if config is None:
            config = {}

        priority = config.get("autoconnect_priority")
        if priority is not None:
            try:
                priority = int(priority)
            except (ValueError, TypeError):
                raise ParseError(f"Invalid autoconnect_priority for {name}: {priority}")

        return AddressingIntent(
            name=name,
            interface=config.get("interface"),
            create=config.get("create"),
            ipv4_method=self._parse_method(name, "ipv4_method", config.get("ipv4_method")),
            ipv6_method=self._parse_method(name, "ipv6_method", config.get("ipv6_method")),
            never_default=self._parse_bool(name, "never_default", config.get("never_default")),
            autoconnect=self._parse_bool(name, "autoconnect", config.get("autoconnect")),
            autoconnect_priority=priority,
            optional=bool(self._parse_bool(name, "optional", config.get("optional", False))),
            expect_subnet=config.get("expect_subnet"),
        )

    def _parse_method(self, name: str, key: str, value: Any) -> Optional[IPMethod]:
        if value is None:
            return None
        # "dhcp" is what people write; NetworkManager calls it "auto"
        if str(value).lower() == "dhcp":
            return IPMethod.AUTO
        try:
            return IPMethod(str(value).lower())
        except ValueError:
            valid = ", ".join(m.value for m in IPMethod)
            raise ParseError(f"Invalid {key} for {name}: {value}. Valid: {valid}")

    def _parse_bool(self, name: str, key: str, value: Any) -> Optional[bool]:
        if value is None or isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ParseError(f"Invalid {key} for {name}: {value}. Must be yes or no")
