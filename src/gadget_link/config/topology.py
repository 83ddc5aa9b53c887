"""Topology file discovery and loading from YAML configuration."""
import copy
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from ..backends.base import BackendConfig
from .presets import get_preset

logger = logging.getLogger(__name__)

DEFAULT_EGRESS_URL = "https://ifconfig.me/ip"
DEFAULT_EGRESS_TIMEOUT = 5.0

# Sections handed to the reconciler as the desired topology
_DESIRED_KEYS = ("host", "services", "sharing", "priority", "adapters", "duplicates")


class TopologyConfig:
    """Desired topology plus host and run settings loaded from YAML.

    ```yaml
    host:
      type: networkmanager
      transport: ssh
      hostname: pi.local
      username: pi
      sudo: true
    priority:
      usb0: 100
      preconfigured: 600
    defaults:
      autoconnect: yes
    adapters:
      usb0:
        interface: usb0
        create: ethernet
        ipv4_method: auto
    ```
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        preset: Optional[str] = None,
    ):
        self._config: dict[str, Any] = {}
        if preset:
            self.config_path = None
            self._config = get_preset(preset)
        else:
            self.config_path = config_path or self._find_config()
            self._load_config()
        self._apply_defaults()

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "TopologyConfig":
        """Build from an in-memory mapping (presets, tests)."""
        instance = cls.__new__(cls)
        instance.config_path = None
        instance._config = copy.deepcopy(config)
        instance._apply_defaults()
        return instance

    def _find_config(self) -> str:
        """Find the gadgetlink.yaml config file."""
        search_paths = [
            Path.cwd() / "configs" / "gadgetlink.yaml",
            Path.cwd() / "gadgetlink.yaml",
            Path.home() / ".config" / "gadgetlink" / "gadgetlink.yaml",
            Path("/etc/gadgetlink/gadgetlink.yaml"),
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        raise FileNotFoundError(
            "Could not find gadgetlink.yaml. Create one in ./configs/gadgetlink.yaml "
            "or use --preset"
        )

    def _load_config(self) -> None:
        """Load the YAML configuration."""
        with open(self.config_path) as f:
            self._config = yaml.safe_load(f) or {}

        if not isinstance(self._config, dict):
            raise ValueError(f"{self.config_path}: top level must be a mapping")
        logger.debug(f"Loaded topology from {self.config_path}")

    def _apply_defaults(self) -> None:
        defaults = self._config.get("defaults") or {}
        adapters = self._config.get("adapters") or {}
        for name, adapter_config in adapters.items():
            if adapter_config is None:
                adapter_config = adapters[name] = {}
            for key, value in defaults.items():
                if key not in adapter_config:
                    adapter_config[key] = value

    @property
    def raw(self) -> dict[str, Any]:
        return self._config

    @property
    def host_type(self) -> str:
        return (self._config.get("host") or {}).get("type", "networkmanager")

    def desired_dict(self) -> dict[str, Any]:
        """The part of the config the reconciler parses."""
        return {k: self._config[k] for k in _DESIRED_KEYS if k in self._config}

    def backend_config(self) -> BackendConfig:
        """Build the BackendConfig from the ``host`` and ``apply`` sections."""
        host = dict(self._config.get("host") or {})
        apply = self.apply_settings()
        return BackendConfig(
            type=host.get("type", "networkmanager"),
            transport=host.get("transport", "local"),
            hostname=host.get("hostname"),
            port=int(host.get("port", 22)),
            username=host.get("username"),
            password=host.get("password"),
            password_env=host.get("password_env", "GADGETLINK_SSH_PASSWORD"),
            key_filename=host.get("key_filename"),
            sudo=bool(host.get("sudo", False)),
            timeout=int(host.get("timeout", 30)),
            settle_seconds=float(apply.get("settle_seconds", 3.0)),
        )

    @property
    def is_remote(self) -> bool:
        return (self._config.get("host") or {}).get("transport", "local") != "local"

    def apply_settings(self) -> dict[str, Any]:
        return dict(self._config.get("apply") or {})

    def gadget_settings(self) -> Optional[dict[str, Any]]:
        """Return the gadget section, or None when boot config is not wanted."""
        gadget = self._config.get("gadget")
        if not gadget or not gadget.get("enabled", True):
            return None
        return dict(gadget)

    def egress_settings(self) -> tuple[str, float]:
        egress = self._config.get("egress") or {}
        return (
            egress.get("url", DEFAULT_EGRESS_URL),
            float(egress.get("timeout", DEFAULT_EGRESS_TIMEOUT)),
        )
