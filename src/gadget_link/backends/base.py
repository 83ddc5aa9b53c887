"""Base host backend abstraction.

A backend is the narrow capability interface between the reconciler and the
host's native network tooling. Queries return snapshots; ``execute`` runs one
planned action. Everything goes through a CommandRunner, so tests can swap
in a scripted runner or a whole fake backend.
"""
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..reconcile.errors import ActionFailed
from ..reconcile.schema import (
    Action,
    AdapterState,
    RouteEntry,
    ServiceState,
)
from ..utils.connection import CommandRunner, CommandResult

logger = logging.getLogger(__name__)


@dataclass
class BackendConfig:
    """Configuration for a host backend."""
    type: str
    transport: str = "local"  # local, ssh
    hostname: Optional[str] = None
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = None
    password_env: str = "GADGETLINK_SSH_PASSWORD"
    key_filename: Optional[str] = None
    sudo: bool = False
    timeout: int = 30
    settle_seconds: float = 3.0

    def get_password(self) -> str:
        """Get password from config or environment variable."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env, "")


class HostBackend(ABC):
    """Abstract base class for host network tooling."""

    type_name = "base"

    def __init__(self, runner: CommandRunner, settle_seconds: float = 3.0):
        self.runner = runner
        self.settle_seconds = settle_seconds

    @property
    def host(self) -> str:
        return self.runner.host

    # Queries (no side effects)
    @abstractmethod
    def list_adapters(self) -> list[AdapterState]:
        """Enumerate adapters/connections.

        Raises:
            InventoryError: If the query command is missing or output is malformed
        """

    @abstractmethod
    def get_service(self, name: str) -> ServiceState:
        """Query a background service."""

    @abstractmethod
    def list_routes(self) -> list[RouteEntry]:
        """Read the IPv4 routing table."""

    # Action rendering
    @abstractmethod
    def commands_for(self, action: Action) -> list[list[str]]:
        """Render the commands that carry out an action.

        Raises:
            ActionFailed: If the backend does not support the action
        """

    # Mutation
    def execute(self, action: Action) -> str:
        """Run one action on the host.

        Returns:
            Combined command output

        Raises:
            ActionFailed: On the first failing command
        """
        outputs = []
        for argv in self.commands_for(action):
            result = self.run_privileged(argv)
            if not result.success:
                raise ActionFailed(action.kind, self._failure_detail(result), action.adapter)
            if result.output:
                outputs.append(result.output)
        return "\n".join(outputs)

    def run_privileged(self, argv: list[str]) -> CommandResult:
        return self.runner.run(argv, privileged=True)

    def settle(self) -> None:
        """Give the OS network stack time to apply a state change."""
        if self.settle_seconds > 0:
            time.sleep(self.settle_seconds)

    def close(self) -> None:
        self.runner.close()

    def unsupported(self, action: Action) -> ActionFailed:
        return ActionFailed(
            action.kind,
            f"not supported by the {self.type_name} backend",
            action.adapter,
        )

    @staticmethod
    def _failure_detail(result: CommandResult) -> str:
        detail = result.error or result.output or f"exit status {result.returncode}"
        return f"{result.command}: {detail}"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
