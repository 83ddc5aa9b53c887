"""Command transport for host tooling with retry logic.

Backends never call ``subprocess`` or paramiko directly. They hand an argv
list to a ``CommandRunner``, which runs it either on this machine or on the
Pi over SSH and returns a ``CommandResult``.
"""
import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from functools import wraps
from typing import Any, Callable, Optional, Sequence, TypeVar

import paramiko
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exit status used when the executable itself is missing (same as a shell)
COMMAND_NOT_FOUND = 127

# Transport failures worth another attempt
RETRYABLE_EXCEPTIONS = (
    ConnectionRefusedError,
    ConnectionResetError,
    TimeoutError,
    EOFError,
    paramiko.SSHException,
)


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> Callable:
    """Decorator factory for retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including the first)
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        exceptions: Tuple of exception types to retry on
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return func(*args, **kwargs)

        return wrapper

    return decorator


class CommandResult:
    """Result of a command run on a host."""

    def __init__(
        self,
        success: bool,
        output: str = "",
        error: str = "",
        host: str = "",
        command: str = "",
        returncode: int = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.host = host
        self.command = command
        self.returncode = returncode

    @property
    def not_found(self) -> bool:
        """True when the executable does not exist on the host."""
        return self.returncode == COMMAND_NOT_FOUND

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "host": self.host,
            "command": self.command,
            "returncode": self.returncode,
        }

    def __repr__(self) -> str:
        status = "OK" if self.success else "FAILED"
        return f"CommandResult({status}, host={self.host}, rc={self.returncode})"


class CommandRunner(ABC):
    """Runs argv lists on a host."""

    def __init__(self, sudo: bool = False, timeout: int = 30):
        self.sudo = sudo
        self.timeout = timeout

    @property
    @abstractmethod
    def host(self) -> str:
        """Host label used in logs and results."""

    @abstractmethod
    def run(self, argv: Sequence[str], privileged: bool = False) -> CommandResult:
        """Run a command and capture its output.

        Args:
            argv: Command and arguments
            privileged: Prefix with sudo when the runner is configured for it
        """

    def _full_argv(self, argv: Sequence[str], privileged: bool) -> list[str]:
        if privileged and self.sudo:
            return ["sudo", "-n", *argv]
        return list(argv)

    def close(self) -> None:
        """Release transport resources."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class LocalRunner(CommandRunner):
    """Run commands on this machine with subprocess."""

    @property
    def host(self) -> str:
        return "localhost"

    @with_retry(max_attempts=2, min_wait=1, max_wait=2, exceptions=(TimeoutError,))
    def run(self, argv: Sequence[str], privileged: bool = False) -> CommandResult:
        full = self._full_argv(argv, privileged)
        command = shlex.join(full)
        logger.debug(f"Running: {command}")
        try:
            proc = subprocess.run(
                full,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError:
            return CommandResult(
                success=False,
                error=f"command not found: {full[0]}",
                host=self.host,
                command=command,
                returncode=COMMAND_NOT_FOUND,
            )
        except subprocess.TimeoutExpired as e:
            raise TimeoutError(f"'{command}' timed out after {self.timeout}s") from e

        return CommandResult(
            success=proc.returncode == 0,
            output=proc.stdout.strip(),
            error=proc.stderr.strip(),
            host=self.host,
            command=command,
            returncode=proc.returncode,
        )


class SSHRunner(CommandRunner):
    """Run commands on a remote host (the Pi) over SSH."""

    def __init__(
        self,
        hostname: str,
        username: str,
        port: int = 22,
        password: Optional[str] = None,
        key_filename: Optional[str] = None,
        sudo: bool = False,
        timeout: int = 30,
    ):
        super().__init__(sudo=sudo, timeout=timeout)
        self.hostname = hostname
        self.username = username
        self.port = port
        self.password = password
        self.key_filename = key_filename
        self._ssh: Optional[paramiko.SSHClient] = None

    @property
    def host(self) -> str:
        return self.hostname

    @with_retry(max_attempts=3, min_wait=1, max_wait=10)
    def connect(self) -> paramiko.SSHClient:
        """Open the SSH session if it is not open yet."""
        if self._ssh is not None:
            return self._ssh

        logger.info(f"Connecting to {self.username}@{self.hostname}:{self.port}")
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(
            hostname=self.hostname,
            port=self.port,
            username=self.username,
            password=self.password or None,
            key_filename=self.key_filename,
            timeout=self.timeout,
            allow_agent=self.key_filename is None,
            look_for_keys=self.key_filename is None and not self.password,
        )
        self._ssh = ssh
        return ssh

    def run(self, argv: Sequence[str], privileged: bool = False) -> CommandResult:
        full = self._full_argv(argv, privileged)
        command = shlex.join(full)
        logger.debug(f"Running on {self.hostname}: {command}")

        try:
            _, stdout, stderr = self._exec(command)
            output = stdout.read().decode("utf-8", errors="replace")
            error = stderr.read().decode("utf-8", errors="replace")
            returncode = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, EOFError, OSError) as e:
            # Drop the session so the next call reconnects
            logger.warning(f"SSH session to {self.hostname} failed during '{command}': {e}")
            self.close()
            raise

        return CommandResult(
            success=returncode == 0,
            output=output.strip(),
            error=error.strip(),
            host=self.host,
            command=command,
            returncode=returncode,
        )

    def _exec(self, command: str):
        try:
            return self.connect().exec_command(command, timeout=self.timeout)
        except paramiko.SSHException as e:
            # No channel was opened, so the command never started
            logger.warning(f"Reopening SSH session to {self.hostname}: {e}")
            self.close()
            return self.connect().exec_command(command, timeout=self.timeout)

    def close(self) -> None:
        if self._ssh:
            self._ssh.close()
            self._ssh = None
            logger.info(f"Disconnected from {self.hostname}")
