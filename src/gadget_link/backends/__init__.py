"""Host backends for the native network tooling of each side of the link."""
from .base import HostBackend, BackendConfig
from .networkmanager import NetworkManagerBackend
from .windows_ics import WindowsICSBackend
from ..utils.connection import CommandRunner, LocalRunner, SSHRunner

__all__ = [
    "HostBackend",
    "BackendConfig",
    "NetworkManagerBackend",
    "WindowsICSBackend",
    "create_backend",
    "create_runner",
]

# Backend type registry
BACKEND_TYPES = {
    "networkmanager": NetworkManagerBackend,
    "windows-ics": WindowsICSBackend,
}


def create_runner(config: BackendConfig) -> CommandRunner:
    """Build the command transport described by a backend config."""
    if config.transport == "local":
        return LocalRunner(sudo=config.sudo, timeout=config.timeout)
    if config.transport == "ssh":
        if not config.hostname or not config.username:
            raise ValueError("SSH transport needs hostname and username")
        return SSHRunner(
            hostname=config.hostname,
            username=config.username,
            port=config.port,
            password=config.get_password(),
            key_filename=config.key_filename,
            sudo=config.sudo,
            timeout=config.timeout,
        )
    raise ValueError(f"Unknown transport: {config.transport}")


def create_backend(config: BackendConfig) -> HostBackend:
    """Factory function to create backend instances."""
    backend_type = config.type.lower()
    if backend_type not in BACKEND_TYPES:
        raise ValueError(f"Unknown backend type: {backend_type}")

    backend_class = BACKEND_TYPES[backend_type]
    return backend_class(create_runner(config), settle_seconds=config.settle_seconds)
