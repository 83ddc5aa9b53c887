"""Utility modules for command transport, logging and auditing."""
from .connection import (
    CommandResult,
    CommandRunner,
    LocalRunner,
    SSHRunner,
    with_retry,
)
from .logging_config import setup_logging, timed, timed_section, perf_logger
from .audit_log import ChangeTracker, setup_audit_logging, get_recent_changes

__all__ = [
    "CommandResult",
    "CommandRunner",
    "LocalRunner",
    "SSHRunner",
    "with_retry",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
    "ChangeTracker",
    "setup_audit_logging",
    "get_recent_changes",
]
