"""Audit logging for host network changes.

Every action the applier runs against the host (or previews in dry-run) is
recorded as one JSON line, with the adapter state observed before the change.
"""
import json
import logging
import os
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

audit_logger = logging.getLogger("gadgetlink.audit")

DEFAULT_AUDIT_DIR = "~/.gadgetlink"


def setup_audit_logging(log_dir: Optional[str] = None) -> Path:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to ~/.gadgetlink/

    Returns:
        Path of the audit log file
    """
    log_dir = os.path.expanduser(log_dir or DEFAULT_AUDIT_DIR)
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    audit_file = Path(log_dir) / "audit.log"

    audit_logger.setLevel(logging.INFO)
    audit_logger.handlers.clear()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)

    # Keep JSON lines out of the console
    audit_logger.propagate = False
    return audit_file


@dataclass
class ChangeRecord:
    """Record of one host change."""
    timestamp: str
    host: str
    operation: str  # set_metric, enable_sharing, ...
    adapter: str
    dry_run: bool
    success: bool
    parameters: dict
    before_state: Optional[dict] = None
    output: str = ""
    error: Optional[str] = None
    context: str = ""  # cli, verification, ...

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=None)

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeRecord":
        data = json.loads(json_str)
        return cls(**data)


class ChangeTracker:
    """Track and log host changes."""

    def __init__(self, host: str):
        self.host = host
        self.records: list[ChangeRecord] = []

    def log_change(
        self,
        operation: str,
        adapter: str,
        parameters: dict,
        success: bool,
        output: str = "",
        error: Optional[str] = None,
        dry_run: bool = False,
        before_state: Optional[dict] = None,
        context: str = "",
    ) -> ChangeRecord:
        """Log a host change.

        Returns:
            The ChangeRecord that was logged
        """
        record = ChangeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            host=self.host,
            operation=operation,
            adapter=adapter,
            dry_run=dry_run,
            success=success,
            parameters=parameters,
            before_state=before_state,
            output=output[:1000] if output else "",  # Truncate long output
            error=error,
            context=context,
        )
        self.records.append(record)
        audit_logger.info(record.to_json())
        return record


def get_recent_changes(
    log_file: Optional[str] = None,
    adapter: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 100,
) -> list[ChangeRecord]:
    """Read recent changes from the audit log, most recent first."""
    if log_file is None:
        log_file = os.path.join(os.path.expanduser(DEFAULT_AUDIT_DIR), "audit.log")

    if not os.path.exists(log_file):
        return []

    records = []
    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = ChangeRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                continue  # Skip malformed lines

            if adapter and record.adapter != adapter:
                continue
            if operation and record.operation != operation:
                continue
            records.append(record)

    return list(reversed(records[-limit:]))
