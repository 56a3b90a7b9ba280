"""Audit logging for state promotions.

Provides change tracking with:
- Timestamped entries for every preview, apply and deployment transition
- Import counts and failures captured per entry
- Structured JSON log format, one record per line
- Separate audit log file
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

# Create dedicated audit logger
audit_logger = logging.getLogger("statecraft.audit")

AUDIT_FILE = "audit.log"


def default_audit_dir() -> Path:
    return Path(os.environ.get("STATECRAFT_AUDIT_DIR", "~/.statecraft")).expanduser()


def setup_audit_logging(log_dir: Optional[Path] = None) -> Path:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to ~/.statecraft/

    Returns:
        Path of the audit log file
    """
    log_dir = Path(log_dir) if log_dir else default_audit_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    audit_file = log_dir / AUDIT_FILE

    audit_logger.setLevel(logging.INFO)

    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)

    # Don't propagate to root logger
    audit_logger.propagate = False
    return audit_file


@dataclass
class AuditRecord:
    """Record of one promotion step."""
    timestamp: str
    operation: str  # preview, apply, deployment.schedule, deployment.approve, ...
    target: str  # deployment id or source path
    user: str
    dry_run: bool
    success: bool
    parameters: dict = field(default_factory=dict)
    result: Optional[dict] = None
    error: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=None, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "AuditRecord":
        data = json.loads(json_str)
        return cls(**data)


class AuditTrail:
    """Write audit records for one actor."""

    def __init__(self, user: Optional[str] = None):
        self.user = user or os.environ.get("USER", "system")

    def record(
        self,
        operation: str,
        target: str,
        success: bool,
        parameters: Optional[dict] = None,
        dry_run: bool = False,
        result: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> AuditRecord:
        """Log one step.

        Args:
            operation: Step performed (e.g., "apply")
            target: Deployment id or source the step acted on
            success: Whether the step succeeded
            parameters: Flags the step ran with
            dry_run: Whether live state was left untouched
            result: Import result or record snapshot
            error: Error message if failed

        Returns:
            The AuditRecord that was logged
        """
        record = AuditRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            operation=operation,
            target=target,
            user=self.user,
            dry_run=dry_run,
            success=success,
            parameters=parameters or {},
            result=result,
            error=error[:1000] if error else None,  # Truncate long errors
        )

        audit_logger.info(record.to_json())
        return record


def get_recent_operations(
    log_file: Optional[Path] = None,
    target: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 100,
) -> list[AuditRecord]:
    """Read recent audit records.

    Args:
        log_file: Path to audit log. Defaults to ~/.statecraft/audit.log
        target: Filter by deployment id or source
        operation: Filter by operation
        limit: Maximum number of records to return

    Returns:
        List of AuditRecords, most recent first
    """
    log_file = Path(log_file) if log_file else default_audit_dir() / AUDIT_FILE
    if not log_file.exists():
        return []

    records = []
    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = AuditRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                continue  # Skip malformed lines

            if target and record.target != target:
                continue
            if operation and record.operation != operation:
                continue
            records.append(record)

    return list(reversed(records[-limit:]))


def summarize_records(records: list[AuditRecord]) -> dict[str, Any]:
    """Counts of audit records by operation and outcome."""
    by_operation: dict[str, int] = {}
    failures = 0
    for record in records:
        by_operation[record.operation] = by_operation.get(record.operation, 0) + 1
        if not record.success:
            failures += 1
    return {"total": len(records), "failures": failures, "byOperation": by_operation}
