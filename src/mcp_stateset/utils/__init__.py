"""Utility modules for logging, auditing, retries and file I/O."""
from .connection import with_retry, call_with_retry, RETRYABLE_EXCEPTIONS
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    perf_logger,
)
from .audit_log import (
    AuditRecord,
    AuditTrail,
    setup_audit_logging,
    get_recent_operations,
)

__all__ = [
    "with_retry",
    "call_with_retry",
    "RETRYABLE_EXCEPTIONS",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
    "AuditRecord",
    "AuditTrail",
    "setup_audit_logging",
    "get_recent_operations",
]
