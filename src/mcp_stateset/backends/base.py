"""Base abstraction for the live-state backends.

A backend is the pair of operations the engine depends on:

- export_state: serialize live state into an OrgExport
- import_state: apply an OrgExport to live state, or preview it with dry_run
"""
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..bundle.schema import OrgExport, ImportResult

logger = logging.getLogger(__name__)

SENSITIVE_KEY_PATTERN = re.compile(
    r"(secret|token|api[-_]?key|password|auth|credential|bearer)", re.IGNORECASE
)
REDACTED = "[REDACTED]"


def redact_secrets(value: Any) -> Any:
    """Deep copy of `value` with non-empty string secrets replaced."""
    if isinstance(value, list):
        return [redact_secrets(item) for item in value]
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if SENSITIVE_KEY_PATTERN.search(str(key)) and isinstance(item, str) and item:
                result[key] = REDACTED
            else:
                result[key] = redact_secrets(item)
        return result
    return value


def redact_bundle(bundle: OrgExport) -> OrgExport:
    return OrgExport(
        version=bundle.version,
        org_id=bundle.org_id,
        exported_at=bundle.exported_at,
        collections={name: redact_secrets(rows) for name, rows in bundle.collections.items()},
    )


class StateBackend(ABC):
    """Abstract base class for live-state backends."""

    type_name = "base"

    def __init__(self, org_id: Optional[str] = None):
        self.org_id = org_id
        self._connected = False

    @property
    def name(self) -> str:
        return f"{self.type_name}:{self.org_id or 'default'}"

    @property
    def is_connected(self) -> bool:
        return self._connected

    # Connection management
    async def connect(self) -> bool:
        """Open whatever the backend needs. No-op by default."""
        self._connected = True
        return True

    async def disconnect(self) -> None:
        """Release backend resources. No-op by default."""
        self._connected = False

    # State transfer
    @abstractmethod
    async def export_state(self, include_secrets: bool = False) -> OrgExport:
        """Serialize live state. Secrets are redacted unless requested."""
        pass

    @abstractmethod
    async def import_state(
        self,
        bundle: OrgExport,
        dry_run: bool = False,
        strict: bool = False,
    ) -> ImportResult:
        """Apply `bundle` to live state.

        Args:
            bundle: State to apply
            dry_run: Report what would change without changing anything
            strict: Ask the backend to refuse a partial apply

        Returns:
            Per-collection counts, skipped entities and per-entity failures
        """
        pass

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
        return False
