"""Schema definitions for the deployment engine.

Defines diff results, deployment records and the legal status transitions.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from ..bundle.schema import ImportResult


# --- Diff Results ---

@dataclass
class DiffRow:
    """Row-level delta for one collection."""
    collection: str
    from_count: int = 0
    to_count: int = 0
    added: int = 0
    removed: int = 0
    changed: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.changed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "from": self.from_count,
            "to": self.to_count,
            "added": self.added,
            "removed": self.removed,
            "changed": self.changed,
        }


@dataclass
class DiffSummary:
    """Diff of two bundles covering every collection in fixed order."""
    from_ref: str
    to_ref: str
    rows: list[DiffRow] = field(default_factory=list)

    def totals(self) -> dict[str, int]:
        return {
            "added": sum(r.added for r in self.rows),
            "removed": sum(r.removed for r in self.rows),
            "changed": sum(r.changed for r in self.rows),
        }

    @property
    def no_change(self) -> bool:
        return not any(r.has_changes for r in self.rows)

    def row(self, collection: str) -> DiffRow:
        for r in self.rows:
            if r.collection == collection:
                return r
        raise KeyError(f"Unknown collection: {collection}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_ref,
            "to": self.to_ref,
            "totals": self.totals(),
            "rows": [r.to_dict() for r in self.rows],
        }


# --- Deployments ---

class DeploymentMode(str, Enum):
    """Direction of a promotion."""
    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class DeploymentStatus(str, Enum):
    """Lifecycle state of a deployment record."""
    SCHEDULED = "scheduled"
    APPROVED = "approved"
    APPLIED = "applied"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    DeploymentStatus.APPLIED,
    DeploymentStatus.FAILED,
    DeploymentStatus.CANCELLED,
})

# approved -> approved re-enters an approval that never reached apply
ALLOWED_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.SCHEDULED: frozenset({
        DeploymentStatus.APPROVED,
        DeploymentStatus.CANCELLED,
    }),
    DeploymentStatus.APPROVED: frozenset({
        DeploymentStatus.APPROVED,
        DeploymentStatus.APPLIED,
        DeploymentStatus.FAILED,
        DeploymentStatus.CANCELLED,
    }),
    DeploymentStatus.APPLIED: frozenset(),
    DeploymentStatus.FAILED: frozenset(),
    DeploymentStatus.CANCELLED: frozenset(),
}


def can_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    """Whether the graph allows moving from `current` to `target`."""
    return target in ALLOWED_TRANSITIONS[current]


def _parse_dt(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _opt_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


@dataclass
class Deployment:
    """A tracked promotion of a bundle into (or rollback of) live state."""
    id: str
    mode: DeploymentMode
    source: str
    status: DeploymentStatus
    created_at: datetime
    updated_at: datetime
    scheduled_for: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    error: Optional[str] = None
    dry_run: Optional[bool] = None
    strict: Optional[bool] = None
    include_secrets: Optional[bool] = None
    yes: Optional[bool] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "mode": self.mode.value,
            "source": self.source,
            "status": self.status.value,
            "scheduledFor": _iso(self.scheduled_for),
            "approvedAt": _iso(self.approved_at),
            "appliedAt": _iso(self.applied_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "error": self.error,
            "dryRun": self.dry_run,
            "strict": self.strict,
            "includeSecrets": self.include_secrets,
            "yes": self.yes,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Deployment"]:
        """Parse a persisted record; returns None for malformed rows."""
        if not isinstance(data, dict):
            return None
        dep_id = data.get("id")
        source = data.get("source")
        if not isinstance(dep_id, str) or not dep_id.strip():
            return None
        if not isinstance(source, str) or not source.strip():
            return None
        try:
            mode = DeploymentMode(data.get("mode"))
        except ValueError:
            return None
        try:
            status = DeploymentStatus(data.get("status"))
        except ValueError:
            status = DeploymentStatus.SCHEDULED

        created_at = _parse_dt(data.get("createdAt")) or datetime.now(timezone.utc)
        updated_at = _parse_dt(data.get("updatedAt")) or created_at
        error = data.get("error")

        return cls(
            id=dep_id.strip(),
            mode=mode,
            source=source.strip(),
            status=status,
            created_at=created_at,
            updated_at=updated_at,
            scheduled_for=_parse_dt(data.get("scheduledFor")),
            approved_at=_parse_dt(data.get("approvedAt")),
            applied_at=_parse_dt(data.get("appliedAt")),
            error=error if isinstance(error, str) and error else None,
            dry_run=_opt_bool(data.get("dryRun")),
            strict=_opt_bool(data.get("strict")),
            include_secrets=_opt_bool(data.get("includeSecrets")),
            yes=_opt_bool(data.get("yes")),
        )


# --- Promotion ---

@dataclass
class PromotionOptions:
    """Flags carried by a deploy/rollback/push request."""
    dry_run: bool = False
    yes: bool = False
    strict: bool = False
    include_secrets: bool = False


@dataclass
class PromotionOutcome:
    """Result of a preview (and optionally apply) cycle."""
    label: str
    source: str
    preview: ImportResult
    result: Optional[ImportResult] = None
    dry_run: bool = False
    needs_confirmation: bool = False
    deployment_id: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "action": self.label.lower(),
            "source": self.source,
            "applied": self.applied,
            "dryRun": self.dry_run,
            "needsConfirmation": self.needs_confirmation,
            "preview": self.preview.to_dict(),
        }
        if self.result is not None:
            data["result"] = self.result.to_dict()
        if self.deployment_id:
            data["deploymentId"] = self.deployment_id
        return data
