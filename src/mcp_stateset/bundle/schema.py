"""Bundle schema: the canonical OrgExport shape and import results."""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ..errors import BundleFormatError

# Fixed collection order; diff rows and summaries always follow it
COLLECTIONS: tuple[str, ...] = (
    "agents",
    "rules",
    "skills",
    "attributes",
    "functions",
    "examples",
    "evals",
    "datasets",
    "agentSettings",
)

COLLECTION_LABELS = {
    "agents": "agents",
    "rules": "rules",
    "skills": "skills",
    "attributes": "attributes",
    "functions": "functions",
    "examples": "examples",
    "evals": "evals",
    "datasets": "datasets",
    "agentSettings": "agent settings",
}

DEFAULT_BUNDLE_VERSION = "1.0.0"
UNKNOWN_ORG = "unknown"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _coerce_collection(name: str, value: Any, source: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise BundleFormatError(
            f"Invalid {name}: expected an array", path=source
        )
    return list(value)


@dataclass(frozen=True)
class OrgExport:
    """A versioned bundle of all nine tracked collections for one org.

    Every collection key is always present as a list. Instances are treated
    as read-only; diffing and import work on the data without mutating it.
    """
    version: str
    org_id: str
    exported_at: str
    collections: dict[str, list[Any]] = field(default_factory=dict)

    def __post_init__(self):
        for name in COLLECTIONS:
            if self.collections.get(name) is None:
                self.collections[name] = []

    def collection(self, name: str) -> list[Any]:
        if name not in COLLECTIONS:
            raise KeyError(f"Unknown collection: {name}")
        return self.collections[name]

    def counts(self) -> dict[str, int]:
        return {name: len(self.collections[name]) for name in COLLECTIONS}

    @property
    def total_entities(self) -> int:
        return sum(self.counts().values())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "exportedAt": self.exported_at,
            "orgId": self.org_id,
        }
        for name in COLLECTIONS:
            data[name] = self.collections[name]
        return data

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def empty(cls, org_id: str = UNKNOWN_ORG, version: str = DEFAULT_BUNDLE_VERSION) -> "OrgExport":
        return cls(version=version, org_id=org_id, exported_at=utc_now_iso())

    @classmethod
    def from_dict(cls, data: Any, source: str = "") -> "OrgExport":
        """Strict parse: `version` and `orgId` are required."""
        if not isinstance(data, dict):
            raise BundleFormatError(
                f"Invalid snapshot format: {source or 'payload'} is not an object",
                path=source,
            )
        version = _non_empty_str(data.get("version"))
        org_id = _non_empty_str(data.get("orgId"))
        if not version or not org_id:
            raise BundleFormatError(
                f"Invalid snapshot format: {source or 'payload'} lacks version/orgId",
                path=source,
            )
        return cls._build(data, version, org_id, source)

    @classmethod
    def coerce(cls, data: Any, source: str = "") -> "OrgExport":
        """Lenient parse used for state-set directories and push sources."""
        if not isinstance(data, dict):
            raise BundleFormatError(
                "Invalid state set payload: not an object", path=source
            )
        version = _non_empty_str(data.get("version")) or DEFAULT_BUNDLE_VERSION
        org_id = _non_empty_str(data.get("orgId")) or UNKNOWN_ORG
        return cls._build(data, version, org_id, source)

    @classmethod
    def _build(cls, data: dict, version: str, org_id: str, source: str) -> "OrgExport":
        exported_at = _non_empty_str(data.get("exportedAt")) or utc_now_iso()
        collections = {}
        for name in COLLECTIONS:
            raw = data.get(name)
            if raw is None and name == "agentSettings":
                raw = data.get("agent_settings")
            collections[name] = _coerce_collection(name, raw, source)
        return cls(
            version=version,
            org_id=org_id,
            exported_at=exported_at,
            collections=collections,
        )


@dataclass
class ImportFailure:
    """A single entity the import could not apply."""
    entity: str
    index: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"entity": self.entity, "index": self.index, "reason": self.reason}


@dataclass
class ImportResult:
    """Outcome of applying (or previewing) a bundle against live state."""
    counts: dict[str, int] = field(default_factory=lambda: {n: 0 for n in COLLECTIONS})
    dataset_entries: int = 0
    skipped: int = 0
    failures: list[ImportFailure] = field(default_factory=list)
    dry_run: bool = False

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def format_counts(self) -> str:
        """One-line `3 agents, 1 rules` summary; `nothing` when empty."""
        parts = []
        for name in COLLECTIONS:
            value = self.counts.get(name, 0)
            if name == "agentSettings" and self.dataset_entries > 0:
                parts.append(f"{self.dataset_entries} dataset entries")
            if value > 0:
                parts.append(f"{value} {COLLECTION_LABELS[name]}")
        return ", ".join(parts) if parts else "nothing"

    def to_dict(self) -> dict[str, Any]:
        return {
            "dryRun": self.dry_run,
            "counts": dict(self.counts),
            "datasetEntries": self.dataset_entries,
            "skipped": self.skipped,
            "failures": [f.to_dict() for f in self.failures],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportResult":
        counts = {n: 0 for n in COLLECTIONS}
        raw_counts = data.get("counts") or {}
        for name in COLLECTIONS:
            value = raw_counts.get(name, data.get(name, 0))
            counts[name] = int(value or 0)
        failures = [
            ImportFailure(
                entity=str(f.get("entity", "unknown")),
                index=int(f.get("index", -1)),
                reason=str(f.get("reason", "")),
            )
            for f in data.get("failures") or []
            if isinstance(f, dict)
        ]
        return cls(
            counts=counts,
            dataset_entries=int(data.get("datasetEntries", 0) or 0),
            skipped=int(data.get("skipped", 0) or 0),
            failures=failures,
            dry_run=bool(data.get("dryRun", False)),
        )
