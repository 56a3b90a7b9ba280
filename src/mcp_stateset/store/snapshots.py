"""Snapshot Store for timestamped on-disk bundles.

Handles:
- Listing snapshot files newest-first
- Resolving human references (path, id, prefix, substring) to one file
- Reading and validating bundles
- Writing new snapshots and naming scratch files
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..bundle.schema import OrgExport
from ..errors import AmbiguousReferenceError, NotFoundError
from ..utils.fileio import read_json_file, write_json_atomic

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_PREFIX = "snapshot"

CURRENT_TEMP_PREFIX = "tmp-current"
PUSH_TEMP_PREFIX = "stateset-push"
SCRATCH_PREFIXES = (CURRENT_TEMP_PREFIX + "-", PUSH_TEMP_PREFIX + "-")


def now_suffix() -> str:
    """Filesystem-safe UTC timestamp, e.g. 2026-01-13T10-00-00-123Z."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"


@dataclass
class SnapshotInfo:
    """A snapshot file with its metadata."""
    id: str
    file: str
    path: Path
    size: int
    modified_at: float  # epoch seconds

    @property
    def modified_iso(self) -> str:
        return datetime.fromtimestamp(self.modified_at, tz=timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot": self.id,
            "file": self.file,
            "path": str(self.path),
            "size": self.size,
            "modified": self.modified_iso,
        }


class SnapshotStore:
    """
    Manages a directory of snapshot bundles.

    Only files whose id starts with the snapshot prefix or contains the
    literal "snapshot" are treated as snapshots; scratch files written to
    the same directory (tmp-current-*, stateset-push-*) stay hidden.
    """

    def __init__(self, snapshots_dir: Path, prefix: str = DEFAULT_SNAPSHOT_PREFIX):
        self.snapshots_dir = Path(snapshots_dir)
        self.prefix = prefix

    def ensure_dir(self) -> Path:
        self.snapshots_dir.mkdir(parents=True, exist_ok=True)
        return self.snapshots_dir

    def _is_snapshot_id(self, snapshot_id: str) -> bool:
        if snapshot_id.startswith(SCRATCH_PREFIXES):
            return False
        return snapshot_id.startswith(self.prefix) or "snapshot" in snapshot_id

    def list(self) -> list[SnapshotInfo]:
        """List snapshots, most recently modified first."""
        if not self.snapshots_dir.is_dir():
            return []

        snapshots = []
        for entry in self.snapshots_dir.iterdir():
            if not entry.is_file() or not entry.name.endswith(".json"):
                continue
            snapshot_id = entry.name[: -len(".json")]
            if not self._is_snapshot_id(snapshot_id):
                continue
            stat = entry.stat()
            snapshots.append(SnapshotInfo(
                id=snapshot_id,
                file=entry.name,
                path=entry.resolve(),
                size=stat.st_size,
                modified_at=stat.st_mtime,
            ))

        return sorted(snapshots, key=lambda s: s.modified_at, reverse=True)

    def resolve(self, reference: Optional[str] = None) -> Path:
        """
        Resolve a reference to exactly one snapshot file.

        Resolution order:
        1. Empty reference -> newest snapshot
        2. Existing file path -> that file
        3. Exact id, then unique id prefix, then unique id substring

        Raises:
            NotFoundError: No candidate matched
            AmbiguousReferenceError: Several snapshots share the prefix
        """
        trimmed = (reference or "").strip()
        snapshots = self.list()

        if not trimmed:
            if not snapshots:
                raise NotFoundError(
                    "No snapshots available. Run `statecraft snapshot create` first.",
                    reference="",
                )
            return snapshots[0].path

        candidate = Path(trimmed).expanduser()
        if candidate.is_file():
            return candidate.resolve()

        normalized = Path(trimmed).name
        if normalized.lower().endswith(".json"):
            normalized = normalized[: -len(".json")]
        normalized = normalized.lower()

        for snap in snapshots:
            if snap.id.lower() == normalized:
                return snap.path

        prefixed = [s for s in snapshots if s.id.lower().startswith(normalized)]
        if len(prefixed) == 1:
            return prefixed[0].path
        if len(prefixed) > 1:
            raise AmbiguousReferenceError(
                f'Snapshot reference "{reference}" is ambiguous.',
                reference=trimmed,
                candidates=[s.id for s in prefixed],
            )

        # Substring matches must be unique too, but several are reported as not found
        contains = [s for s in snapshots if normalized in s.id.lower()]
        if len(contains) == 1:
            return contains[0].path

        raise NotFoundError(f"Snapshot not found: {reference}", reference=trimmed)

    def read(self, path: Path) -> OrgExport:
        """
        Read a bundle file.

        Raises:
            BundleFormatError: Unparseable JSON or missing version/orgId
            OSError: The file cannot be read
        """
        data = read_json_file(Path(path), "snapshot file")
        return OrgExport.from_dict(data, source=str(path))

    def load(self, reference: Optional[str] = None) -> tuple[Path, OrgExport]:
        """Resolve and read in one step."""
        path = self.resolve(reference)
        return path, self.read(path)

    def info(self, path: Path) -> SnapshotInfo:
        path = Path(path).resolve()
        stat = path.stat()
        snapshot_id = path.name[: -len(".json")] if path.name.endswith(".json") else path.name
        return SnapshotInfo(
            id=snapshot_id,
            file=path.name,
            path=path,
            size=stat.st_size,
            modified_at=stat.st_mtime,
        )

    def default_name(self, label: Optional[str] = None) -> str:
        label_part = f"-{label}" if label else ""
        return f"{self.prefix}{label_part}-{now_suffix()}.json"

    def create(
        self,
        bundle: OrgExport,
        label: Optional[str] = None,
        out: Optional[Path] = None,
    ) -> SnapshotInfo:
        """
        Write a bundle as a new snapshot.

        Args:
            bundle: Bundle to persist
            label: Optional label embedded in the file name
            out: Explicit output file or directory (default: snapshot dir)

        Returns:
            SnapshotInfo for the written file
        """
        filename = self.default_name(label)
        if out is None:
            path = self.ensure_dir() / filename
        else:
            out = Path(out).expanduser()
            if out.is_dir() or str(out).endswith(("/", "\\")) or not out.suffix:
                path = out / filename
            else:
                path = out

        write_json_atomic(path, bundle.to_dict())
        logger.info(f"Created snapshot {path.name} ({bundle.total_entities} entities)")
        return self.info(path)

    def temp_path(self, prefix: str) -> Path:
        """Name a scratch file in the snapshot directory."""
        return self.ensure_dir() / f"{prefix}-{now_suffix()}-{secrets.token_hex(3)}.json"
