"""Deployment Store: the single owner of the deployment log.

The log is a repository with one load/persist seam. `JsonDeploymentStore`
keeps it in a JSON file replaced atomically on every mutation;
`InMemoryDeploymentStore` keeps it in a list for tests and embedding.

The log is single-writer: two processes mutating it at once (a running
`watch` plus a manual `deploy --approve`) can lose an update.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..engine.schema import (
    Deployment,
    DeploymentMode,
    DeploymentStatus,
    can_transition,
)
from ..errors import (
    AmbiguousReferenceError,
    BundleFormatError,
    NotFoundError,
    StateTransitionError,
    StoreWriteError,
)
from ..utils.fileio import read_json_file, write_json_atomic

logger = logging.getLogger(__name__)

LOG_VERSION = 1
MAX_DEPLOYMENTS = 200

# Fields `update()` may patch; a None value clears an optional field
PATCHABLE_FIELDS = frozenset({
    "status",
    "source",
    "scheduled_for",
    "approved_at",
    "applied_at",
    "error",
    "dry_run",
    "strict",
    "include_secrets",
    "yes",
})


def generate_deployment_id(mode: DeploymentMode) -> str:
    return f"{mode.value}-{uuid.uuid4().hex[:8]}"


def _sort_by_updated(deployments: list[Deployment]) -> list[Deployment]:
    return sorted(deployments, key=lambda d: d.updated_at, reverse=True)


class DeploymentStore(ABC):
    """
    Repository of Deployment records.

    Subclasses provide `_load` and `_persist`; every mutation is a
    load-modify-persist cycle and stamps `updated_at`.
    """

    @abstractmethod
    def _load(self) -> list[Deployment]:
        """Return every stored deployment."""
        pass

    @abstractmethod
    def _persist(self, deployments: list[Deployment]) -> None:
        """Replace the stored log with `deployments`."""
        pass

    # --- Lookup ---

    @staticmethod
    def _match(deployments: list[Deployment], reference: str) -> Deployment:
        trimmed = (reference or "").strip()
        if not trimmed:
            raise NotFoundError("Deployment id is required.", reference="", kind="deployment")

        for deployment in deployments:
            if deployment.id == trimmed:
                return deployment

        needle = trimmed.lower()
        matches = [
            d for d in deployments
            if needle in d.id.lower() or needle in d.source.lower()
        ]
        if not matches:
            raise NotFoundError(
                f"Deployment not found: {reference}", reference=trimmed, kind="deployment"
            )
        if len(matches) > 1:
            raise AmbiguousReferenceError(
                f'Deployment reference "{reference}" is ambiguous.',
                reference=trimmed,
                kind="deployment",
                candidates=[d.id for d in matches],
            )
        return matches[0]

    def get(self, reference: str) -> Deployment:
        """
        Look up a deployment by exact id or a unique substring of id/source.

        Raises:
            NotFoundError: Nothing matches
            AmbiguousReferenceError: Several deployments match
        """
        return self._match(self._load(), reference)

    def list(
        self,
        reference: Optional[str] = None,
        mode: Optional[DeploymentMode] = None,
        status: Optional[DeploymentStatus] = None,
    ) -> list[Deployment]:
        """
        List deployments, most recently updated first.

        `reference` keeps every record whose id or source contains it
        (case-insensitive); `mode` and `status` narrow the result further.
        """
        deployments = _sort_by_updated(self._load())
        needle = (reference or "").strip().lower()
        if needle:
            deployments = [
                d for d in deployments
                if needle in d.id.lower() or needle in d.source.lower()
            ]
        if mode is not None:
            deployments = [d for d in deployments if d.mode == mode]
        if status is not None:
            deployments = [d for d in deployments if d.status == status]
        return deployments

    # --- Mutation ---

    def create(
        self,
        mode: DeploymentMode,
        source: str,
        scheduled_for: Optional[datetime] = None,
        status: Optional[DeploymentStatus] = None,
        dry_run: Optional[bool] = None,
        strict: Optional[bool] = None,
        include_secrets: Optional[bool] = None,
        yes: Optional[bool] = None,
    ) -> Deployment:
        """
        Create and persist a new deployment.

        The status defaults to `scheduled`. The log keeps at most
        MAX_DEPLOYMENTS records, dropping the least recently updated.
        """
        source = (source or "").strip()
        if not source:
            raise StateTransitionError("Deployment source is required.")

        now = datetime.now(timezone.utc)
        deployment = Deployment(
            id=generate_deployment_id(mode),
            mode=mode,
            source=source,
            status=status or DeploymentStatus.SCHEDULED,
            created_at=now,
            updated_at=now,
            scheduled_for=scheduled_for,
            dry_run=dry_run,
            strict=strict,
            include_secrets=include_secrets,
            yes=yes,
        )

        deployments = self._load()
        deployments.insert(0, deployment)
        deployments = _sort_by_updated(deployments)[:MAX_DEPLOYMENTS]
        self._persist(deployments)

        logger.info(f"Created {mode.value} deployment {deployment.id} ({deployment.status.value})")
        return deployment

    def update(self, deployment_id: str, **patch: Any) -> Deployment:
        """
        Merge `patch` into a deployment and refresh `updated_at`.

        Raises:
            StateTransitionError: Mode change, illegal status move or empty source
            NotFoundError: Unknown deployment
        """
        if "mode" in patch:
            raise StateTransitionError(
                "Deployment mode cannot be changed after creation.",
                deployment_id=deployment_id,
            )
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown deployment fields: {', '.join(sorted(unknown))}")

        deployments = self._load()
        target = self._match(deployments, deployment_id)

        new_status = patch.get("status")
        if new_status is not None:
            new_status = DeploymentStatus(new_status)
            if new_status != target.status and not can_transition(target.status, new_status):
                raise StateTransitionError(
                    f"Cannot move deployment {target.id} from "
                    f"{target.status.value} to {new_status.value}.",
                    deployment_id=target.id,
                    current=target.status.value,
                    attempted=new_status.value,
                )
            target.status = new_status

        if "source" in patch:
            source = (patch["source"] or "").strip()
            if not source:
                raise StateTransitionError(
                    "Deployment source cannot be empty.", deployment_id=target.id
                )
            target.source = source

        for name in ("scheduled_for", "approved_at", "applied_at", "dry_run",
                     "strict", "include_secrets", "yes"):
            if name in patch:
                setattr(target, name, patch[name])
        if "error" in patch:
            target.error = patch["error"] or None

        target.updated_at = datetime.now(timezone.utc)
        self._persist(deployments)
        return target

    def delete(self, reference: str) -> Deployment:
        """Remove a deployment from the log and return it."""
        deployments = self._load()
        target = self._match(deployments, reference)
        self._persist([d for d in deployments if d.id != target.id])
        logger.info(f"Deleted deployment {target.id}")
        return target


class InMemoryDeploymentStore(DeploymentStore):
    """Deployment log held in memory."""

    def __init__(self, deployments: Optional[list[Deployment]] = None):
        self._deployments: list[dict[str, Any]] = [d.to_dict() for d in deployments or []]

    # Round-trip through dicts so callers never share mutable records
    def _load(self) -> list[Deployment]:
        return [Deployment.from_dict(row) for row in self._deployments]

    def _persist(self, deployments: list[Deployment]) -> None:
        self._deployments = [d.to_dict() for d in deployments]


class JsonDeploymentStore(DeploymentStore):
    """
    Deployment log in a JSON file:

        {"version": 1, "deployments": [{...}, ...]}

    A missing file is an empty log. Rows that do not parse are skipped with
    a warning; a file that is not valid JSON raises instead of being
    overwritten.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> list[Deployment]:
        if not self.path.exists():
            return []

        data = read_json_file(self.path, "deployment log")
        if isinstance(data, dict):
            rows = data.get("deployments") or []
        elif isinstance(data, list):
            rows = data
        else:
            raise BundleFormatError(
                f"Invalid deployment log {self.path}: expected an object", path=str(self.path)
            )
        if not isinstance(rows, list):
            raise BundleFormatError(
                f"Invalid deployment log {self.path}: deployments must be an array",
                path=str(self.path),
            )

        deployments = []
        for index, row in enumerate(rows):
            deployment = Deployment.from_dict(row)
            if deployment is None:
                logger.warning(f"Skipping malformed deployment record #{index} in {self.path}")
                continue
            deployments.append(deployment)
        return deployments

    def _persist(self, deployments: list[Deployment]) -> None:
        payload = {
            "version": LOG_VERSION,
            "deployments": [d.to_dict() for d in deployments],
        }
        try:
            write_json_atomic(self.path, payload)
        except OSError as e:
            raise StoreWriteError(f"Failed to write deployment log {self.path}: {e}") from e
