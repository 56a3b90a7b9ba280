"""Deployment orchestrator.

Drives promotions through the deployment state machine:

    scheduled -> approved -> applied
                        \\-> failed
    scheduled | approved -> cancelled

Every promotion runs a dry-run import first. The real import only happens
when the caller confirmed (`yes`) and did not ask for a dry run. Strict mode
turns any reported per-entity failure into ImportFailureError.
"""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..backends.base import StateBackend
from ..bundle.canonical import compute_checksum
from ..bundle.schema import ImportResult, OrgExport
from ..bundle.stateset_dir import (
    resolve_state_set_dir,
    validate_state_set,
    write_state_set_bundle,
)
from ..config.settings import Settings
from ..errors import BundleFormatError, ImportFailureError, StateTransitionError
from ..store.deployments import DeploymentStore, JsonDeploymentStore, MAX_DEPLOYMENTS
from ..store.snapshots import SnapshotInfo, SnapshotStore
from ..utils.audit_log import AuditTrail
from ..utils.logging_config import timed_section
from .diff import DiffEngine
from .parser import parse_schedule
from .schema import (
    Deployment,
    DeploymentMode,
    DeploymentStatus,
    DiffSummary,
    PromotionOptions,
    PromotionOutcome,
)
from .sources import ResolvedSource, open_push_source, open_snapshot_source

logger = logging.getLogger(__name__)

PREVIEW_FAILURE_SAMPLE = 3
APPLY_FAILURE_SAMPLE = 5
DEFAULT_LIST_LIMIT = 50


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _label(mode: DeploymentMode) -> str:
    return "Deploy" if mode == DeploymentMode.DEPLOY else "Rollback"


def _pick(override: Optional[bool], stored: Optional[bool]) -> bool:
    return bool(override if override is not None else stored)


class DeploymentOrchestrator:
    """Coordinates snapshots, the deployment log and the live-state backend."""

    def __init__(
        self,
        snapshots: SnapshotStore,
        deployments: DeploymentStore,
        backend: StateBackend,
        audit: Optional[AuditTrail] = None,
        default_source: Optional[Path] = None,
    ):
        self.snapshots = snapshots
        self.deployments = deployments
        self.backend = backend
        self.audit = audit or AuditTrail()
        self.default_source = Path(default_source) if default_source else Path(".stateset")
        self.diff_engine = DiffEngine()

    @classmethod
    def from_settings(cls, settings: Settings, backend: StateBackend) -> "DeploymentOrchestrator":
        return cls(
            snapshots=SnapshotStore(settings.snapshots_dir, settings.snapshot_prefix),
            deployments=JsonDeploymentStore(settings.deployments_file),
            backend=backend,
            default_source=settings.stateset_dir,
        )

    # --- Snapshots ---

    def list_snapshots(self, query: Optional[str] = None) -> list[SnapshotInfo]:
        snapshots = self.snapshots.list()
        if not query:
            return snapshots
        needle = query.lower()
        return [s for s in snapshots if needle in s.id.lower() or needle in s.file.lower()]

    async def create_snapshot(
        self,
        label: Optional[str] = None,
        out: Optional[Path] = None,
        include_secrets: bool = False,
    ) -> tuple[SnapshotInfo, OrgExport]:
        """Export live state and store it as a new snapshot."""
        async with timed_section("snapshot_create", target=self.backend.name):
            bundle = await self.backend.export_state(include_secrets=include_secrets)
        info = self.snapshots.create(bundle, label=label, out=out)
        return info, bundle

    def show_snapshot(self, reference: Optional[str] = None) -> tuple[Path, OrgExport]:
        ref = (reference or "").strip()
        return self.snapshots.load("" if ref.lower() == "latest" else ref)

    # --- Diff ---

    async def diff(
        self,
        from_ref: Optional[str] = "latest",
        to_ref: Optional[str] = "current",
        include_secrets: bool = False,
    ) -> DiffSummary:
        """
        Diff two references. Either side may be a live alias; scratch
        exports are removed before this returns.
        """
        async with open_snapshot_source(
            from_ref, self.snapshots, self.backend, include_secrets
        ) as before:
            async with open_snapshot_source(
                to_ref, self.snapshots, self.backend, include_secrets
            ) as after:
                return self.diff_engine.calculate(
                    before.bundle,
                    after.bundle,
                    from_ref=self._display(before),
                    to_ref=self._display(after),
                )

    @staticmethod
    def _display(source: ResolvedSource) -> str:
        return source.label if source.ephemeral else source.path.name

    # --- Preview / apply ---

    def _check_strict(self, label: str, stage: str, result: ImportResult, strict: bool) -> None:
        if strict and result.failure_count > 0:
            raise ImportFailureError(
                f"{label} {stage} reported {result.failure_count} failure(s) in strict mode.",
                failures=result.failures,
            )

    async def _preview_and_apply(
        self,
        label: str,
        source: ResolvedSource,
        options: PromotionOptions,
        audit_target: str,
    ) -> PromotionOutcome:
        params = {
            "source": source.label,
            "dryRun": options.dry_run,
            "strict": options.strict,
            "includeSecrets": options.include_secrets,
            "yes": options.yes,
            "checksum": compute_checksum(source.bundle.to_dict()),
        }

        try:
            async with timed_section("preview", target=audit_target):
                preview = await self.backend.import_state(
                    source.bundle, dry_run=True, strict=options.strict
                )
        except Exception as e:
            self.audit.record("preview", audit_target, False, params, dry_run=True, error=str(e))
            raise
        self.audit.record(
            "preview", audit_target, preview.failure_count == 0, params,
            dry_run=True, result=preview.to_dict(),
        )

        logger.debug(f"{label} preview: {preview.format_counts()}")
        if preview.skipped > 0:
            logger.debug(f"Preview skipped: {preview.skipped}")
        for failure in preview.failures[:PREVIEW_FAILURE_SAMPLE]:
            logger.debug(f"Preview failure [{failure.entity}]: {failure.reason}")
        self._check_strict(label, "preview", preview, options.strict)

        outcome = PromotionOutcome(
            label=label, source=source.label, preview=preview, dry_run=options.dry_run
        )
        if options.dry_run:
            logger.debug("Dry-run complete.")
            return outcome
        if not options.yes:
            logger.debug("Awaiting confirmation before apply")
            outcome.needs_confirmation = True
            return outcome

        try:
            async with timed_section("apply", target=audit_target):
                result = await self.backend.import_state(
                    source.bundle, dry_run=False, strict=options.strict
                )
        except Exception as e:
            self.audit.record("apply", audit_target, False, params, error=str(e))
            raise
        self.audit.record(
            "apply", audit_target, result.failure_count == 0, params, result=result.to_dict()
        )

        logger.debug(f"{label} complete: {result.format_counts()}")
        if result.skipped > 0:
            logger.debug(f"Skipped: {result.skipped}")
        for failure in result.failures[:APPLY_FAILURE_SAMPLE]:
            logger.debug(f"Failure {failure.entity}[{failure.index}] {failure.reason}")

        outcome.result = result
        self._check_strict(label, "apply", result, options.strict)
        return outcome

    async def _run_snapshot_promotion(
        self,
        label: str,
        reference: str,
        options: PromotionOptions,
        audit_target: str,
    ) -> PromotionOutcome:
        async with open_snapshot_source(
            reference, self.snapshots, self.backend, options.include_secrets
        ) as source:
            return await self._preview_and_apply(label, source, options, audit_target)

    async def promote(
        self,
        mode: DeploymentMode,
        reference: str,
        options: Optional[PromotionOptions] = None,
    ) -> PromotionOutcome:
        """Direct deploy/rollback; no deployment record is kept."""
        options = options or PromotionOptions()
        if not (reference or "").strip():
            raise StateTransitionError(f"{_label(mode)} requires a snapshot reference.")
        return await self._run_snapshot_promotion(
            _label(mode), reference, options, audit_target=reference
        )

    # --- Deployment lifecycle ---

    def schedule(
        self,
        mode: DeploymentMode,
        reference: str,
        when: str,
        options: Optional[PromotionOptions] = None,
        now: Optional[datetime] = None,
    ) -> Deployment:
        """
        Record a scheduled deployment.

        Raises:
            ScheduleParseError: `when` is not a valid expression
            StateTransitionError: No source given
        """
        options = options or PromotionOptions()
        scheduled_for = parse_schedule(when, now=now)
        deployment = self.deployments.create(
            mode=mode,
            source=reference,
            scheduled_for=scheduled_for,
            dry_run=options.dry_run,
            strict=options.strict,
            include_secrets=options.include_secrets,
            yes=options.yes,
        )
        self.audit.record(
            "deployment.schedule", deployment.id, True,
            {"mode": mode.value, "source": deployment.source,
             "scheduledFor": scheduled_for.isoformat()},
        )
        logger.info(
            f"{_label(mode)} scheduled with id {deployment.id} for "
            f"{scheduled_for.isoformat()} from {deployment.source}"
        )
        return deployment

    def _ensure_approvable(self, deployment: Deployment, mode: Optional[DeploymentMode]) -> None:
        if mode is not None and deployment.mode != mode:
            raise StateTransitionError(
                f"Deployment {deployment.id} is for {deployment.mode.value}, not {mode.value}.",
                deployment_id=deployment.id,
                current=deployment.status.value,
                attempted=DeploymentStatus.APPROVED.value,
            )
        messages = {
            DeploymentStatus.APPLIED: f"Deployment {deployment.id} already applied.",
            DeploymentStatus.CANCELLED:
                f"Deployment {deployment.id} is cancelled and cannot be approved.",
            DeploymentStatus.FAILED:
                f"Deployment {deployment.id} failed; use retry to start a new deployment.",
        }
        if deployment.status in messages:
            raise StateTransitionError(
                messages[deployment.status],
                deployment_id=deployment.id,
                current=deployment.status.value,
                attempted=DeploymentStatus.APPROVED.value,
            )

    async def approve(
        self,
        reference: str,
        mode: Optional[DeploymentMode] = None,
        source: Optional[str] = None,
        dry_run: Optional[bool] = None,
        strict: Optional[bool] = None,
        include_secrets: Optional[bool] = None,
        yes: Optional[bool] = None,
    ) -> PromotionOutcome:
        """
        Approve a deployment and run it immediately.

        `mode`, when given, must match the deployment. Flags left as None
        fall back to the ones stored at scheduling time. Confirmation is
        implied by approval. A dry run leaves the deployment `approved`.

        Raises:
            StateTransitionError: Mode mismatch or non-approvable status
            Any error from preview/apply, after marking the deployment failed
        """
        target = self.deployments.get(reference)
        self._ensure_approvable(target, mode)

        action_source = (source or "").strip() or target.source
        options = PromotionOptions(
            dry_run=_pick(dry_run, target.dry_run),
            yes=True,
            strict=_pick(strict, target.strict),
            include_secrets=_pick(include_secrets, target.include_secrets),
        )
        target = self.deployments.update(
            target.id,
            status=DeploymentStatus.APPROVED,
            approved_at=_now(),
            source=action_source,
            dry_run=_pick(dry_run, target.dry_run),
            strict=options.strict,
            include_secrets=options.include_secrets,
            yes=_pick(yes, target.yes),
        )
        self.audit.record(
            "deployment.approve", target.id, True,
            {"mode": target.mode.value, "source": action_source},
            dry_run=options.dry_run,
        )

        try:
            outcome = await self._run_snapshot_promotion(
                _label(target.mode), action_source, options, audit_target=target.id
            )
        except Exception as e:
            self.deployments.update(target.id, status=DeploymentStatus.FAILED, error=str(e))
            self.audit.record("deployment.fail", target.id, False, error=str(e))
            logger.error(f"Deployment {target.id} failed: {e}")
            raise

        outcome.deployment_id = target.id
        if outcome.applied:
            self.deployments.update(target.id, status=DeploymentStatus.APPLIED, applied_at=_now())
            self.audit.record(
                "deployment.apply", target.id, True, result=outcome.result.to_dict()
            )
            logger.info(f"Deployment {target.id} applied.")
        return outcome

    async def retry(
        self,
        reference: str,
        source: Optional[str] = None,
        dry_run: Optional[bool] = None,
        strict: Optional[bool] = None,
        include_secrets: Optional[bool] = None,
    ) -> PromotionOutcome:
        """
        Start a new deployment from a failed one and approve it.

        The failed record stays failed; the new one carries its mode, source
        and flags unless overridden.
        """
        failed = self.deployments.get(reference)
        if failed.status != DeploymentStatus.FAILED:
            raise StateTransitionError(
                f"Deployment {failed.id} is {failed.status.value}; "
                "only failed deployments can be retried.",
                deployment_id=failed.id,
                current=failed.status.value,
                attempted="retry",
            )

        clone = self.deployments.create(
            mode=failed.mode,
            source=(source or "").strip() or failed.source,
            dry_run=failed.dry_run,
            strict=failed.strict,
            include_secrets=failed.include_secrets,
            yes=failed.yes,
        )
        self.audit.record(
            "deployment.retry", clone.id, True, {"retryOf": failed.id, "source": clone.source}
        )
        logger.info(f"Retrying deployment {failed.id} as {clone.id}")
        return await self.approve(
            clone.id,
            mode=failed.mode,
            dry_run=dry_run,
            strict=strict,
            include_secrets=include_secrets,
        )

    def reschedule(self, reference: str, when: str, now: Optional[datetime] = None) -> Deployment:
        """Move a scheduled deployment to a new time."""
        target = self.deployments.get(reference)
        if target.status != DeploymentStatus.SCHEDULED:
            raise StateTransitionError(
                f"Deployment {target.id} is {target.status.value}; "
                "only scheduled deployments can be rescheduled.",
                deployment_id=target.id,
                current=target.status.value,
                attempted=DeploymentStatus.SCHEDULED.value,
            )
        scheduled_for = parse_schedule(when, now=now)
        updated = self.deployments.update(target.id, scheduled_for=scheduled_for)
        self.audit.record(
            "deployment.reschedule", target.id, True,
            {"scheduledFor": scheduled_for.isoformat()},
        )
        logger.info(f"Deployment {target.id} rescheduled for {scheduled_for.isoformat()}.")
        return updated

    def cancel(self, reference: str) -> Deployment:
        """Cancel a scheduled or approved deployment."""
        target = self.deployments.get(reference)
        if target.status == DeploymentStatus.APPLIED:
            message = f"Deployment {target.id} has already been applied and cannot be cancelled."
        elif target.status == DeploymentStatus.CANCELLED:
            message = f"Deployment {target.id} is already cancelled."
        elif target.status == DeploymentStatus.FAILED:
            message = f"Deployment {target.id} has failed and cannot be cancelled."
        else:
            message = ""
        if message:
            raise StateTransitionError(
                message,
                deployment_id=target.id,
                current=target.status.value,
                attempted=DeploymentStatus.CANCELLED.value,
            )

        updated = self.deployments.update(target.id, status=DeploymentStatus.CANCELLED)
        self.audit.record("deployment.cancel", target.id, True)
        logger.info(f"Deployment {target.id} cancelled.")
        return updated

    def delete(self, reference: str) -> Deployment:
        removed = self.deployments.delete(reference)
        self.audit.record("deployment.delete", removed.id, True, {"status": removed.status.value})
        return removed

    def get_deployment(self, reference: str) -> Deployment:
        return self.deployments.get(reference)

    def list_deployments(
        self,
        reference: Optional[str] = None,
        mode: Optional[DeploymentMode] = None,
        status: Optional[DeploymentStatus] = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Filtered page of deployments, most recently updated first."""
        if limit < 1:
            raise ValueError("limit must be a positive integer")
        if offset < 0:
            raise ValueError("offset must be a non-negative integer")
        limit = min(limit, MAX_DEPLOYMENTS)

        matches = self.deployments.list(reference=reference, mode=mode, status=status)
        page = matches[offset:offset + limit]
        return {
            "count": len(page),
            "total": len(matches),
            "offset": offset,
            "limit": limit,
            "deployments": page,
        }

    def status_summary(self) -> dict[str, Any]:
        deployments = self.deployments.list()
        by_mode: dict[str, int] = {}
        by_status: dict[str, int] = {}
        for deployment in deployments:
            by_mode[deployment.mode.value] = by_mode.get(deployment.mode.value, 0) + 1
            by_status[deployment.status.value] = by_status.get(deployment.status.value, 0) + 1
        return {"total": len(deployments), "byMode": by_mode, "byStatus": by_status}

    # --- State-set directories ---

    async def pull(
        self,
        target_dir: Optional[str] = None,
        include_secrets: bool = False,
    ) -> dict[str, Any]:
        """Export live state into a state-set directory."""
        target = resolve_state_set_dir(target_dir, self.default_source)
        async with timed_section("pull", target=str(target)):
            bundle = await self.backend.export_state(include_secrets=include_secrets)
        files = write_state_set_bundle(target, bundle)
        self.audit.record(
            "pull", str(target), True, {"includeSecrets": include_secrets},
            result={"counts": bundle.counts()},
        )
        return {
            "path": str(target),
            "exportedAt": bundle.exported_at,
            "version": bundle.version,
            "orgId": bundle.org_id,
            "counts": bundle.counts(),
            "files": files,
        }

    async def push(
        self,
        source: Optional[str] = None,
        options: Optional[PromotionOptions] = None,
    ) -> PromotionOutcome:
        """
        Import a state-set directory or bundle file into live state.

        Raises:
            FileNotFoundError: The source does not exist
            BundleFormatError: The source is malformed
        """
        options = options or PromotionOptions()
        source_path = Path(source).expanduser() if source else self.default_source
        async with open_push_source(source_path, self.snapshots) as resolved:
            return await self._preview_and_apply(
                "Push", resolved, options, audit_target=resolved.label
            )

    def validate(self, source: Optional[str] = None, strict: bool = False) -> dict[str, Any]:
        """
        Check a state-set source and report warnings.

        Raises:
            FileNotFoundError: The source does not exist
            BundleFormatError: Malformed source, or warnings under strict
        """
        source_path = (Path(source).expanduser() if source else self.default_source).resolve()
        if not source_path.exists():
            raise FileNotFoundError(f"StateSet source not found: {source_path}")

        bundle, warnings = validate_state_set(source_path, strict=strict)
        report = {
            "source": str(source_path),
            "type": "directory" if source_path.is_dir() else "file",
            "valid": not warnings,
            "strict": strict,
            "counts": bundle.counts(),
            "warnings": warnings,
        }
        if strict and warnings:
            raise BundleFormatError(
                f"Validation failed: {len(warnings)} issue(s).",
                path=str(source_path),
                issues=warnings,
            )
        return report
