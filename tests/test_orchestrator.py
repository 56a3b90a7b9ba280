"""Tests for the Deployment Orchestrator."""
import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from mcp_stateset.bundle.canonical import compute_checksum
from mcp_stateset.bundle.schema import ImportFailure
from mcp_stateset.bundle.stateset_dir import write_state_set_bundle
from mcp_stateset.engine.orchestrator import DeploymentOrchestrator
from mcp_stateset.engine.schema import DeploymentMode, DeploymentStatus, PromotionOptions
from mcp_stateset.errors import (
    BundleFormatError,
    ImportFailureError,
    NotFoundError,
    StateTransitionError,
)
from mcp_stateset.store.deployments import InMemoryDeploymentStore
from mcp_stateset.store.snapshots import SnapshotStore
from mcp_stateset.utils.audit_log import AuditTrail

from conftest import FakeBackend, make_bundle

NOW = datetime(2026, 1, 13, 10, 0, 0, tzinfo=timezone.utc)


class RecordingAudit(AuditTrail):
    """Audit trail that also keeps its records in memory."""

    def __init__(self):
        super().__init__(user="tester")
        self.records = []

    def record(self, *args, **kwargs):
        entry = super().record(*args, **kwargs)
        self.records.append(entry)
        return entry


def _scratch_files(orch: DeploymentOrchestrator) -> list[str]:
    directory = orch.snapshots.snapshots_dir
    if not directory.exists():
        return []
    return sorted(
        p.name for p in directory.iterdir()
        if p.name.startswith(("tmp-current", "stateset-push"))
    )


@pytest.fixture
def backend():
    return FakeBackend(live=make_bundle(agents=[{"id": "1", "name": "y"}, {"id": "2", "name": "z"}]))


@pytest.fixture
def orch(tmp_path, backend):
    orchestrator = DeploymentOrchestrator(
        snapshots=SnapshotStore(tmp_path / "snapshots"),
        deployments=InMemoryDeploymentStore(),
        backend=backend,
        default_source=tmp_path / ".stateset",
    )
    orchestrator.snapshots.create(make_bundle(agents=[{"id": "1", "name": "x"}]), label="base")
    return orchestrator


class TestSnapshots:
    """Tests for snapshot operations."""

    @pytest.mark.asyncio
    async def test_create_snapshot_exports_live_state(self, orch, backend):
        """Test a new snapshot captures live state."""
        info, bundle = await orch.create_snapshot(label="after")
        assert info.id.startswith("snapshot-after-")
        assert bundle.counts()["agents"] == 2
        assert backend.exports == [False]

    def test_list_with_query(self, orch):
        """Test listing filtered by a case-insensitive query."""
        assert len(orch.list_snapshots()) == 1
        assert orch.list_snapshots("BASE")[0].id.startswith("snapshot-base-")
        assert orch.list_snapshots("nothing") == []

    def test_show_latest(self, orch):
        """Test latest resolves to the newest snapshot."""
        path, bundle = orch.show_snapshot("latest")
        assert path.name.startswith("snapshot-base-")
        assert bundle.counts()["agents"] == 1


class TestDiff:
    """Tests for diffing references."""

    @pytest.mark.asyncio
    async def test_latest_against_current(self, orch):
        """Test the default diff against live state."""
        summary = await orch.diff()
        row = summary.row("agents")
        assert (row.from_count, row.to_count, row.added, row.removed, row.changed) == (1, 2, 1, 0, 1)
        assert summary.from_ref.startswith("snapshot-base-")
        assert summary.to_ref == "current"
        assert _scratch_files(orch) == []

    @pytest.mark.asyncio
    async def test_live_scratch_removed_on_failure(self, orch):
        """Test the live export scratch file is removed when a diff fails."""
        with pytest.raises(NotFoundError):
            await orch.diff("current", "does-not-exist")
        assert _scratch_files(orch) == []

    @pytest.mark.asyncio
    async def test_live_aliases(self, orch):
        """Test live and remote both read live state."""
        summary = await orch.diff("live", "remote")
        assert summary.no_change
        assert (summary.from_ref, summary.to_ref) == ("live", "remote")


class TestPromote:
    """Tests for direct deploy/rollback."""

    @pytest.mark.asyncio
    async def test_dry_run_never_applies(self, orch, backend):
        """Test dry-run previews without applying."""
        outcome = await orch.promote(DeploymentMode.DEPLOY, "base", PromotionOptions(dry_run=True, yes=True))
        assert outcome.dry_run
        assert not outcome.applied
        assert backend.applied == []
        assert outcome.preview.counts["agents"] == 1

    @pytest.mark.asyncio
    async def test_requires_confirmation(self, orch, backend):
        """Test apply waits for confirmation."""
        outcome = await orch.promote(DeploymentMode.DEPLOY, "base")
        assert outcome.needs_confirmation
        assert backend.applied == []

    @pytest.mark.asyncio
    async def test_yes_applies(self, orch, backend):
        """Test confirmed promotion applies without a deployment record."""
        outcome = await orch.promote(DeploymentMode.ROLLBACK, "base", PromotionOptions(yes=True))
        assert outcome.applied
        assert outcome.label == "Rollback"
        assert len(backend.applied) == 1
        assert orch.deployments.list() == []

    @pytest.mark.asyncio
    async def test_partial_failures_reported_without_strict(self, orch, backend):
        """Test failures are reported but not fatal outside strict mode."""
        backend.failures = [ImportFailure(entity="agents", index=0, reason="bad")]
        outcome = await orch.promote(DeploymentMode.DEPLOY, "base", PromotionOptions(yes=True))
        assert outcome.applied
        assert outcome.result.failure_count == 1

    @pytest.mark.asyncio
    async def test_audit_records_bundle_checksum(self, orch):
        """Test preview and apply audit records carry the promoted bundle checksum."""
        audit = RecordingAudit()
        orch.audit = audit
        await orch.promote(DeploymentMode.DEPLOY, "base", PromotionOptions(yes=True))

        _, bundle = orch.show_snapshot("base")
        expected = compute_checksum(bundle.to_dict())
        assert [r.operation for r in audit.records] == ["preview", "apply"]
        assert {r.parameters["checksum"] for r in audit.records} == {expected}

    @pytest.mark.asyncio
    async def test_outcome_lines_stay_below_info(self, orch, backend, caplog):
        """Test preview and apply summaries are left to the caller to print."""
        backend.failures = [ImportFailure(entity="agents", index=0, reason="bad")]
        with caplog.at_level(logging.INFO, logger="mcp_stateset.engine.orchestrator"):
            await orch.promote(DeploymentMode.DEPLOY, "base", PromotionOptions(yes=True))

        loud = [
            r.getMessage() for r in caplog.records
            if r.name == "mcp_stateset.engine.orchestrator" and r.levelno >= logging.INFO
        ]
        assert not [m for m in loud if "preview:" in m or "complete:" in m or "Failure" in m]

    @pytest.mark.asyncio
    async def test_strict_escalates_preview_failures(self, orch, backend):
        """Test strict mode stops on preview failures."""
        backend.failures = [ImportFailure(entity="agents", index=0, reason="bad")]
        with pytest.raises(ImportFailureError) as exc:
            await orch.promote(DeploymentMode.DEPLOY, "base", PromotionOptions(yes=True, strict=True))
        assert len(exc.value.failures) == 1
        assert backend.applied == []

    @pytest.mark.asyncio
    async def test_requires_reference(self, orch):
        """Test promotion needs a snapshot reference."""
        with pytest.raises(StateTransitionError):
            await orch.promote(DeploymentMode.DEPLOY, "  ")

    @pytest.mark.asyncio
    async def test_promote_current_cleans_up(self, orch, backend):
        """Test promoting live state removes its scratch file."""
        backend.raise_on_apply = RuntimeError("apply exploded")
        with pytest.raises(RuntimeError):
            await orch.promote(DeploymentMode.DEPLOY, "current", PromotionOptions(yes=True))
        assert _scratch_files(orch) == []


class TestDeploymentLifecycle:
    """Tests for schedule/approve/retry/cancel."""

    def test_schedule_starts_scheduled(self, orch):
        """Test a scheduled deployment starts in scheduled."""
        deployment = orch.schedule(
            DeploymentMode.DEPLOY, "base", "+2h", PromotionOptions(strict=True), now=NOW
        )
        assert deployment.status == DeploymentStatus.SCHEDULED
        assert deployment.scheduled_for == NOW + timedelta(hours=2)
        assert deployment.strict is True

    @pytest.mark.asyncio
    async def test_approve_applies(self, orch, backend):
        """Test approving a scheduled deployment applies it."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        outcome = await orch.approve(deployment.id, mode=DeploymentMode.DEPLOY)

        assert outcome.applied
        assert outcome.deployment_id == deployment.id
        stored = orch.get_deployment(deployment.id)
        assert stored.status == DeploymentStatus.APPLIED
        assert stored.approved_at is not None
        assert stored.applied_at is not None
        assert len(backend.applied) == 1

    @pytest.mark.asyncio
    async def test_approve_failure_marks_failed(self, orch, backend):
        """Test a failed apply marks the deployment failed."""
        backend.raise_on_apply = RuntimeError("boom")
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now")

        with pytest.raises(RuntimeError, match="boom"):
            await orch.approve(deployment.id)

        stored = orch.get_deployment(deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert stored.error == "boom"

    @pytest.mark.asyncio
    async def test_approve_missing_source_marks_failed(self, orch):
        """Test a vanished snapshot marks the deployment failed."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "no-such-snapshot", "now")
        with pytest.raises(NotFoundError):
            await orch.approve(deployment.id)
        assert orch.get_deployment(deployment.id).status == DeploymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_approve_applied_is_rejected_unchanged(self, orch, backend):
        """Test an applied deployment cannot be approved again."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        await orch.approve(deployment.id)
        before = orch.get_deployment(deployment.id)

        with pytest.raises(StateTransitionError, match="already applied"):
            await orch.approve(deployment.id)

        after = orch.get_deployment(deployment.id)
        assert after.to_dict() == before.to_dict()
        assert len(backend.applied) == 1

    @pytest.mark.asyncio
    async def test_approve_mode_mismatch(self, orch):
        """Test approving with the wrong mode."""
        deployment = orch.schedule(DeploymentMode.ROLLBACK, "base", "now")
        with pytest.raises(StateTransitionError):
            await orch.approve(deployment.id, mode=DeploymentMode.DEPLOY)
        assert orch.get_deployment(deployment.id).status == DeploymentStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_approve_dry_run_stays_approved(self, orch, backend):
        """Test a dry-run approval leaves the record approved."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now", PromotionOptions(dry_run=True))
        outcome = await orch.approve(deployment.id)
        assert outcome.dry_run
        assert orch.get_deployment(deployment.id).status == DeploymentStatus.APPROVED
        assert backend.applied == []

        # Overriding the stored flag completes it
        await orch.approve(deployment.id, dry_run=False)
        assert orch.get_deployment(deployment.id).status == DeploymentStatus.APPLIED

    @pytest.mark.asyncio
    async def test_approve_overrides_source(self, orch, backend):
        """Test approve can switch the source to live state."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "no-such-snapshot", "now")
        await orch.approve(deployment.id, source="current")
        stored = orch.get_deployment(deployment.id)
        assert stored.source == "current"
        assert stored.status == DeploymentStatus.APPLIED
        assert _scratch_files(orch) == []

    @pytest.mark.asyncio
    async def test_retry_failed(self, orch, backend):
        """Test retry creates a fresh deployment from a failed one."""
        backend.raise_on_apply = RuntimeError("boom")
        failed = orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        with pytest.raises(RuntimeError):
            await orch.approve(failed.id)

        backend.raise_on_apply = None
        outcome = await orch.retry(failed.id)

        assert outcome.deployment_id != failed.id
        assert orch.get_deployment(failed.id).status == DeploymentStatus.FAILED
        assert orch.get_deployment(outcome.deployment_id).status == DeploymentStatus.APPLIED

    @pytest.mark.asyncio
    async def test_retry_rejects_non_failed(self, orch):
        """Test only failed deployments can be retried."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        with pytest.raises(StateTransitionError):
            await orch.retry(deployment.id)

    @pytest.mark.asyncio
    async def test_failed_cannot_be_approved(self, orch, backend):
        """Test a failed deployment points the caller at retry."""
        backend.raise_on_apply = RuntimeError("boom")
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        with pytest.raises(RuntimeError):
            await orch.approve(deployment.id)
        with pytest.raises(StateTransitionError, match="retry"):
            await orch.approve(deployment.id)

    def test_cancel(self, orch):
        """Test cancelling a scheduled deployment."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        assert orch.cancel(deployment.id).status == DeploymentStatus.CANCELLED
        with pytest.raises(StateTransitionError, match="already cancelled"):
            orch.cancel(deployment.id)

    @pytest.mark.asyncio
    async def test_cancel_applied_rejected(self, orch):
        """Test an applied deployment cannot be cancelled."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        await orch.approve(deployment.id)
        with pytest.raises(StateTransitionError):
            orch.cancel(deployment.id)
        assert orch.get_deployment(deployment.id).status == DeploymentStatus.APPLIED

    def test_reschedule(self, orch):
        """Test rescheduling only while scheduled."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now", now=NOW)
        updated = orch.reschedule(deployment.id, "+1d", now=NOW)
        assert updated.scheduled_for == NOW + timedelta(days=1)

        orch.cancel(deployment.id)
        with pytest.raises(StateTransitionError):
            orch.reschedule(deployment.id, "now")

    def test_delete(self, orch):
        """Test deleting a deployment record."""
        deployment = orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        assert orch.delete(deployment.id).id == deployment.id
        with pytest.raises(NotFoundError):
            orch.get_deployment(deployment.id)


class TestListing:
    """Tests for deployment listing and status."""

    def test_paging(self, orch):
        """Test limit, offset and filtering."""
        for _ in range(3):
            orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        orch.schedule(DeploymentMode.ROLLBACK, "base", "now")

        page = orch.list_deployments(limit=2, offset=1)
        assert (page["count"], page["total"], page["offset"], page["limit"]) == (2, 4, 1, 2)

        rollbacks = orch.list_deployments(mode=DeploymentMode.ROLLBACK)
        assert rollbacks["total"] == 1

    def test_limit_is_capped(self, orch):
        assert orch.list_deployments(limit=10_000)["limit"] == 200

    def test_invalid_paging(self, orch):
        with pytest.raises(ValueError):
            orch.list_deployments(limit=0)
        with pytest.raises(ValueError):
            orch.list_deployments(offset=-1)

    def test_status_summary(self, orch):
        """Test counts by mode and status."""
        first = orch.schedule(DeploymentMode.DEPLOY, "base", "now")
        orch.schedule(DeploymentMode.ROLLBACK, "base", "now")
        orch.cancel(first.id)

        summary = orch.status_summary()
        assert summary["total"] == 2
        assert summary["byMode"] == {"deploy": 1, "rollback": 1}
        assert summary["byStatus"] == {"cancelled": 1, "scheduled": 1}


class TestStateSetSync:
    """Tests for pull, push and validate."""

    @pytest.mark.asyncio
    async def test_pull_writes_directory(self, orch, tmp_path):
        """Test pull writes live state as a directory."""
        report = await orch.pull(str(tmp_path / "pulled"))
        assert report["counts"]["agents"] == 2
        assert "agent-settings.json" in report["files"]
        agents = json.loads((tmp_path / "pulled" / "agents.json").read_text())
        assert [a["id"] for a in agents] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_push_directory_uses_scratch_file(self, orch, backend, tmp_path):
        """Test pushing a directory goes through a removed scratch file."""
        source = tmp_path / "set"
        write_state_set_bundle(source, make_bundle(rules=[{"id": "r"}]))

        outcome = await orch.push(str(source), PromotionOptions(yes=True))

        assert outcome.applied
        assert outcome.source == str(source.resolve())
        assert backend.applied[0]["bundle"].collection("rules") == [{"id": "r"}]
        assert _scratch_files(orch) == []

    @pytest.mark.asyncio
    async def test_push_defaults_to_stateset_dir(self, orch, backend, tmp_path):
        """Test push falls back to the default directory."""
        write_state_set_bundle(tmp_path / ".stateset", make_bundle(skills=[{"id": "s"}]))
        outcome = await orch.push(options=PromotionOptions(dry_run=True))
        assert outcome.preview.counts["skills"] == 1

    @pytest.mark.asyncio
    async def test_push_missing_source(self, orch, tmp_path):
        """Test pushing a missing source."""
        with pytest.raises(FileNotFoundError):
            await orch.push(str(tmp_path / "missing"))

    def test_validate(self, orch, tmp_path):
        """Test validating a complete directory."""
        write_state_set_bundle(tmp_path / "set", make_bundle())
        report = orch.validate(str(tmp_path / "set"))
        assert report["valid"]
        assert report["type"] == "directory"

    def test_validate_strict_raises_on_warnings(self, orch, tmp_path):
        """Test strict validation turns warnings into errors."""
        (tmp_path / "set").mkdir()
        (tmp_path / "set" / "agents.json").write_text("[]")

        assert not orch.validate(str(tmp_path / "set"))["valid"]
        with pytest.raises(BundleFormatError) as exc:
            orch.validate(str(tmp_path / "set"), strict=True)
        assert exc.value.issues

    def test_validate_missing_source(self, orch, tmp_path):
        """Test validating a missing source."""
        with pytest.raises(FileNotFoundError):
            orch.validate(str(tmp_path / "missing"))
