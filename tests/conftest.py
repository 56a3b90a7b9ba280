"""Shared fixtures: bundle builders, a scripted backend and log isolation."""
from typing import Any, Optional

import pytest

from mcp_stateset.backends.base import StateBackend
from mcp_stateset.bundle.schema import COLLECTIONS, ImportFailure, ImportResult, OrgExport


def make_bundle(org_id: str = "org-1", version: str = "1.0.0", **collections: list) -> OrgExport:
    """OrgExport with the given collections; the rest are empty."""
    return OrgExport(
        version=version,
        org_id=org_id,
        exported_at="2026-01-13T10:00:00+00:00",
        collections={name: list(collections.get(name, [])) for name in COLLECTIONS},
    )


class FakeBackend(StateBackend):
    """Backend whose export and import behaviour is scripted per test."""

    type_name = "fake"

    def __init__(
        self,
        live: Optional[OrgExport] = None,
        failures: Optional[list[ImportFailure]] = None,
        raise_on_apply: Optional[Exception] = None,
        raise_on_export: Optional[Exception] = None,
    ):
        super().__init__("org-1")
        self.live = live or make_bundle()
        self.failures = failures or []
        self.raise_on_apply = raise_on_apply
        self.raise_on_export = raise_on_export
        self.exports: list[bool] = []
        self.imports: list[dict[str, Any]] = []

    async def export_state(self, include_secrets: bool = False) -> OrgExport:
        self.exports.append(include_secrets)
        if self.raise_on_export is not None:
            raise self.raise_on_export
        return self.live

    async def import_state(self, bundle: OrgExport, dry_run: bool = False, strict: bool = False) -> ImportResult:
        self.imports.append({"bundle": bundle, "dry_run": dry_run, "strict": strict})
        if not dry_run and self.raise_on_apply is not None:
            raise self.raise_on_apply
        counts = {name: len(bundle.collection(name)) for name in COLLECTIONS}
        return ImportResult(counts=counts, failures=list(self.failures), dry_run=dry_run)

    @property
    def applied(self) -> list[dict[str, Any]]:
        return [call for call in self.imports if not call["dry_run"]]


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path, monkeypatch):
    """Keep log and audit files inside the test's tmp_path."""
    monkeypatch.setenv("STATECRAFT_LOG_FILE", str(tmp_path / "logs" / "statecraft.log"))
    monkeypatch.setenv("STATECRAFT_AUDIT_DIR", str(tmp_path / "audit"))
    for name in ("STATECRAFT_CONFIG", "STATECRAFT_HOME", "STATECRAFT_BACKEND",
                 "STATECRAFT_ENDPOINT", "STATECRAFT_ORG_ID"):
        monkeypatch.delenv(name, raising=False)
