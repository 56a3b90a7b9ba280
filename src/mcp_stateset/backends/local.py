"""Local backend: live state kept in one JSON file.

Useful offline, for demos, and as the default when no remote is set up.
Imports upsert by entity identity, the same identity the diff engine uses.
"""
import logging
from pathlib import Path
from typing import Any, Optional

from ..bundle.canonical import canonicalize
from ..bundle.schema import COLLECTIONS, OrgExport, ImportFailure, ImportResult, utc_now_iso
from ..engine.diff import extract_entity_id
from ..errors import ImportFailureError
from ..utils.fileio import read_json_file, write_json_atomic
from ..utils.logging_config import timed
from .base import StateBackend, redact_bundle

logger = logging.getLogger(__name__)


class LocalStateBackend(StateBackend):
    """Live state in a JSON file holding one OrgExport."""

    type_name = "local"

    def __init__(self, path: Path, org_id: Optional[str] = None):
        super().__init__(org_id)
        self.path = Path(path)

    def _read_live(self) -> OrgExport:
        if not self.path.exists():
            return OrgExport.empty(org_id=self.org_id or "local")
        return OrgExport.coerce(read_json_file(self.path, "live state"), str(self.path))

    @timed("export_state")
    async def export_state(self, include_secrets: bool = False) -> OrgExport:
        live = self._read_live()
        bundle = OrgExport(
            version=live.version,
            org_id=self.org_id or live.org_id,
            exported_at=utc_now_iso(),
            collections={name: list(live.collection(name)) for name in COLLECTIONS},
        )
        if not include_secrets:
            bundle = redact_bundle(bundle)
        logger.debug(f"Exported {bundle.total_entities} entities from {self.path}")
        return bundle

    @timed("import_state")
    async def import_state(
        self,
        bundle: OrgExport,
        dry_run: bool = False,
        strict: bool = False,
    ) -> ImportResult:
        live = self._read_live()
        merged: dict[str, list[Any]] = {}
        result = ImportResult(dry_run=dry_run)

        for name in COLLECTIONS:
            rows = list(live.collection(name))
            positions = {
                extract_entity_id(row, i): i
                for i, row in enumerate(r for r in rows if isinstance(r, dict))
            }
            object_rows = [r for r in rows if isinstance(r, dict)]

            object_index = 0
            for index, entity in enumerate(bundle.collection(name)):
                if not isinstance(entity, dict):
                    result.failures.append(ImportFailure(
                        entity=name,
                        index=index,
                        reason=f"expected an object, got {type(entity).__name__}",
                    ))
                    continue

                key = extract_entity_id(entity, object_index)
                object_index += 1
                existing = positions.get(key)
                if existing is not None and canonicalize(object_rows[existing]) == canonicalize(entity):
                    result.skipped += 1
                    continue

                if existing is None:
                    positions[key] = len(object_rows)
                    object_rows.append(entity)
                else:
                    object_rows[existing] = entity
                result.counts[name] += 1

                if name == "datasets":
                    entries = entity.get("dataset_entries")
                    if isinstance(entries, list):
                        result.dataset_entries += len(entries)

            merged[name] = object_rows

        if strict and result.failures:
            raise ImportFailureError(
                f"Import rejected: {result.failure_count} entities failed in strict mode",
                failures=result.failures,
            )

        if not dry_run:
            updated = OrgExport(
                version=bundle.version,
                org_id=self.org_id or live.org_id,
                exported_at=utc_now_iso(),
                collections=merged,
            )
            write_json_atomic(self.path, updated.to_dict())
            logger.info(f"Applied {result.format_counts()} to {self.path}")

        return result
