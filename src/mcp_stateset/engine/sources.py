"""Turn user-supplied references into bundles.

References are snapshot references understood by SnapshotStore, plus the
aliases `latest` (newest snapshot) and `current`/`live`/`remote` (export
live state now). Live exports and directory pushes are materialized as
scratch files in the snapshot directory and removed on exit, whether the
body succeeds or fails.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

from ..backends.base import StateBackend
from ..bundle.schema import OrgExport
from ..bundle.stateset_dir import read_state_set_bundle
from ..store.snapshots import CURRENT_TEMP_PREFIX, PUSH_TEMP_PREFIX, SnapshotStore
from ..utils.fileio import write_json_atomic

logger = logging.getLogger(__name__)

LATEST_ALIASES = frozenset({"", "latest"})
LIVE_ALIASES = frozenset({"current", "live", "remote"})


@dataclass
class ResolvedSource:
    """A bundle together with where it came from."""
    label: str
    path: Path
    bundle: OrgExport
    ephemeral: bool = False


def is_live_alias(reference: Optional[str]) -> bool:
    return (reference or "").strip().lower() in LIVE_ALIASES


def _remove_scratch(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove scratch file {path}: {e}")


@asynccontextmanager
async def open_snapshot_source(
    reference: Optional[str],
    store: SnapshotStore,
    backend: StateBackend,
    include_secrets: bool = False,
) -> AsyncIterator[ResolvedSource]:
    """
    Resolve a snapshot reference or alias for the duration of the block.

    Raises:
        NotFoundError / AmbiguousReferenceError: Unresolvable reference
        BundleFormatError: The resolved file is not a valid bundle
    """
    trimmed = (reference or "").strip()

    if is_live_alias(trimmed):
        scratch = store.temp_path(CURRENT_TEMP_PREFIX)
        try:
            bundle = await backend.export_state(include_secrets=include_secrets)
            write_json_atomic(scratch, bundle.to_dict())
            logger.debug(f"Materialized live state at {scratch}")
            yield ResolvedSource(
                label=trimmed.lower(),
                path=scratch,
                bundle=store.read(scratch),
                ephemeral=True,
            )
        finally:
            _remove_scratch(scratch)
        return

    if trimmed.lower() in LATEST_ALIASES:
        trimmed = ""
    path, bundle = store.load(trimmed)
    yield ResolvedSource(label=str(path), path=path, bundle=bundle)


@asynccontextmanager
async def open_push_source(
    source: Path,
    store: SnapshotStore,
) -> AsyncIterator[ResolvedSource]:
    """
    Read a state-set directory or bundle file for a push.

    A directory is flattened into one scratch bundle file first, so every
    import runs from a single file.

    Raises:
        FileNotFoundError: The source does not exist
        BundleFormatError: The source is malformed
    """
    source = Path(source).expanduser().resolve()
    bundle = read_state_set_bundle(source)

    if not source.is_dir():
        yield ResolvedSource(label=str(source), path=source, bundle=bundle)
        return

    scratch = store.temp_path(PUSH_TEMP_PREFIX)
    try:
        write_json_atomic(scratch, bundle.to_dict())
        logger.info(f"Prepared import file {scratch} from {source}")
        yield ResolvedSource(label=str(source), path=scratch, bundle=bundle, ephemeral=True)
    finally:
        _remove_scratch(scratch)
