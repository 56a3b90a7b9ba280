"""State-set directory codec.

A state-set directory holds either a single `snapshot.json` bundle or one
JSON array per collection, plus an optional `config.json` manifest:

    .stateset/
    ├── snapshot.json         # full OrgExport (preferred when valid)
    ├── config.json           # {version, orgId, exportedAt, generatedAt, resources}
    ├── agents.json
    ├── rules.json
    ├── ...
    └── agent-settings.json
"""
import logging
from pathlib import Path
from typing import Any, Optional

from ..errors import BundleFormatError
from ..utils.fileio import read_json_file, write_json_atomic
from .schema import OrgExport, utc_now_iso

logger = logging.getLogger(__name__)

BUNDLE_FILE = "snapshot.json"
CONFIG_FILE = "config.json"

RESOURCE_FILES: dict[str, str] = {
    "agents": "agents.json",
    "rules": "rules.json",
    "skills": "skills.json",
    "attributes": "attributes.json",
    "functions": "functions.json",
    "examples": "examples.json",
    "evals": "evals.json",
    "datasets": "datasets.json",
    "agentSettings": "agent-settings.json",
}

EMPTY_FINGERPRINT = "empty"
NOT_A_DIRECTORY = "not-a-directory"


def read_state_set_bundle(source: Path) -> OrgExport:
    """Read a bundle from a file or a state-set directory.

    Raises:
        FileNotFoundError: If the source does not exist
        BundleFormatError: If a file is not valid JSON or has the wrong shape
    """
    source = Path(source).resolve()
    if not source.exists():
        raise FileNotFoundError(f"StateSet source not found: {source}")

    if source.is_file():
        try:
            return OrgExport.coerce(read_json_file(source, "state set file"), str(source))
        except BundleFormatError as e:
            raise BundleFormatError(
                f"Invalid state set file {source}: {e}", path=str(source)
            ) from e

    if not source.is_dir():
        raise BundleFormatError(
            f"StateSet source must be a file or directory: {source}", path=str(source)
        )

    bundle_path = source / BUNDLE_FILE
    if bundle_path.exists():
        try:
            candidate = read_json_file(bundle_path, "state set bundle")
            if (
                isinstance(candidate, dict)
                and candidate.get("version")
                and candidate.get("orgId")
                and isinstance(candidate.get("agents"), list)
            ):
                return OrgExport.coerce(candidate, str(bundle_path))
            logger.debug(f"{bundle_path} is not a full bundle, reading resource files")
        except BundleFormatError as e:
            logger.warning(f"Ignoring unreadable {bundle_path}: {e}")

    header: dict[str, Any] = {}
    config_path = source / CONFIG_FILE
    if config_path.exists():
        try:
            manifest = read_json_file(config_path, "state set config")
            if isinstance(manifest, dict):
                header = {
                    key: manifest[key]
                    for key in ("version", "orgId", "exportedAt")
                    if manifest.get(key)
                }
        except BundleFormatError as e:
            logger.warning(f"Ignoring malformed manifest {config_path}: {e}")

    payload: dict[str, Any] = dict(header)
    for name, filename in RESOURCE_FILES.items():
        resource_path = source / filename
        if not resource_path.exists():
            continue
        data = read_json_file(resource_path, f"state set resource {filename}")
        if not isinstance(data, list):
            raise BundleFormatError(
                f"Invalid state set resource {resource_path}: expected an array",
                path=str(resource_path),
            )
        payload[name] = data

    return OrgExport.coerce(payload, str(source))


def write_state_set_bundle(target_dir: Path, bundle: OrgExport) -> list[str]:
    """Write `bundle` as a state-set directory. Returns the files written."""
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    write_json_atomic(target_dir / BUNDLE_FILE, bundle.to_dict())

    manifest = {
        "version": bundle.version,
        "orgId": bundle.org_id,
        "exportedAt": bundle.exported_at,
        "generatedAt": utc_now_iso(),
        "resources": bundle.counts(),
    }
    write_json_atomic(target_dir / CONFIG_FILE, manifest)

    written = [BUNDLE_FILE, CONFIG_FILE]
    for name, filename in RESOURCE_FILES.items():
        write_json_atomic(target_dir / filename, bundle.collection(name))
        written.append(filename)

    logger.info(f"Wrote state set to {target_dir} ({bundle.total_entities} entities)")
    return written


def read_fingerprint(source_dir: Path) -> str:
    """Cheap change detector over the JSON files directly in `source_dir`.

    Sorted `name:size:mtime_ns` triples joined with `|`; `empty` when there
    are no JSON files and `not-a-directory` when the path is not a directory.

    Raises:
        OSError: If the directory or a file cannot be stat'ed
    """
    source_dir = Path(source_dir)
    if not source_dir.is_dir():
        # Surfaces FileNotFoundError for a missing path
        source_dir.stat()
        return NOT_A_DIRECTORY

    names = sorted(
        entry.name
        for entry in source_dir.iterdir()
        if entry.is_file() and entry.name.lower().endswith(".json")
    )
    if not names:
        return EMPTY_FINGERPRINT

    parts = []
    for name in names:
        stat = (source_dir / name).stat()
        parts.append(f"{name}:{stat.st_size}:{stat.st_mtime_ns}")
    return "|".join(parts)


def validate_state_set(source: Path, strict: bool = False) -> tuple[OrgExport, list[str]]:
    """Read a state-set source and collect structural warnings.

    Returns:
        The parsed bundle and a list of warnings (empty when valid)
    """
    source = Path(source).resolve()
    bundle = read_state_set_bundle(source)
    warnings: list[str] = []

    if source.is_dir():
        has_manifest = (source / CONFIG_FILE).exists()
        has_bundle = (source / BUNDLE_FILE).exists()
        present = [f for f in RESOURCE_FILES.values() if (source / f).exists()]

        if not present and not has_manifest and not has_bundle:
            warnings.append(f"No .stateset payload files found in {source}.")
            if strict:
                warnings.append(
                    "Strict mode requires snapshot.json, config.json, "
                    "or at least one resource file."
                )
        if not has_manifest and not has_bundle:
            warnings.append("No generated metadata file found (config.json or snapshot.json).")
        if not has_bundle and len(present) < len(RESOURCE_FILES):
            missing = [f for f in RESOURCE_FILES.values() if f not in present]
            more = f" (+{len(missing) - 3} more)" if len(missing) > 3 else ""
            warnings.append(f"Missing resource files: {', '.join(missing[:3])}{more}")

    return bundle, warnings


def resolve_state_set_dir(raw_dir: Optional[str], default: Path) -> Path:
    """Resolve a target directory for pull, creating it if needed."""
    target = Path(raw_dir).expanduser().resolve() if raw_dir else Path(default).resolve()
    target.mkdir(parents=True, exist_ok=True)
    return target
