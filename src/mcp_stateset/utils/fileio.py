"""JSON file helpers shared by the stores and the state-set codec."""
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from ..errors import BundleFormatError


def read_json_file(path: Path, label: str = "file") -> Any:
    """Read and parse a JSON file.

    Raises:
        BundleFormatError: If the content is not valid JSON
        OSError: If the file cannot be read
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise BundleFormatError(
            f"Invalid JSON in {label} {path}: {e}", path=str(path)
        ) from e


def write_json_atomic(path: Path, data: Any, indent: int = 2) -> Path:
    """Write JSON next to the target, then rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path
