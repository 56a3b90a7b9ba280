"""Settings loaded from statecraft.yaml and the environment.

Example statecraft.yaml:

```yaml
base_dir: .stateset
snapshot_prefix: snapshot
watch_interval: 5
backend:
  type: http
  endpoint: https://state.example.com/api
  org_id: acme
  token_env: STATECRAFT_TOKEN
  timeout: 30
  retries: 3
```

Environment overrides: STATECRAFT_CONFIG (settings file), STATECRAFT_HOME
(base_dir), STATECRAFT_BACKEND, STATECRAFT_ENDPOINT, STATECRAFT_ORG_ID.
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from ..errors import StateSetError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "statecraft.yaml"
DEFAULT_BASE_DIR = ".stateset"
DEFAULT_WATCH_INTERVAL = 5.0


class SettingsError(StateSetError):
    """The settings file is unreadable or has invalid values."""
    pass


@dataclass
class BackendSettings:
    """Where live state is exported from and imported into."""
    type: str = "local"
    path: Optional[str] = None  # local: live state file
    endpoint: Optional[str] = None  # http: service base URL
    org_id: Optional[str] = None
    token_env: str = "STATECRAFT_TOKEN"
    timeout: float = 30
    retries: int = 3

    def get_token(self) -> str:
        """Get the bearer token from the environment."""
        return os.environ.get(self.token_env, "")


@dataclass
class Settings:
    """Resolved Statecraft settings."""
    base_dir: Path = field(default_factory=lambda: Path(DEFAULT_BASE_DIR))
    snapshot_prefix: str = "snapshot"
    watch_interval: float = DEFAULT_WATCH_INTERVAL
    backend: BackendSettings = field(default_factory=BackendSettings)
    config_path: Optional[Path] = None

    # Layout:
    #   <base_dir>/             state-set directory (pull target, watch source)
    #   <base_dir>/snapshots/   snapshot bundles
    #   <base_dir>/state/       deployment log, local live state, audit log
    @property
    def stateset_dir(self) -> Path:
        return self.base_dir

    @property
    def snapshots_dir(self) -> Path:
        return self.base_dir / "snapshots"

    @property
    def state_dir(self) -> Path:
        return self.base_dir / "state"

    @property
    def deployments_file(self) -> Path:
        return self.state_dir / "deployments.json"

    @property
    def audit_dir(self) -> Path:
        return self.state_dir

    @property
    def live_state_file(self) -> Path:
        if self.backend.path:
            return Path(self.backend.path).expanduser()
        return self.state_dir / "live.json"

    @classmethod
    def find_config(cls) -> Optional[Path]:
        """Find the settings file, or None when there is none."""
        env_path = os.environ.get("STATECRAFT_CONFIG")
        if env_path:
            return Path(env_path).expanduser()

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.cwd() / DEFAULT_BASE_DIR / CONFIG_FILE_NAME,
            Path.home() / ".config" / "statecraft" / CONFIG_FILE_NAME,
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Settings":
        """
        Load settings from YAML, then apply environment overrides.

        Raises:
            SettingsError: The file is not valid YAML or not a mapping
            FileNotFoundError: An explicitly named file does not exist
        """
        path = Path(config_path).expanduser() if config_path else cls.find_config()
        data: dict[str, Any] = {}
        if path is not None:
            if not path.exists():
                raise FileNotFoundError(f"Settings file not found: {path}")
            with open(path, encoding="utf-8") as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise SettingsError(f"Invalid YAML in {path}: {e}") from e
            if not isinstance(data, dict):
                raise SettingsError(f"Settings file {path} must contain a mapping")
            logger.debug(f"Loaded settings from {path}")

        settings = cls.from_dict(data, config_path=path)
        settings.apply_env()
        return settings

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Optional[Path] = None) -> "Settings":
        backend_data = data.get("backend") or {}
        if not isinstance(backend_data, dict):
            raise SettingsError("backend must be a mapping")
        known = set(BackendSettings.__dataclass_fields__)
        unknown = set(backend_data) - known
        if unknown:
            logger.warning(f"Ignoring unknown backend settings: {', '.join(sorted(unknown))}")
        backend = BackendSettings(**{k: v for k, v in backend_data.items() if k in known})

        try:
            watch_interval = float(data.get("watch_interval", DEFAULT_WATCH_INTERVAL))
        except (TypeError, ValueError) as e:
            raise SettingsError(f"watch_interval must be a number: {e}") from e
        if watch_interval <= 0:
            raise SettingsError("watch_interval must be positive")

        base_dir = Path(str(data.get("base_dir") or DEFAULT_BASE_DIR)).expanduser()
        if config_path is not None and not base_dir.is_absolute() and "base_dir" in data:
            # Relative base_dir in a file is relative to that file
            base_dir = Path(config_path).parent / base_dir

        return cls(
            base_dir=base_dir,
            snapshot_prefix=str(data.get("snapshot_prefix") or "snapshot"),
            watch_interval=watch_interval,
            backend=backend,
            config_path=config_path,
        )

    def apply_env(self) -> None:
        """Apply STATECRAFT_* environment overrides in place."""
        home = os.environ.get("STATECRAFT_HOME")
        if home:
            self.base_dir = Path(home).expanduser()
        backend_type = os.environ.get("STATECRAFT_BACKEND")
        if backend_type:
            self.backend.type = backend_type
        endpoint = os.environ.get("STATECRAFT_ENDPOINT")
        if endpoint:
            self.backend.endpoint = endpoint
        org_id = os.environ.get("STATECRAFT_ORG_ID")
        if org_id:
            self.backend.org_id = org_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_dir": str(self.base_dir),
            "snapshot_prefix": self.snapshot_prefix,
            "watch_interval": self.watch_interval,
            "backend": {
                "type": self.backend.type,
                "path": self.backend.path,
                "endpoint": self.backend.endpoint,
                "org_id": self.backend.org_id,
                "token_env": self.backend.token_env,
                "timeout": self.backend.timeout,
                "retries": self.backend.retries,
            },
            "config_path": str(self.config_path) if self.config_path else None,
        }
