"""Tests for settings loading."""
from pathlib import Path

import pytest

from mcp_stateset.config.settings import Settings, SettingsError


class TestSettingsLoad:
    """Tests for YAML and environment loading."""

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        """Test defaults apply when no settings file exists."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        settings = Settings.load()

        assert settings.base_dir == Path(".stateset")
        assert settings.snapshots_dir == Path(".stateset/snapshots")
        assert settings.deployments_file == Path(".stateset/state/deployments.json")
        assert settings.backend.type == "local"
        assert settings.config_path is None

    def test_yaml_file(self, tmp_path):
        """Test loading every key from a YAML file."""
        path = tmp_path / "statecraft.yaml"
        path.write_text(
            "base_dir: data\n"
            "snapshot_prefix: snap\n"
            "watch_interval: 2.5\n"
            "backend:\n"
            "  type: http\n"
            "  endpoint: https://state.example.com\n"
            "  org_id: acme\n"
            "  retries: 5\n"
        )
        settings = Settings.load(str(path))

        assert settings.base_dir == tmp_path / "data"
        assert settings.snapshot_prefix == "snap"
        assert settings.watch_interval == 2.5
        assert settings.backend.endpoint == "https://state.example.com"
        assert settings.backend.retries == 5
        assert settings.to_dict()["backend"]["org_id"] == "acme"

    def test_found_in_working_directory(self, tmp_path, monkeypatch):
        """Test statecraft.yaml is found in the working directory."""
        (tmp_path / "statecraft.yaml").write_text("snapshot_prefix: found\n")
        monkeypatch.chdir(tmp_path)
        assert Settings.load().snapshot_prefix == "found"

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Test environment variables override the file."""
        path = tmp_path / "statecraft.yaml"
        path.write_text("backend:\n  type: local\n")
        monkeypatch.setenv("STATECRAFT_HOME", str(tmp_path / "home"))
        monkeypatch.setenv("STATECRAFT_BACKEND", "http")
        monkeypatch.setenv("STATECRAFT_ENDPOINT", "https://x")
        monkeypatch.setenv("STATECRAFT_ORG_ID", "org-9")

        settings = Settings.load(str(path))
        assert settings.base_dir == tmp_path / "home"
        assert settings.backend.type == "http"
        assert settings.backend.endpoint == "https://x"
        assert settings.backend.org_id == "org-9"

    def test_config_env_var(self, tmp_path, monkeypatch):
        """Test STATECRAFT_CONFIG points at the settings file."""
        path = tmp_path / "custom.yaml"
        path.write_text("watch_interval: 9\n")
        monkeypatch.setenv("STATECRAFT_CONFIG", str(path))
        assert Settings.load().watch_interval == 9

    def test_missing_explicit_file(self, tmp_path):
        """Test an explicit path that does not exist."""
        with pytest.raises(FileNotFoundError):
            Settings.load(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        """Test malformed YAML raises SettingsError."""
        path = tmp_path / "statecraft.yaml"
        path.write_text("backend: [unclosed\n")
        with pytest.raises(SettingsError):
            Settings.load(str(path))

    def test_non_mapping(self, tmp_path):
        """Test a YAML list is rejected."""
        path = tmp_path / "statecraft.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(SettingsError):
            Settings.load(str(path))

    @pytest.mark.parametrize("value", ["0", "-1", "soon"])
    def test_invalid_watch_interval(self, tmp_path, value):
        """Test non-positive or non-numeric watch intervals."""
        path = tmp_path / "statecraft.yaml"
        path.write_text(f"watch_interval: {value}\n")
        with pytest.raises(SettingsError):
            Settings.load(str(path))

    def test_unknown_backend_keys_ignored(self, tmp_path):
        """Unknown backend keys are ignored."""
        settings = Settings.from_dict({"backend": {"type": "local", "colour": "blue"}})
        assert settings.backend.type == "local"

    def test_local_path_override(self):
        """Backend path overrides the live state file."""
        settings = Settings.from_dict({"backend": {"path": "/srv/live.json"}})
        assert settings.live_state_file == Path("/srv/live.json")

    def test_token_from_env(self, monkeypatch):
        """Token is read from the configured variable."""
        settings = Settings.from_dict({"backend": {"token_env": "MY_TOKEN"}})
        monkeypatch.setenv("MY_TOKEN", "abc")
        assert settings.backend.get_token() == "abc"
