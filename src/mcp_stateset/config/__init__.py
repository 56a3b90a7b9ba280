"""Settings management."""
from .settings import Settings, BackendSettings, SettingsError

__all__ = ["Settings", "BackendSettings", "SettingsError"]
