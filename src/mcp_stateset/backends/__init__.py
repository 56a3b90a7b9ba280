"""Live-state backends."""
from ..config.settings import Settings
from ..errors import BackendError
from .base import StateBackend, redact_secrets, redact_bundle
from .local import LocalStateBackend
from .http import HttpStateBackend

__all__ = [
    "StateBackend",
    "redact_secrets",
    "redact_bundle",
    "LocalStateBackend",
    "HttpStateBackend",
    "create_backend",
]

BACKEND_TYPES = ("local", "http")


def create_backend(settings: Settings) -> StateBackend:
    """Factory function to create the configured backend."""
    backend_type = (settings.backend.type or "").lower()
    if backend_type == "local":
        return LocalStateBackend(settings.live_state_file, org_id=settings.backend.org_id)
    if backend_type == "http":
        return HttpStateBackend(settings.backend)
    raise BackendError(
        f"Unknown backend type: {backend_type}. Expected one of: {', '.join(BACKEND_TYPES)}"
    )
