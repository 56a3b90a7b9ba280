"""Exception types for Statecraft.

Every error the core raises on purpose derives from StateSetError, so the CLI
and MCP layers can render them uniformly and map them to a non-zero exit.
Filesystem failures are left as the builtin OSError.
"""
from typing import Optional


class StateSetError(Exception):
    """Base exception for all Statecraft errors."""
    pass


class ReferenceResolutionError(StateSetError):
    """A human-supplied reference could not be resolved to one item."""

    def __init__(self, message: str, reference: str = "", kind: str = "snapshot"):
        self.reference = reference
        self.kind = kind
        super().__init__(message)


class NotFoundError(ReferenceResolutionError):
    """No snapshot or deployment matches the reference."""
    pass


class AmbiguousReferenceError(ReferenceResolutionError):
    """More than one snapshot or deployment matches the reference."""

    def __init__(
        self,
        message: str,
        reference: str = "",
        kind: str = "snapshot",
        candidates: Optional[list[str]] = None,
    ):
        super().__init__(message, reference=reference, kind=kind)
        self.candidates = candidates or []


class BundleFormatError(StateSetError):
    """Bundle JSON is unparseable or structurally invalid."""

    def __init__(self, message: str, path: str = "", issues: Optional[list[str]] = None):
        self.path = path
        self.issues = issues or []
        super().__init__(message)


class StateTransitionError(StateSetError):
    """An illegal deployment status change or a mode mismatch."""

    def __init__(
        self,
        message: str,
        deployment_id: str = "",
        current: str = "",
        attempted: str = "",
    ):
        self.deployment_id = deployment_id
        self.current = current
        self.attempted = attempted
        super().__init__(message)


class ImportFailureError(StateSetError):
    """Import reported per-entity failures and strict mode was requested."""

    def __init__(self, message: str, failures: Optional[list] = None):
        self.failures = failures or []
        super().__init__(message)


class ScheduleParseError(StateSetError):
    """A schedule expression is neither an alias, an offset nor ISO-8601."""
    pass


class WatchSourceError(StateSetError):
    """The watch source is missing or is not a directory."""
    pass


class StoreWriteError(StateSetError):
    """The deployment log could not be persisted."""
    pass


class BackendError(StateSetError):
    """The state backend failed or returned an unusable response."""
    pass
