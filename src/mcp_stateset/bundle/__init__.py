"""Bundle model, canonical encoding and the state-set directory codec."""
from .canonical import canonicalize, compute_checksum
from .schema import (
    COLLECTIONS,
    COLLECTION_LABELS,
    OrgExport,
    ImportResult,
    ImportFailure,
)
from .stateset_dir import (
    BUNDLE_FILE,
    CONFIG_FILE,
    RESOURCE_FILES,
    read_state_set_bundle,
    write_state_set_bundle,
    read_fingerprint,
    validate_state_set,
)

__all__ = [
    "canonicalize",
    "compute_checksum",
    "COLLECTIONS",
    "COLLECTION_LABELS",
    "OrgExport",
    "ImportResult",
    "ImportFailure",
    "BUNDLE_FILE",
    "CONFIG_FILE",
    "RESOURCE_FILES",
    "read_state_set_bundle",
    "write_state_set_bundle",
    "read_fingerprint",
    "validate_state_set",
]
