"""Persistence for snapshots and the deployment log."""
from .snapshots import SnapshotStore, SnapshotInfo, DEFAULT_SNAPSHOT_PREFIX
from .deployments import (
    DeploymentStore,
    JsonDeploymentStore,
    InMemoryDeploymentStore,
    MAX_DEPLOYMENTS,
)

__all__ = [
    "SnapshotStore",
    "SnapshotInfo",
    "DEFAULT_SNAPSHOT_PREFIX",
    "DeploymentStore",
    "JsonDeploymentStore",
    "InMemoryDeploymentStore",
    "MAX_DEPLOYMENTS",
]
