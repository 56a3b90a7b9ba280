"""Diff, schedule parsing and the deployment state machine.

The orchestrator, sources and watch modules are imported directly; they
depend on the stores, which in turn depend on this package's schema.
"""
from .schema import (
    DiffRow,
    DiffSummary,
    Deployment,
    DeploymentMode,
    DeploymentStatus,
    PromotionOptions,
    PromotionOutcome,
    ALLOWED_TRANSITIONS,
)
from .diff import DiffEngine, extract_entity_id, summarize_diff
from .parser import parse_schedule

__all__ = [
    "DiffRow",
    "DiffSummary",
    "Deployment",
    "DeploymentMode",
    "DeploymentStatus",
    "PromotionOptions",
    "PromotionOutcome",
    "ALLOWED_TRANSITIONS",
    "DiffEngine",
    "extract_entity_id",
    "summarize_diff",
    "parse_schedule",
]
