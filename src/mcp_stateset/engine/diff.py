"""Diff engine for comparing two bundles collection by collection.

Each entity is keyed by its identity and compared by its canonical encoding,
so key order inside an entity never counts as a change.
"""
from typing import Any

from ..bundle.canonical import canonicalize
from ..bundle.schema import COLLECTIONS, COLLECTION_LABELS, OrgExport
from .schema import DiffRow, DiffSummary

# Named fields tried after id/uuid, with the prefix that scopes them
NAMED_IDENTITY_FIELDS = (
    ("agent_name", "agent"),
    ("rule_name", "rule"),
    ("name", "name"),
)


def _is_key(value: Any) -> bool:
    # bool is an int subclass but never an identity
    return isinstance(value, str) or (isinstance(value, int) and not isinstance(value, bool))


def extract_entity_rows(value: Any) -> list[dict[str, Any]]:
    """Keep only the object entries of a collection."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def extract_entity_id(item: dict[str, Any], index: int) -> str:
    """
    Stable identity for an entity.

    First match wins: `id`, `uuid`, `agent:<agent_name>`, `rule:<rule_name>`,
    `name:<name>`, then `index:<position>`. Renaming an entity without a
    primary key therefore shows up as one removal plus one addition.
    """
    for key in ("id", "uuid"):
        if _is_key(item.get(key)):
            return str(item[key])
    for key, prefix in NAMED_IDENTITY_FIELDS:
        if isinstance(item.get(key), str):
            return f"{prefix}:{item[key]}"
    return f"index:{index}"


def _canonical_map(rows: list[dict[str, Any]]) -> dict[str, str]:
    return {extract_entity_id(row, i): canonicalize(row) for i, row in enumerate(rows)}


class DiffEngine:
    """Calculate per-collection differences between two bundles."""

    def diff_collection(self, name: str, before: list[Any], after: list[Any]) -> DiffRow:
        before_rows = extract_entity_rows(before)
        after_rows = extract_entity_rows(after)
        before_map = _canonical_map(before_rows)
        after_map = _canonical_map(after_rows)

        added = sum(1 for key in after_map if key not in before_map)
        removed = sum(1 for key in before_map if key not in after_map)
        changed = sum(
            1 for key, encoded in after_map.items()
            if key in before_map and before_map[key] != encoded
        )

        return DiffRow(
            collection=name,
            from_count=len(before_rows),
            to_count=len(after_rows),
            added=added,
            removed=removed,
            changed=changed,
        )

    def calculate(
        self,
        before: OrgExport,
        after: OrgExport,
        from_ref: str = "",
        to_ref: str = "",
    ) -> DiffSummary:
        """
        Diff two bundles.

        Args:
            before: Baseline bundle
            after: Bundle compared against the baseline
            from_ref: Label for the baseline (path or alias)
            to_ref: Label for the compared bundle

        Returns:
            DiffSummary with one row per collection in fixed order
        """
        rows = [
            self.diff_collection(name, before.collection(name), after.collection(name))
            for name in COLLECTIONS
        ]
        return DiffSummary(from_ref=from_ref, to_ref=to_ref, rows=rows)


def summarize_diff(summary: DiffSummary) -> str:
    """Human-readable table of a diff with totals."""
    header = f"{'Collection':<16} {'From':>6} {'To':>6} {'Added':>6} {'Removed':>8} {'Changed':>8}"
    lines = [
        f"Diff: {summary.from_ref or '(from)'} -> {summary.to_ref or '(to)'}",
        header,
        "-" * len(header),
    ]
    for row in summary.rows:
        lines.append(
            f"{COLLECTION_LABELS[row.collection]:<16} {row.from_count:>6} {row.to_count:>6} "
            f"{row.added:>6} {row.removed:>8} {row.changed:>8}"
        )

    totals = summary.totals()
    if summary.no_change:
        lines.append("No changes.")
    else:
        lines.append(
            f"Total: +{totals['added']} -{totals['removed']} ~{totals['changed']}"
        )
    return "\n".join(lines)
