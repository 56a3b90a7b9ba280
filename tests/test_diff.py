"""Tests for the Diff Engine."""
import pytest

from mcp_stateset.bundle.schema import COLLECTIONS
from mcp_stateset.engine.diff import (
    DiffEngine,
    extract_entity_id,
    extract_entity_rows,
    summarize_diff,
)

from conftest import make_bundle


@pytest.fixture
def engine():
    return DiffEngine()


class TestEntityIdentity:
    """Tests for identity extraction."""

    def test_id_first(self):
        """Test id wins over every other field."""
        assert extract_entity_id({"id": "a", "uuid": "u", "name": "n"}, 0) == "a"

    def test_integer_id(self):
        """Test integer ids are used as identity."""
        assert extract_entity_id({"id": 7}, 0) == "7"

    def test_boolean_id_ignored(self):
        """Test boolean ids fall through to the next field."""
        assert extract_entity_id({"id": True, "name": "n"}, 0) == "name:n"

    def test_uuid_second(self):
        """Test uuid is used when id is missing."""
        assert extract_entity_id({"uuid": "u", "name": "n"}, 0) == "u"

    def test_named_fields_with_prefix(self):
        """Test named fields map to typed identities."""
        assert extract_entity_id({"agent_name": "bot", "name": "n"}, 0) == "agent:bot"
        assert extract_entity_id({"rule_name": "r1"}, 0) == "rule:r1"
        assert extract_entity_id({"name": "n"}, 0) == "name:n"

    def test_positional_fallback(self):
        """Test rows with no identity fall back to their index."""
        assert extract_entity_id({"value": 1}, 3) == "index:3"

    def test_non_object_rows_dropped(self):
        """Test non-object rows are dropped."""
        assert extract_entity_rows([{"id": 1}, "x", 3, None]) == [{"id": 1}]
        assert extract_entity_rows("not a list") == []


class TestDiffEngine:
    """Tests for per-collection diffs."""

    def test_end_to_end_agents(self, engine):
        """One changed, one added agent."""
        before = make_bundle(agents=[{"id": "1", "name": "x"}])
        after = make_bundle(agents=[{"id": "1", "name": "y"}, {"id": "2", "name": "z"}])

        row = engine.calculate(before, after).row("agents")
        assert row.to_dict() == {
            "collection": "agents",
            "from": 1,
            "to": 2,
            "added": 1,
            "removed": 0,
            "changed": 1,
        }

    def test_self_diff_is_zero(self, engine):
        """Test a bundle diffed with itself has no changes."""
        bundle = make_bundle(
            agents=[{"id": "1"}, {"name": "n"}],
            rules=[{"rule_name": "r", "body": {"b": 1, "a": 2}}],
            datasets=[{"value": 1}, {"value": 2}],
        )
        summary = engine.calculate(bundle, bundle)
        assert summary.no_change
        for row in summary.rows:
            assert (row.added, row.removed, row.changed) == (0, 0, 0)

    def test_symmetry(self, engine):
        """Test swapping sides swaps added and removed."""
        a = make_bundle(
            agents=[{"id": "1"}, {"id": "2"}],
            skills=[{"name": "s1"}],
            evals=[{"id": "e", "score": 1}],
        )
        b = make_bundle(
            agents=[{"id": "2"}, {"id": "3"}, {"id": "4"}],
            rules=[{"id": "r"}],
            evals=[{"id": "e", "score": 2}],
        )
        forward = engine.calculate(a, b)
        backward = engine.calculate(b, a)
        for f, r in zip(forward.rows, backward.rows):
            assert f.added == r.removed
            assert f.removed == r.added
            assert f.changed == r.changed

    def test_key_order_is_not_a_change(self, engine):
        """Test key order alone is not a change."""
        before = make_bundle(functions=[{"id": "f", "a": 1, "b": 2}])
        after = make_bundle(functions=[{"b": 2, "a": 1, "id": "f"}])
        assert engine.calculate(before, after).row("functions").changed == 0

    def test_rename_without_key_is_add_and_remove(self, engine):
        """Test a renamed keyless entity counts as added and removed."""
        before = make_bundle(skills=[{"name": "old"}])
        after = make_bundle(skills=[{"name": "new"}])
        row = engine.calculate(before, after).row("skills")
        assert (row.added, row.removed, row.changed) == (1, 1, 0)

    def test_non_object_entries_ignored(self, engine):
        """Test non-object entries do not count."""
        before = make_bundle(examples=["junk", {"id": "1"}])
        after = make_bundle(examples=[{"id": "1"}])
        row = engine.calculate(before, after).row("examples")
        assert row.from_count == 1
        assert not row.has_changes

    def test_rows_in_fixed_order(self, engine):
        """Test rows follow the collection order."""
        summary = engine.calculate(make_bundle(), make_bundle(), from_ref="a", to_ref="b")
        assert [r.collection for r in summary.rows] == list(COLLECTIONS)
        assert summary.to_dict()["from"] == "a"


class TestSummarizeDiff:
    """Tests for the text rendering."""

    def test_no_changes(self, engine):
        """Test the summary for identical bundles."""
        text = summarize_diff(engine.calculate(make_bundle(), make_bundle(), "a", "b"))
        assert text.splitlines()[0] == "Diff: a -> b"
        assert text.endswith("No changes.")
        assert "agent settings" in text

    def test_totals(self, engine):
        """Test the totals line."""
        before = make_bundle(agents=[{"id": "1", "v": 1}, {"id": "2"}])
        after = make_bundle(agents=[{"id": "1", "v": 2}, {"id": "3"}])
        text = summarize_diff(engine.calculate(before, after))
        assert text.endswith("Total: +1 -1 ~1")
