"""
Tests for VariableStore and StepResult
"""

from workflow_engine.errors import ErrorKind, StepError
from workflow_engine.runtime_data import StepResult, StepStatus, VariableStore


class TestVariableStore:
    """Tests for the immutable variable store."""

    def test_set_returns_new_revision(self):
        """Test that set returns a new store."""
        store = VariableStore({"a": 1})
        updated = store.set("b", 2)

        assert dict(store) == {"a": 1}
        assert dict(updated) == {"a": 1, "b": 2}
        assert updated.revision == store.revision + 1

    def test_merge_writes_win(self):
        """Test that merged writes replace existing values."""
        store = VariableStore({"a": 1, "b": 1})
        merged = store.merge({"b": 2, "c": 3})

        assert merged.to_dict() == {"a": 1, "b": 2, "c": 3}
        assert store["b"] == 1

    def test_empty_merge_keeps_revision(self):
        """Test that an empty merge keeps the same store."""
        store = VariableStore({"a": 1})

        assert store.merge({}) is store

    def test_lookup_prefers_exact_key(self):
        """Test that exact keys win over dotted paths."""
        store = VariableStore({"a.b": "exact", "a": {"b": "nested"}})

        assert store.lookup("a.b") == "exact"

    def test_lookup_paths(self):
        """Test dotted lookups through dicts and lists."""
        store = VariableStore({"doc": {"pages": [{"n": 1}, {"n": 2}]}})

        assert store.lookup("doc.pages.1.n") == 2
        assert store.lookup("doc.pages.-1.n") == 2
        assert store.lookup("doc.pages.5.n") is None
        assert store.lookup("doc.title") is None
        assert store.lookup("missing.path") is None

    def test_mapping_protocol(self):
        """Test the read-only mapping interface."""
        store = VariableStore({"x": 1, "y": 2})

        assert len(store) == 2
        assert sorted(store) == ["x", "y"]
        assert "x" in store
        assert store.get("z") is None


class TestStepResult:
    """Tests for StepResult."""

    def test_completed_and_failed(self):
        """Test building completed and failed results."""
        ok = StepResult.completed("s1", "out", writes={"v": "out"})
        error = StepError(ErrorKind.COLLABORATOR_ERROR, "boom", step_id="s2")
        bad = StepResult.failed("s2", error)

        assert ok.succeeded and ok.status == StepStatus.COMPLETED
        assert not bad.succeeded and bad.error.code == "COLLABORATOR_ERROR"
        assert str(bad.error) == "boom"

    def test_flatten_is_depth_first(self):
        """Test flattening nested results depth-first."""
        leaf = StepResult.completed("leaf")
        inner = StepResult.completed("inner", children={"leaf": leaf})
        outer = StepResult.completed("outer", children={"inner": inner, "other": StepResult.completed("other")})

        assert list(outer.flatten()) == ["inner", "leaf", "other"]

    def test_to_dict(self):
        """Test step result serialization."""
        result = StepResult.completed("s1", 3, step_type="tool", retry_count=1)
        data = result.to_dict()

        assert data["status"] == "completed"
        assert data["output"] == 3
        assert data["step_type"] == "tool"
        assert data["retry_count"] == 1
        assert data["error"] is None
