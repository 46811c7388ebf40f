"""Tests for the policy store."""

from __future__ import annotations

import json

import pytest

from gatekeeper.core import PolicyError
from gatekeeper.policy import PolicyStore, read_policy_document, rule_matches_filter


@pytest.fixture
def store():
    store = PolicyStore()
    store.load({
        "p": [
            ["alice", "data1", "read"],
            ["bob", "data2", "write"],
            ["alice", "data2", "read"],
        ],
    })
    return store


class TestPolicyStore:
    """Tests for PolicyStore."""

    def test_insertion_order(self, store):
        """Test that rules keep insertion order."""
        assert store.get("p") == [
            ("alice", "data1", "read"),
            ("bob", "data2", "write"),
            ("alice", "data2", "read"),
        ]

    def test_duplicate_rejected(self, store):
        """Test that duplicates are not stored twice."""
        assert not store.add("p", ["alice", "data1", "read"])
        assert store.count("p") == 3

    def test_rules_are_normalized(self):
        """Test that values are stringified and stripped."""
        store = PolicyStore()
        assert store.add("p", [" alice ", "data1", 7])
        assert store.has("p", ("alice", "data1", "7"))

    def test_invalid_rules(self):
        """Test that empty rules and bare strings are rejected."""
        store = PolicyStore()
        with pytest.raises(PolicyError):
            store.add("p", [])
        with pytest.raises(PolicyError):
            store.add("p", "alice")

    def test_add_many_all_or_nothing(self, store):
        """Test that a batch containing an existing rule adds nothing."""
        assert not store.add_many("p", [["carol", "data3", "read"], ["alice", "data1", "read"]])
        assert not store.has("p", ["carol", "data3", "read"])

        assert store.add_many("p", [["carol", "data3", "read"], ["dave", "data3", "read"]])
        assert store.count("p") == 5

    def test_remove(self, store):
        """Test removing single rules."""
        assert store.remove("p", ["bob", "data2", "write"])
        assert not store.remove("p", ["bob", "data2", "write"])
        assert store.count("p") == 2

    def test_remove_many_all_or_nothing(self, store):
        """Test that a batch with a missing rule removes nothing."""
        assert not store.remove_many("p", [["bob", "data2", "write"], ["nobody", "x", "y"]])
        assert store.count("p") == 3
        assert store.remove_many("p", [["bob", "data2", "write"], ["alice", "data2", "read"]])
        assert store.get("p") == [("alice", "data1", "read")]

    def test_filter_with_wildcard(self, store):
        """Test filtering with an empty value as a wildcard."""
        assert store.filter("p", 0, "alice") == [
            ("alice", "data1", "read"),
            ("alice", "data2", "read"),
        ]
        assert store.filter("p", 0, "", "data2") == [
            ("bob", "data2", "write"),
            ("alice", "data2", "read"),
        ]
        assert store.filter("p", 2, "read", "extra") == []

    def test_remove_filtered(self, store):
        """Test removing by filter."""
        removed = store.remove_filtered("p", 1, "data2")
        assert removed == [("bob", "data2", "write"), ("alice", "data2", "read")]
        assert store.get("p") == [("alice", "data1", "read")]
        assert store.remove_filtered("p", 0) == []

    def test_update_in_place(self, store):
        """Test that updates keep the rule position."""
        assert store.update("p", ["bob", "data2", "write"], ["bob", "data2", "read"])
        assert store.get("p")[1] == ("bob", "data2", "read")

    def test_update_preconditions(self, store):
        """Test that the old rule must exist and the new one must not."""
        assert not store.update("p", ["nobody", "x", "y"], ["carol", "x", "y"])
        assert not store.update("p", ["bob", "data2", "write"], ["alice", "data1", "read"])

    def test_update_many_length_mismatch(self, store):
        """Test that mismatched update batches are rejected."""
        with pytest.raises(PolicyError):
            store.update_many("p", [["bob", "data2", "write"]], [])

    def test_field_values(self, store):
        """Test distinct field values in first-seen order."""
        assert store.field_values("p", 0) == ["alice", "bob"]
        assert store.field_values("p", 1) == ["data1", "data2"]

    def test_snapshot_tuple_unchanged_by_writes(self, store):
        """Test that a held rule tuple is not mutated by later writes."""
        snapshot = store.rules("p")
        store.add("p", ["carol", "data3", "read"])
        store.remove("p", ["alice", "data1", "read"])
        assert len(snapshot) == 3
        assert snapshot[0] == ("alice", "data1", "read")

    def test_clear(self, store):
        """Test clearing every type."""
        store.clear()
        assert store.count() == 0
        assert "p" not in store

    def test_replace(self, store):
        """Test that replace swaps in the new contents and empties absent types."""
        store.replace({
            "p2": [["carol", "data3", "read"], ["carol", "data3", "read"]],
            "g": [["carol", "admin"]],
        })

        assert "p" not in store
        assert store.get("p2") == [("carol", "data3", "read")]
        assert store.has("g", ["carol", "admin"])
        assert not store.has("p", ["alice", "data1", "read"])
        assert store.count() == 2

    def test_replace_keeps_held_snapshot(self, store):
        """Test that a held rule tuple survives a replace unchanged."""
        snapshot = store.rules("p")
        store.replace({"p": [["dave", "data4", "write"]]})

        assert len(snapshot) == 3
        assert store.rules("p") == (("dave", "data4", "write"),)

    def test_replace_is_all_or_nothing(self, store):
        """Test that an invalid rule leaves the store untouched."""
        with pytest.raises(PolicyError):
            store.replace({"p": [["dave", "data4", "write"], "not-a-rule"]})
        assert store.count("p") == 3


class TestRuleFilter:
    """Tests for rule_matches_filter."""

    def test_offset(self):
        """Test matching from a field offset."""
        rule = ("alice", "data1", "read")
        assert rule_matches_filter(rule, 1, ["data1", "read"])
        assert not rule_matches_filter(rule, 1, ["data1", "write"])
        assert rule_matches_filter(rule, 0, ["", "", ""])


class TestReadPolicyDocument:
    """Tests for loading policy documents."""

    def test_yaml(self, tmp_path):
        """Test reading a YAML policy document."""
        path = tmp_path / "policy.yaml"
        path.write_text(
            "policies:\n"
            "  p:\n"
            "    - [alice, data1, read]\n"
            "grouping_policies:\n"
            "  g:\n"
            "    - [alice, admin]\n"
        )
        policies, grouping = read_policy_document(path)
        assert policies == {"p": [["alice", "data1", "read"]]}
        assert grouping == {"g": [["alice", "admin"]]}

    def test_json(self, tmp_path):
        """Test reading a JSON policy document without grouping rules."""
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"policies": {"p": [["bob", "data2", "write"]]}}))
        policies, grouping = read_policy_document(path)
        assert policies == {"p": [["bob", "data2", "write"]]}
        assert grouping == {}

    def test_malformed(self, tmp_path):
        """Test that malformed documents raise PolicyError."""
        path = tmp_path / "policy.yaml"
        path.write_text("policies:\n  p: alice\n")
        with pytest.raises(PolicyError):
            read_policy_document(path)

        with pytest.raises(PolicyError):
            read_policy_document(tmp_path / "missing.yaml")
