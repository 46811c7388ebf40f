"""Tests for decision reports."""

from __future__ import annotations

import json

from gatekeeper.core import Decision, EffectResult
from gatekeeper.report import DecisionReport


class TestDecisionReport:
    """Tests for DecisionReport."""

    def test_to_dict(self, rbac_enforcer):
        """Test the dictionary form of an allowed decision."""
        report = DecisionReport(rbac_enforcer.decide("alice", "data2", "read"))
        data = report.to_dict()

        assert data["request"] == ["alice", "data2", "read"]
        assert data["allowed"] is True
        assert data["result"] == "allow"
        assert data["matched_rule"] == ["data2_admin", "data2", "read"]
        assert data["explain"][-1] == "decision: allow"

    def test_to_json_denied(self, rbac_enforcer):
        """Test the JSON form of a denied decision."""
        report = DecisionReport(rbac_enforcer.decide("bob", "data1", "read"))
        data = json.loads(report.to_json())

        assert data["allowed"] is False
        assert data["matched_rule"] is None

    def test_str_lists_rows(self, rbac_enforcer):
        """Test the console rendering."""
        decision = rbac_enforcer.decide("alice", "data2", "read")
        text = str(DecisionReport(decision, matcher=rbac_enforcer.model.matcher))

        assert "Gatekeeper Decision" in text
        assert "data2_admin" in text
        assert "ALLOW" in text
        assert "Decided by" in text

    def test_str_without_rows(self):
        """Test rendering a decision that evaluated no rows."""
        decision = Decision(False, EffectResult.DENY, ["decision: deny"], ("alice", "x", "y"))
        text = str(DecisionReport(decision))

        assert "No policy rows evaluated" in text
        assert "DENY" in text

    def test_error_rows(self):
        """Test that rows that failed to evaluate are flagged."""
        from gatekeeper.core import MatchOutcome

        outcome = MatchOutcome(0, ("alice", "data1", "read"), False, error="boom")
        decision = Decision(False, EffectResult.DENY, [], ("alice",), outcomes=[outcome])
        assert "error" in str(DecisionReport(decision))
