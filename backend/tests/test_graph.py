"""Tests for flow definition validation and the parsed graph."""

import pytest

from campaign.graph import (
    ActionNode,
    ConditionNode,
    DelayNode,
    FlowGraph,
    StartNode,
    delay_duration,
    validate_flow,
)
from core.exceptions import FlowValidationError


def _flow(nodes, edges=()):
    return {"nodes": list(nodes), "edges": list(edges)}


START = {"id": "s", "type": "start"}
END = {"id": "e", "type": "end"}


@pytest.mark.unit
class TestValidateFlow:
    def test_valid_linear_flow(self, linear_definition):
        result = validate_flow(linear_definition)
        assert result.valid is True
        assert result.error is None
        assert result.warnings == []

    def test_not_an_object(self):
        assert validate_flow([]).valid is False

    def test_no_nodes(self):
        result = validate_flow({"nodes": [], "edges": []})
        assert result.valid is False
        assert "at least one node" in result.error

    def test_node_without_type(self):
        result = validate_flow(_flow([{"id": "s"}]))
        assert result.error == "Each node must have id and type"

    def test_unknown_node_type(self):
        result = validate_flow(_flow([START, {"id": "x", "type": "webhook"}]))
        assert result.valid is False
        assert "unknown type 'webhook'" in result.error

    def test_duplicate_node_id(self):
        result = validate_flow(_flow([START, {"id": "s", "type": "end"}]))
        assert "Duplicate node id" in result.error

    def test_edge_to_missing_node(self):
        result = validate_flow(_flow([START], [{"source": "s", "target": "ghost"}]))
        assert result.valid is False
        assert "does not exist" in result.error

    def test_invalid_branch_label(self):
        result = validate_flow(_flow([START, END], [{"source": "s", "target": "e", "branch": "maybe"}]))
        assert "invalid branch" in result.error

    def test_missing_start_node(self):
        result = validate_flow(_flow([END]))
        assert result.error == "Flow must have a start node"

    def test_extra_start_nodes_only_warn(self):
        result = validate_flow(_flow([START, {"id": "s2", "type": "start"}, END], [{"source": "s", "target": "e"}]))
        assert result.valid is True
        assert any("2 start nodes" in w for w in result.warnings)

    @pytest.mark.parametrize("amount", [0, -1, 1.5, "2", True, None])
    def test_delay_needs_positive_integer_amount(self, amount):
        delay = {"id": "d", "type": "delay", "data": {"amount": amount, "unit": "hours"}}
        result = validate_flow(_flow([START, delay]))
        assert result.valid is False
        assert "positive duration" in result.error

    def test_delay_unknown_unit(self):
        delay = {"id": "d", "type": "delay", "data": {"amount": 2, "unit": "fortnights"}}
        assert "unknown unit" in validate_flow(_flow([START, delay])).error

    def test_condition_unknown_predicate(self):
        cond = {"id": "c", "type": "condition", "data": {"predicateType": "opened_twice"}}
        result = validate_flow(_flow([START, cond]))
        assert result.valid is False
        assert "unrecognized predicate" in result.error

    def test_condition_missing_branch_labels_warn(self):
        cond = {"id": "c", "type": "condition", "data": {"predicateType": "action_clicked"}}
        result = validate_flow(_flow([START, cond, END], [
            {"source": "s", "target": "c"},
            {"source": "c", "target": "e", "branch": "true"},
        ]))
        assert result.valid is True
        assert result.warnings == ["Condition node c has no 'false' edge; the fallback edge will be used"]

    def test_action_needs_content(self):
        action = {"id": "a", "type": "action", "data": {"channel": "email", "template": "  "}}
        result = validate_flow(_flow([START, action]))
        assert "must reference message content" in result.error

    def test_two_default_edges(self):
        result = validate_flow(_flow([START, END, {"id": "e2", "type": "end"}], [
            {"source": "s", "target": "e"},
            {"source": "s", "target": "e2"},
        ]))
        assert "more than one default outgoing edge" in result.error

    @pytest.mark.parametrize("node_id", [["a"], {"a": 1}, 7])
    def test_node_id_must_be_a_string(self, node_id):
        result = validate_flow(_flow([{"id": node_id, "type": "start"}]))
        assert result.valid is False
        assert "must be a string" in result.error

    def test_edge_endpoints_must_be_strings(self):
        result = validate_flow(_flow([START, END], [{"source": ["s"], "target": "e"}]))
        assert result.valid is False
        assert "string node ids" in result.error

    def test_node_data_must_be_an_object(self):
        delay = {"id": "d", "type": "delay", "data": "2h"}
        result = validate_flow(_flow([START, delay]))
        assert result.valid is False
        assert result.error == "Node d data must be an object"

    def test_unhashable_type_and_branch(self):
        typed = validate_flow(_flow([{"id": "s", "type": ["start"]}]))
        branched = validate_flow(_flow([START, END], [{"source": "s", "target": "e", "branch": ["true"]}]))
        assert "unknown type" in typed.error
        assert "invalid branch" in branched.error

    def test_unhashable_unit_and_predicate(self):
        delay = {"id": "d", "type": "delay", "data": {"amount": 1, "unit": ["days"]}}
        cond = {"id": "c", "type": "condition", "data": {"predicateType": {"x": 1}}}
        assert "unknown unit" in validate_flow(_flow([START, delay])).error
        assert "unrecognized predicate" in validate_flow(_flow([START, cond])).error

    def test_action_fields_must_parse(self):
        action = {"id": "a", "type": "action", "data": {"subject": 42}}
        result = validate_flow(_flow([START, action], [{"source": "s", "target": "a"}]))
        assert result.valid is False
        assert result.error.startswith("Node a is malformed")
        assert "subject" in result.error

    def test_condition_params_must_be_an_object(self):
        cond = {"id": "c", "type": "condition", "data": {"predicateType": "idle_since", "params": [3]}}
        result = validate_flow(_flow([START, cond], [{"source": "s", "target": "c"}]))
        assert result.valid is False
        assert "params" in result.error

    def test_to_dict(self):
        assert validate_flow(_flow([END])).to_dict() == {
            "valid": False,
            "error": "Flow must have a start node",
            "warnings": [],
        }


@pytest.mark.unit
class TestFlowGraph:
    def test_parses_node_variants(self, welcome_definition):
        graph = FlowGraph.from_definition(welcome_definition)
        assert isinstance(graph.start_node, StartNode)
        assert isinstance(graph.node("welcome"), ActionNode)
        assert isinstance(graph.node("wait"), DelayNode)
        assert isinstance(graph.node("opened"), ConditionNode)
        assert graph.node("opened").data.predicate_type == "action_opened"
        assert [n.id for n in graph.nodes][:2] == ["start", "welcome"]

    def test_invalid_definition_raises(self):
        with pytest.raises(FlowValidationError) as exc_info:
            FlowGraph.from_definition(_flow([END]))
        assert exc_info.value.status_code == 422

    def test_unknown_node_lookup(self, linear_definition):
        assert FlowGraph.from_definition(linear_definition).node("nope") is None

    def test_default_target(self, linear_definition):
        graph = FlowGraph.from_definition(linear_definition)
        assert graph.default_target("start") == "welcome"
        assert graph.default_target("end") is None

    def test_branch_targets(self, welcome_definition):
        graph = FlowGraph.from_definition(welcome_definition)
        assert graph.branch_target("opened", True) == "end"
        assert graph.branch_target("opened", False) == "reminder"

    def test_missing_branch_falls_back_to_default_edge(self):
        cond = {"id": "c", "type": "condition", "data": {"predicateType": "action_opened"}}
        graph = FlowGraph.from_definition(_flow([START, cond, END, {"id": "x", "type": "end"}], [
            {"source": "s", "target": "c"},
            {"source": "c", "target": "x", "branch": "true"},
            {"source": "c", "target": "e"},
        ]))
        assert graph.branch_target("c", False) == "e"
        assert graph.branch_target("c", True) == "x"

    def test_missing_branch_falls_back_to_first_edge(self):
        cond = {"id": "c", "type": "condition", "data": {"predicateType": "action_opened"}}
        graph = FlowGraph.from_definition(_flow([START, cond, END], [
            {"source": "s", "target": "c"},
            {"source": "c", "target": "e", "branch": "true"},
        ]))
        assert graph.branch_target("c", False) == "e"

    def test_condition_without_edges_has_no_target(self):
        cond = {"id": "c", "type": "condition", "data": {"predicateType": "idle_since"}}
        graph = FlowGraph.from_definition(_flow([START, cond], [{"source": "s", "target": "c"}]))
        assert graph.branch_target("c", True) is None

    def test_action_template_ref_keeps_extra_fields(self):
        action = {
            "id": "a",
            "type": "action",
            "data": {"template": "welcome", "subject": "Hi", "campaign_tag": "spring"},
        }
        graph = FlowGraph.from_definition(_flow([START, action], [{"source": "s", "target": "a"}]))
        assert graph.node("a").data.template_ref() == {
            "template": "welcome",
            "subject": "Hi",
            "channel": "email",
            "campaign_tag": "spring",
        }


@pytest.mark.unit
class TestDelayDuration:
    def test_two_hours(self):
        assert delay_duration({"amount": 2, "unit": "hours"}).total_seconds() * 1000 == 7_200_000

    def test_one_week(self):
        assert delay_duration({"amount": 1, "unit": "weeks"}).total_seconds() * 1000 == 604_800_000

    def test_minutes_and_days(self):
        assert delay_duration({"amount": 15, "unit": "minutes"}).total_seconds() == 900
        assert delay_duration({"amount": 3, "unit": "days"}).total_seconds() == 259_200
