"""Flow graph model: typed nodes, typed edges, and validation.

A flow definition is the JSON shape produced by the flow editor::

    {
        "nodes": [
            {"id": "1", "type": "start", "data": {}},
            {"id": "2", "type": "action", "data": {"subject": "Welcome"}},
            {"id": "3", "type": "delay", "data": {"amount": 2, "unit": "days"}},
            {"id": "4", "type": "condition",
             "data": {"predicateType": "action_opened", "params": {}}},
            {"id": "5", "type": "end", "data": {}}
        ],
        "edges": [
            {"source": "1", "target": "2"},
            {"source": "4", "target": "5", "branch": "true"},
            ...
        ]
    }

``validate_flow`` checks the raw dict and reports the first violation.
``FlowGraph.from_definition`` validates and then parses the nodes into a
closed set of variants (``StartNode``, ``ActionNode``, ``DelayNode``,
``ConditionNode``, ``EndNode``) discriminated on ``type``.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Annotated, Any, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.constants import DELAY_UNIT_SECONDS, Branch, DelayUnit, NodeType, PredicateType
from core.exceptions import FlowValidationError

logger = structlog.get_logger(__name__)


# ─── Node data ────────────────────────────────────────────────

class ActionData(BaseModel):
    """Message template reference carried by an action node."""

    model_config = ConfigDict(extra="allow", frozen=True)

    template: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    channel: str = "email"

    def template_ref(self) -> dict[str, Any]:
        """Reference handed to the delivery collaborator."""
        return self.model_dump(exclude_none=True)


class DelayData(BaseModel):
    """Duration of a delay node."""

    model_config = ConfigDict(frozen=True)

    amount: int
    unit: DelayUnit

    def to_timedelta(self) -> timedelta:
        return timedelta(seconds=self.amount * DELAY_UNIT_SECONDS[self.unit.value])


class ConditionData(BaseModel):
    """Predicate evaluated by a condition node."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    predicate_type: str = Field(alias="predicateType")
    params: dict[str, Any] = Field(default_factory=dict)


# ─── Node variants ────────────────────────────────────────────

class _NodeBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str


class StartNode(_NodeBase):
    type: Literal["start"] = "start"


class ActionNode(_NodeBase):
    type: Literal["action"] = "action"
    data: ActionData


class DelayNode(_NodeBase):
    type: Literal["delay"] = "delay"
    data: DelayData


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    data: ConditionData


class EndNode(_NodeBase):
    type: Literal["end"] = "end"


Node = Annotated[
    Union[StartNode, ActionNode, DelayNode, ConditionNode, EndNode],
    Field(discriminator="type"),
]

_node_adapter: TypeAdapter = TypeAdapter(Node)


class Edge(BaseModel):
    """Directed transition between two nodes.

    An edge without ``branch`` is the default (sequential) edge.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    source: str
    target: str
    branch: Optional[Branch] = None


def delay_duration(data: dict) -> timedelta:
    """Duration of a delay node's ``data`` dict."""
    return DelayData(**data).to_timedelta()


# ─── Validation ───────────────────────────────────────────────

@dataclass
class ValidationResult:
    """Outcome of ``validate_flow``."""

    valid: bool
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "error": self.error, "warnings": self.warnings}


_NODE_TYPES = {t.value for t in NodeType}
_PREDICATES = {p.value for p in PredicateType}
_UNITS = {u.value for u in DelayUnit}
_BRANCHES = {b.value for b in Branch}


def _fail(message: str, warnings: list[str]) -> ValidationResult:
    return ValidationResult(valid=False, error=message, warnings=warnings)


def _first_error(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"])
    return f"{location}: {error['msg']}" if location else error["msg"]


def _parse(definition: dict) -> tuple[list, list[Edge]]:
    """Parse nodes and edges, reporting the offending element.

    Raises:
        FlowValidationError: If a node or edge does not fit its model.
    """
    nodes = []
    for raw in definition["nodes"]:
        try:
            nodes.append(_node_adapter.validate_python(raw))
        except PydanticValidationError as e:
            raise FlowValidationError(f"Node {raw.get('id')} is malformed ({_first_error(e)})")
    edges = []
    for raw in definition.get("edges", []):
        try:
            edges.append(Edge.model_validate(raw))
        except PydanticValidationError as e:
            raise FlowValidationError(
                f"Edge {raw.get('source')} -> {raw.get('target')} is malformed ({_first_error(e)})"
            )
    return nodes, edges


def _is_id(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def validate_flow(definition: Any) -> ValidationResult:
    """Validate a raw flow definition.

    Returns the first violation found; never repairs the definition.
    More than one start node is reported as a warning, not a failure.
    A definition that passes also parses with ``FlowGraph.from_definition``.
    """
    warnings: list[str] = []

    if not isinstance(definition, dict):
        return _fail("Flow definition must be an object", warnings)

    nodes = definition.get("nodes")
    edges = definition.get("edges", [])
    if not isinstance(nodes, list) or not nodes:
        return _fail("Flow must have at least one node", warnings)
    if not isinstance(edges, list):
        return _fail("Flow edges must be a list", warnings)

    node_types: dict[str, str] = {}
    for node in nodes:
        if not isinstance(node, dict) or not node.get("id") or not node.get("type"):
            return _fail("Each node must have id and type", warnings)
        if not _is_id(node["id"]):
            return _fail(f"Node id {node['id']!r} must be a string", warnings)
        if not isinstance(node["type"], str) or node["type"] not in _NODE_TYPES:
            return _fail(f"Node {node['id']} has unknown type {node['type']!r}", warnings)
        if node.get("data") is not None and not isinstance(node["data"], dict):
            return _fail(f"Node {node['id']} data must be an object", warnings)
        if node["id"] in node_types:
            return _fail(f"Duplicate node id '{node['id']}'", warnings)
        node_types[node["id"]] = node["type"]

    for edge in edges:
        if not isinstance(edge, dict):
            return _fail("Each edge must be an object", warnings)
        source, target = edge.get("source"), edge.get("target")
        if not _is_id(source) or not _is_id(target):
            return _fail(f"Edge {source!r} -> {target!r} must connect string node ids", warnings)
        if source not in node_types or target not in node_types:
            return _fail(
                f"Edge {source!r} -> {target!r} references a node that does not exist",
                warnings,
            )
        branch = edge.get("branch")
        if branch is not None and (not isinstance(branch, str) or branch not in _BRANCHES):
            return _fail(f"Edge {source} -> {target} has invalid branch {branch!r}", warnings)

    start_ids = [nid for nid, ntype in node_types.items() if ntype == NodeType.START.value]
    if not start_ids:
        return _fail("Flow must have a start node", warnings)
    if len(start_ids) > 1:
        warnings.append(
            f"Flow has {len(start_ids)} start nodes; runs begin at '{start_ids[0]}'"
        )
    if any(e.get("target") == start_ids[0] for e in edges):
        warnings.append(f"Start node '{start_ids[0]}' has incoming edges")

    for node in nodes:
        data = node.get("data") or {}
        ntype = node["type"]

        if ntype == NodeType.DELAY.value:
            amount = data.get("amount")
            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                return _fail(f"Delay node {node['id']} must have a positive duration", warnings)
            unit = data.get("unit")
            if not isinstance(unit, str) or unit not in _UNITS:
                return _fail(
                    f"Delay node {node['id']} has unknown unit {unit!r}",
                    warnings,
                )

        elif ntype == NodeType.CONDITION.value:
            predicate = data.get("predicateType", data.get("predicate_type"))
            if not isinstance(predicate, str) or predicate not in _PREDICATES:
                return _fail(
                    f"Condition node {node['id']} has unrecognized predicate {predicate!r}",
                    warnings,
                )
            labels = {e.get("branch") for e in edges if e.get("source") == node["id"]}
            for label in (Branch.TRUE.value, Branch.FALSE.value):
                if label not in labels:
                    warnings.append(
                        f"Condition node {node['id']} has no '{label}' edge; "
                        "the fallback edge will be used"
                    )

        elif ntype == NodeType.ACTION.value:
            if not any(str(data.get(k) or "").strip() for k in ("template", "subject", "content")):
                return _fail(f"Action node {node['id']} must reference message content", warnings)

    for nid, ntype in node_types.items():
        if ntype == NodeType.END.value:
            continue
        defaults = [e for e in edges if e.get("source") == nid and e.get("branch") is None]
        if len(defaults) > 1:
            return _fail(f"Node {nid} has more than one default outgoing edge", warnings)

    try:
        _parse(definition)
    except FlowValidationError as e:
        return _fail(e.message, warnings)

    return ValidationResult(valid=True, warnings=warnings)


# ─── Parsed graph ─────────────────────────────────────────────

class FlowGraph:
    """Read-only, parsed view of a flow definition."""

    def __init__(self, nodes: list, edges: list[Edge], definition: dict):
        self._nodes: dict[str, Any] = {n.id: n for n in nodes}
        self._order = [n.id for n in nodes]
        self._edges = edges
        self._outgoing: dict[str, list[Edge]] = {}
        for edge in edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
        self.definition = definition

    @classmethod
    def from_definition(cls, definition: Any) -> "FlowGraph":
        """Validate and parse a raw definition.

        Raises:
            FlowValidationError: If the definition fails validation.
        """
        result = validate_flow(definition)
        if not result.valid:
            raise FlowValidationError(result.error, result.warnings)
        nodes, edges = _parse(definition)
        return cls(nodes, edges, definition)

    @property
    def start_node(self) -> StartNode:
        for node_id in self._order:
            node = self._nodes[node_id]
            if isinstance(node, StartNode):
                return node
        raise FlowValidationError("Flow must have a start node")

    @property
    def nodes(self) -> list:
        return [self._nodes[nid] for nid in self._order]

    def node(self, node_id: str):
        return self._nodes.get(node_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, []))

    def default_target(self, node_id: str) -> Optional[str]:
        """Target of the node's default (unlabeled) edge, if any."""
        for edge in self._outgoing.get(node_id, []):
            if edge.branch is None:
                return edge.target
        return None

    def branch_target(self, node_id: str, result: bool) -> Optional[str]:
        """Target for a condition result.

        Falls back to the default edge, then to the first outgoing edge in
        declaration order, when the labeled edge is missing.
        """
        label = Branch.TRUE if result else Branch.FALSE
        edges = self._outgoing.get(node_id, [])
        for edge in edges:
            if edge.branch == label:
                return edge.target

        fallback = self.default_target(node_id)
        if fallback is None and edges:
            fallback = edges[0].target
        if fallback is not None:
            logger.warning(
                "Condition branch missing, using fallback edge",
                node_id=node_id,
                branch=label.value,
                target=fallback,
            )
        return fallback
