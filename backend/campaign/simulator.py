"""Journey simulation: dry-run a flow for a hypothetical subject.

Walks the graph with the same transition rules as the engine but without
delivery or persistence. Delays advance a virtual clock instead of
suspending, and the subject's behaviour flags turn into synthetic
engagement events after each action, so condition nodes take the branch
the real subject would.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field

from campaign.conditions import evaluate_condition
from campaign.graph import (
    ActionNode,
    ConditionNode,
    DelayNode,
    EndNode,
    FlowGraph,
    StartNode,
    validate_flow,
)
from core.constants import EventType, PredicateType
from core.utils import utcnow


class SubjectBehavior(BaseModel):
    """How the simulated subject reacts to each action."""

    email_opened: bool = False
    email_clicked: bool = False
    purchase_made: bool = False
    idle_days: int = Field(default=0, ge=0)


@dataclass
class _SimEvent:
    type: str
    timestamp: datetime


@dataclass
class SimulationStep:
    index: int
    node_id: str
    node_type: str
    description: str
    at: str
    delay_seconds: Optional[int] = None
    condition_result: Optional[bool] = None
    next_node_id: Optional[str] = None


@dataclass
class SimulationResult:
    success: bool
    outcome: str
    steps: list[SimulationStep] = field(default_factory=list)
    total_delay_seconds: int = 0
    actions: int = 0
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _describe(node) -> str:
    if isinstance(node, StartNode):
        return "Journey starts"
    if isinstance(node, ActionNode):
        ref = node.data
        return f"Send {ref.channel}: {ref.subject or ref.template or 'message'}"
    if isinstance(node, DelayNode):
        return f"Wait {node.data.amount} {node.data.unit.value}"
    if isinstance(node, ConditionNode):
        return f"Check {node.data.predicate_type}"
    return "Journey ends"


def simulate_journey(
    definition: dict,
    behavior: Optional[SubjectBehavior] = None,
    start_at: Optional[datetime] = None,
    max_steps: int = 100,
    lookback_days: int = 30,
) -> SimulationResult:
    """Simulate one subject's path through a flow."""
    behavior = behavior or SubjectBehavior()
    check = validate_flow(definition)
    if not check.valid:
        return SimulationResult(success=False, outcome="invalid", error=check.error, warnings=check.warnings)

    graph = FlowGraph.from_definition(definition)
    clock = start_at or utcnow()
    history: list[_SimEvent] = []
    result = SimulationResult(success=True, outcome="completed", warnings=check.warnings)
    node_id: Optional[str] = graph.start_node.id

    while node_id is not None:
        if len(result.steps) >= max_steps:
            result.success = False
            result.outcome = "loop_guard"
            result.error = f"Step limit of {max_steps} reached: possible infinite loop"
            return result

        node = graph.node(node_id)
        step = SimulationStep(
            index=len(result.steps) + 1,
            node_id=node.id,
            node_type=node.type,
            description=_describe(node),
            at=clock.isoformat(),
        )
        result.steps.append(step)

        if isinstance(node, EndNode):
            break

        if isinstance(node, ActionNode):
            result.actions += 1
            history.append(_SimEvent(EventType.ACTION_DISPATCHED.value, clock))
            if behavior.email_opened:
                history.append(_SimEvent(EventType.ACTION_OPENED.value, clock))
            if behavior.email_clicked:
                history.append(_SimEvent(EventType.ACTION_CLICKED.value, clock))
            if behavior.purchase_made:
                history.append(_SimEvent(EventType.CONVERSION.value, clock))
            step.next_node_id = graph.default_target(node.id)

        elif isinstance(node, DelayNode):
            duration = node.data.to_timedelta()
            step.delay_seconds = int(duration.total_seconds())
            result.total_delay_seconds += step.delay_seconds
            clock += duration
            step.next_node_id = graph.default_target(node.id)

        elif isinstance(node, ConditionNode):
            window = [e for e in history if e.timestamp >= clock - timedelta(days=lookback_days)]
            evaluated_at = clock
            if node.data.predicate_type == PredicateType.IDLE_SINCE.value:
                evaluated_at = clock + timedelta(days=behavior.idle_days)
            outcome = evaluate_condition(node.data.predicate_type, node.data.params, window, evaluated_at)
            history.append(_SimEvent(EventType.CONDITION_EVALUATED.value, clock))
            step.condition_result = outcome
            step.next_node_id = graph.branch_target(node.id, outcome)

        else:
            step.next_node_id = graph.default_target(node.id)

        node_id = step.next_node_id

    return result
