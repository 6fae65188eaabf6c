"""Campaign Execution Engine: the per-run state machine.

A run's state is the node it sits on (``Run.current_node_id``). The engine
processes one node at a time and then either moves the run along an edge and
continues, or stops:

- ``start``      append ``started``, follow the default edge
- ``action``     dispatch through the delivery provider, append
                 ``action_dispatched``, follow the default edge on success
- ``delay``      persist a deferred task for the next node and suspend
- ``condition``  evaluate the predicate over recent events, append
                 ``condition_evaluated``, follow the matching branch
- ``end``        append ``completed`` and finish the run

A node without a resolvable outgoing edge completes the run implicitly.

Every move is a conditional update keyed on the node the run was read at,
so two workers processing the same run can never both advance it; the
loser gets a ``noop`` result. Nothing raises across the engine boundary:
callers get a ``RunResult`` and decide about retries.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from campaign.conditions import evaluate_condition
from campaign.event_log import EventLog
from campaign.graph import (
    ActionNode,
    ConditionNode,
    DelayNode,
    EndNode,
    FlowGraph,
    StartNode,
)
from campaign.stores import DeferredTaskStore, RunStore
from core.constants import EventType, RunOutcome, RunStatus
from core.exceptions import DeliveryError, FlowValidationError, StructuralError
from core.logging_config import bound_run_context
from core.utils import utcnow
from db.models import DeferredTask, Run
from delivery.base import DeliveryProvider, DispatchResult
from notifications.publisher import NotificationPublisher, NullPublisher

logger = structlog.get_logger(__name__)

LOOP_GUARD_MESSAGE = "possible infinite loop"


# ─── Results ──────────────────────────────────────────────────

@dataclass
class RunResult:
    """Outcome of one engine invocation for one run."""
    run_id: Optional[str]
    outcome: RunOutcome
    steps: int = 0
    node_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome in (RunOutcome.COMPLETED, RunOutcome.SUSPENDED, RunOutcome.NOOP)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "outcome": self.outcome.value,
            "steps": self.steps,
            "node_id": self.node_id,
            "error": self.error,
            "retryable": self.retryable,
        }


class _Step(str, Enum):
    ADVANCE = "advance"
    SUSPEND = "suspend"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass
class _Transition:
    step: _Step
    next_node_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


def _require_node(graph: FlowGraph, node_id: str):
    node = graph.node(node_id)
    if node is None:
        raise StructuralError(f"Node '{node_id}' not found in flow")
    return node


# ─── Engine ───────────────────────────────────────────────────

class CampaignEngine:
    """Walks runs through their flow graph.

    All collaborators are injected; ``clock`` returns naive UTC.
    """

    def __init__(
        self,
        runs: RunStore,
        deferred: DeferredTaskStore,
        events: EventLog,
        delivery: DeliveryProvider,
        publisher: Optional[NotificationPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
        max_steps: int = 100,
        lookback_days: int = 30,
    ):
        self.runs = runs
        self.deferred = deferred
        self.events = events
        self.delivery = delivery
        self.publisher = publisher or NullPublisher()
        self.clock = clock
        self.max_steps = max_steps
        self.lookback_days = lookback_days

        self._handlers = {
            StartNode: self._handle_start,
            ActionNode: self._handle_action,
            DelayNode: self._handle_delay,
            ConditionNode: self._handle_condition,
            EndNode: self._handle_end,
        }

    # ─── Entry points ─────────────────────────────────────────

    async def start_run(
        self,
        flow_id: str,
        definition: dict,
        subject_id: str,
        subject_context: Optional[dict] = None,
    ) -> RunResult:
        """Start (or continue) the subject's run of a flow.

        A subject has one run per flow. Calling this again for a run that
        is suspended on a delay, or already finished, is a no-op; for an
        active run left on a failed node it reprocesses that node.
        """
        try:
            graph = FlowGraph.from_definition(definition)
        except FlowValidationError as e:
            logger.warning("Flow rejected", flow_id=flow_id, error=e.message)
            return RunResult(run_id=None, outcome=RunOutcome.REJECTED, error=e.message)

        run, created = await self.runs.get_or_create(
            flow_id=flow_id,
            subject_id=subject_id,
            subject_context=subject_context or {},
            start_node_id=graph.start_node.id,
            now=self.clock(),
        )

        with bound_run_context(run_id=run.id, flow_id=flow_id, subject_id=subject_id):
            if not run.is_active:
                logger.info("Run already finished", status=run.status)
                return RunResult(run.id, RunOutcome.NOOP, node_id=run.current_node_id)

            if created:
                logger.info("Run created", start_node=run.current_node_id)
                await self._publish(run, "run.started")
            else:
                pending = await self.deferred.pending_for_run(run.id)
                if pending is not None:
                    logger.info("Run is waiting on a deferred task", task_id=pending.id)
                    return RunResult(run.id, RunOutcome.NOOP, node_id=run.current_node_id)

            return await self.process_node(run, run.current_node_id, graph)

    async def resume(self, task: DeferredTask) -> RunResult:
        """Continue a run after its delay elapsed.

        The task applies while the run is active and sits on the task's
        expected node, or on its resume node when an earlier attempt moved
        the run there and was interrupted. Anywhere else the work was
        already done.
        """
        run = await self.runs.get(task.run_id)
        if run is None:
            return RunResult(task.run_id, RunOutcome.NOOP, error="Run not found")

        with bound_run_context(run_id=run.id, flow_id=run.flow_id, subject_id=run.subject_id):
            if not run.is_active:
                logger.info("Skipping deferred task for inactive run", status=run.status)
                return RunResult(run.id, RunOutcome.NOOP, node_id=run.current_node_id)

            if run.current_node_id not in (task.expected_node_id, task.resume_node_id):
                logger.info(
                    "Deferred task is stale",
                    expected_node=task.expected_node_id,
                    current_node=run.current_node_id,
                )
                return RunResult(run.id, RunOutcome.NOOP, node_id=run.current_node_id)

            try:
                graph = FlowGraph.from_definition(task.flow_snapshot)
            except FlowValidationError as e:
                return await self._halt(run, run.current_node_id, 0, f"Invalid flow snapshot: {e.message}")

            if task.resume_node_id != run.current_node_id:
                moved = await self.runs.advance(run, task.resume_node_id, now=self.clock())
                if not moved:
                    return RunResult(run.id, RunOutcome.NOOP, node_id=task.resume_node_id)

            logger.info("Run resumed", node_id=run.current_node_id)
            return await self.process_node(run, run.current_node_id, graph)

    async def cancel_run(self, run_id: str) -> bool:
        """Cancel an active run and drop its pending deferred task."""
        cancelled = await self.runs.cancel(run_id, now=self.clock())
        if not cancelled:
            return False
        pending = await self.deferred.pending_for_run(run_id)
        if pending is not None:
            await self.deferred.delete(pending.id)
        run = await self.runs.get(run_id)
        if run is not None:
            await self._publish(run, "run.cancelled")
        logger.info("Run cancelled", run_id=run_id)
        return True

    # ─── State machine ────────────────────────────────────────

    async def process_node(self, run: Run, node_id: str, graph: FlowGraph) -> RunResult:
        """Process nodes from ``node_id`` until the run suspends or stops.

        ``run`` must currently sit on ``node_id``.
        """
        steps = 0
        with bound_run_context(run_id=run.id, flow_id=run.flow_id, subject_id=run.subject_id):
            while True:
                if steps >= self.max_steps:
                    return await self._trip_loop_guard(run, node_id, steps)

                status = await self.runs.get_status(run.id)
                if status != RunStatus.ACTIVE.value:
                    logger.info("Run no longer active, stopping", status=status)
                    return RunResult(run.id, RunOutcome.NOOP, steps, node_id)

                try:
                    node = _require_node(graph, node_id)
                except StructuralError as e:
                    return await self._halt(run, node_id, steps, e.message)

                steps += 1
                handler = self._handlers[type(node)]
                try:
                    transition = await handler(run, node, graph)
                except Exception as e:
                    logger.exception("Node processing failed", node_id=node.id, node_type=node.type)
                    await self.runs.record_error(run.id, str(e), self.clock())
                    return RunResult(run.id, RunOutcome.RETRY, steps, node.id, str(e), retryable=True)

                if transition.step == _Step.SUSPEND:
                    await self._publish(run, "run.suspended", node_id=node.id)
                    return RunResult(run.id, RunOutcome.SUSPENDED, steps, node.id)

                if transition.step == _Step.FAIL:
                    if transition.retryable:
                        await self.runs.record_error(run.id, transition.error, self.clock())
                        logger.warning("Retryable failure", node_id=node.id, error=transition.error)
                        return RunResult(
                            run.id, RunOutcome.RETRY, steps, node.id, transition.error, retryable=True
                        )
                    return await self._halt(run, node.id, steps, transition.error)

                if transition.step == _Step.COMPLETE or transition.next_node_id is None:
                    if transition.step == _Step.ADVANCE:
                        await self._append(run, EventType.COMPLETED, node_id=node.id, implicit=True)
                    return await self._complete(run, node.id, steps)

                moved = await self.runs.advance(run, transition.next_node_id, now=self.clock())
                if not moved:
                    logger.info("Run advanced elsewhere, stopping", node_id=node.id)
                    return RunResult(run.id, RunOutcome.NOOP, steps, node.id)

                await self._publish(
                    run, "run.node_processed", node_id=node.id, next_node_id=transition.next_node_id
                )
                node_id = transition.next_node_id

    # ─── Node handlers ────────────────────────────────────────

    async def _handle_start(self, run: Run, node: StartNode, graph: FlowGraph) -> _Transition:
        await self._append(run, EventType.STARTED, node_id=node.id)
        return _Transition(_Step.ADVANCE, graph.default_target(node.id))

    async def _handle_action(self, run: Run, node: ActionNode, graph: FlowGraph) -> _Transition:
        recipient = {"subject_id": run.subject_id, **(run.subject_context or {})}
        try:
            result = await self.delivery.dispatch(
                recipient,
                node.data.template_ref(),
                idempotency_key=f"{run.id}:{node.id}:{run.transitions}",
            )
        except DeliveryError as e:
            result = DispatchResult(success=False, error=e.message, retryable=e.retryable)

        await self._append(run, EventType.ACTION_DISPATCHED, node_id=node.id, **result.to_event_data())

        if result.success:
            logger.info("Action dispatched", node_id=node.id, message_id=result.provider_message_id)
            return _Transition(_Step.ADVANCE, graph.default_target(node.id))
        return _Transition(
            _Step.FAIL,
            error=result.error or "Delivery failed",
            retryable=result.retryable,
        )

    async def _handle_delay(self, run: Run, node: DelayNode, graph: FlowGraph) -> _Transition:
        next_id = graph.default_target(node.id)
        if next_id is None:
            # Nothing to resume into: waiting would not change the outcome
            return _Transition(_Step.ADVANCE, None)

        now = self.clock()
        duration = node.data.to_timedelta()
        execute_at = now + duration
        task = await self.deferred.schedule(
            run_id=run.id,
            expected_node_id=node.id,
            resume_node_id=next_id,
            execute_at=execute_at,
            flow_snapshot=graph.definition,
        )
        await self._append(
            run,
            EventType.DELAY_SCHEDULED,
            node_id=node.id,
            resume_node_id=next_id,
            execute_at=execute_at,
            duration_seconds=int(duration.total_seconds()),
        )
        await self.runs.touch(run, now)
        logger.info("Delay scheduled", node_id=node.id, execute_at=execute_at.isoformat(), task_id=task.id)
        return _Transition(_Step.SUSPEND)

    async def _handle_condition(self, run: Run, node: ConditionNode, graph: FlowGraph) -> _Transition:
        now = self.clock()
        history = await self.events.recent(
            run.subject_id, run.flow_id, since=now - timedelta(days=self.lookback_days)
        )
        result = evaluate_condition(node.data.predicate_type, node.data.params, history, now)
        await self._append(
            run,
            EventType.CONDITION_EVALUATED,
            node_id=node.id,
            predicate_type=node.data.predicate_type,
            result=result,
        )
        logger.info("Condition evaluated", node_id=node.id, result=result)
        return _Transition(_Step.ADVANCE, graph.branch_target(node.id, result))

    async def _handle_end(self, run: Run, node: EndNode, graph: FlowGraph) -> _Transition:
        await self._append(run, EventType.COMPLETED, node_id=node.id)
        return _Transition(_Step.COMPLETE)

    # ─── Terminal transitions ─────────────────────────────────

    async def _complete(self, run: Run, node_id: str, steps: int) -> RunResult:
        finished = await self.runs.advance(run, node_id, RunStatus.COMPLETED, now=self.clock())
        if not finished:
            return RunResult(run.id, RunOutcome.NOOP, steps, node_id)
        logger.info("Run completed", node_id=node_id, steps=steps)
        await self._publish(run, "run.completed", node_id=node_id)
        return RunResult(run.id, RunOutcome.COMPLETED, steps, node_id)

    async def _halt(self, run: Run, node_id: str, steps: int, error: str) -> RunResult:
        failed = await self.runs.fail(run.id, error, now=self.clock())
        if failed:
            run.status = RunStatus.ERRORED.value
            run.last_error = error
            await self._append(run, EventType.RUN_ERRORED, node_id=node_id, error=error)
            await self._publish(run, "run.errored", node_id=node_id, error=error)
            logger.error("Run halted", node_id=node_id, error=error)
        return RunResult(run.id, RunOutcome.ERRORED, steps, node_id, error)

    async def _trip_loop_guard(self, run: Run, node_id: str, steps: int) -> RunResult:
        await self._append(
            run,
            EventType.LOOP_GUARD_TRIPPED,
            node_id=node_id,
            steps=steps,
            message=LOOP_GUARD_MESSAGE,
        )
        return await self._halt(
            run, node_id, steps, f"Step limit of {self.max_steps} reached: {LOOP_GUARD_MESSAGE}"
        )

    # ─── Side channels ────────────────────────────────────────

    async def _append(self, run: Run, event_type: EventType, **data) -> None:
        await self.events.append(run.subject_id, run.flow_id, event_type, data, self.clock())

    async def _publish(self, run: Run, event_type: str, **extra) -> None:
        payload = {
            "run_id": run.id,
            "subject_id": run.subject_id,
            "status": run.status,
            "current_node_id": run.current_node_id,
            **extra,
        }
        try:
            await self.publisher.publish(run.flow_id, event_type, payload)
        except Exception as e:
            logger.warning("Notification publish failed", event_type=event_type, error=str(e))
