"""agentflow.core.interpreter

The flow interpreter: a ready-set scheduler over one flow graph.

Every node whose inputs are resolved is started as an asyncio task; the driver
waits for the first completion, resolves that node's outgoing edges against
their guards and starts whatever became ready. Join rule (uniform for every
node, Merge included):

- an input is satisfied when its source fired on the edge's label with a
  true guard; it is dead when that can no longer happen
- a node is ready when no input is pending and at least one is satisfied
- a node whose inputs are all dead is skipped, and the skip propagates

Loop bodies run as nested passes of the same scheduler restricted to the
body's region. Any failure cancels every in-flight task of the pass (and,
through propagation, of every enclosing pass) before it is re-raised.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from ..graph.compiler import FlowGraph, compile_flow
from ..graph.models import LOOP_BODY, AgentDefinition, CallSettings, FlowDefinition, FlowDocument, FlowEdge, FlowNode, NodeKind
from ..handlers import NODE_HANDLERS
from ..handlers.base import DEAD, NodeInputs, NodeOutcome
from ..integrations.prompts import PromptLoader
from ..integrations.providers import ModelProvider
from ..logging import get_logger
from ..storage.base import EventStore
from .conditions import ConditionEvaluator
from .config import EngineConfig
from .context import ExecutionContext
from .errors import AgentFlowError, DeadEndError, ToolExecutionError
from .models import RunEvent, ToolResult, Turn
from .tool_dispatcher import ToolDispatcher, jsonable

logger = get_logger(__name__)

_PENDING = object()


def _has_value(state: Any) -> bool:
    return state is not _PENDING and state is not DEAD


class EventRecorder:
    """Collects run events, mirrors them to an event store and a callback."""

    def __init__(
        self,
        run_id: str,
        *,
        store: Optional[EventStore] = None,
        callback: Optional[Callable[[RunEvent], None]] = None,
    ):
        self.run_id = run_id
        self._store = store
        self._callback = callback
        self._events: List[RunEvent] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def emit(self, type: str, *, flow_id: Optional[str] = None, node_id: Optional[str] = None, **data: Any) -> RunEvent:
        with self._lock:
            event = RunEvent(
                run_id=self.run_id,
                seq=next(self._seq),
                type=type,
                flow_id=flow_id,
                node_id=node_id,
                data=jsonable(data),
            )
            self._events.append(event)
        if self._store is not None:
            self._store.append(event)
        if self._callback is not None:
            try:
                self._callback(event)
            except Exception as e:
                logger.error("Event callback failed", event_type=type, error=str(e))
        return event

    def snapshot(self) -> List[RunEvent]:
        with self._lock:
            return list(self._events)


@dataclass
class RunServices:
    """Collaborators shared by a top-level run and all of its subflow runs."""

    document: FlowDocument
    provider: ModelProvider
    tools: ToolDispatcher
    prompts: PromptLoader
    config: EngineConfig
    call_settings: CallSettings
    default_strategy: str
    recorder: EventRecorder
    _graphs: Dict[str, FlowGraph] = field(default_factory=dict)

    def graph(self, flow: FlowDefinition) -> FlowGraph:
        graph = self._graphs.get(flow.id)
        if graph is None:
            graph = compile_flow(flow)
            self._graphs[flow.id] = graph
        return graph


class RegionPass:
    """One scheduler pass over a region (the top level, or one loop iteration)."""

    def __init__(self, run: "FlowRun", region: Optional[str]):
        self.run = run
        self.graph = run.graph
        self.region = region
        self.nodes: Set[str] = set(self.graph.region_nodes(region))
        self.edge_state: Dict[int, Any] = {}
        self.launched: Set[str] = set()
        self.skipped: Set[str] = set()
        self.tasks: Dict[asyncio.Task, str] = {}
        self._order: Dict[asyncio.Task, int] = {}
        self._counter = itertools.count()
        self.back_values: List[Any] = []
        self.exits: Dict[int, Any] = {}
        self.output: Optional[Tuple[str, Any]] = None
        self.dead_ends: List[str] = []

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def start_at(self, node_id: str) -> None:
        self._launch(node_id, NodeInputs(node=self.run.flow.node(node_id)))

    async def drive(self) -> None:
        try:
            while self.tasks:
                done, _ = await asyncio.wait(list(self.tasks), return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: self._order[t]):
                    node_id = self.tasks.pop(task)
                    self._complete(node_id, task.result())
        except BaseException:
            await self._cancel_all()
            raise

    async def _cancel_all(self) -> None:
        pending = [t for t in self.tasks if not t.done()]
        for task in pending:
            self.run.emit("node_cancelled", self.tasks[task])
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()

    def _launch(self, node_id: str, inputs: NodeInputs) -> None:
        self.launched.add(node_id)
        task = asyncio.ensure_future(self.run.execute_node(inputs.node, inputs))
        self.tasks[task] = node_id
        self._order[task] = next(self._counter)

    # ------------------------------------------------------------------
    # Edge resolution
    # ------------------------------------------------------------------

    def send(self, node_id: str, label: Optional[str], value: Any) -> bool:
        """Resolve `node_id`'s outgoing edges for `label`; True if any edge is live."""
        live = False
        evaluator: Optional[ConditionEvaluator] = None
        for edge in self.graph.outgoing.get(node_id, []):
            if edge.output != label:
                self._deliver(edge, DEAD)
                continue
            ok = True
            if edge.condition is not None:
                if evaluator is None:
                    evaluator = self.run.evaluator(node_id, extra={"value": value})
                try:
                    ok = evaluator.evaluate(edge.condition)
                except AgentFlowError as e:
                    # Guards run in the driver, outside execute_node.
                    if e.node_id is None:
                        e.node_id = node_id
                    if e.flow_id is None:
                        e.flow_id = self.run.flow.id
                    raise
            if not ok:
                self._deliver(edge, DEAD)
                continue
            self._deliver(edge, value)
            live = True
        return live

    def _complete(self, node_id: str, outcome: NodeOutcome) -> None:
        if outcome.terminal:
            if self.output is None:
                self.output = (node_id, outcome.value)
                self.run.emit("output_reached", node_id)
            else:
                self.run.emit("output_ignored", node_id, winner=self.output[0])
            return
        if outcome.signals is not None:
            live = False
            for edge, payload in outcome.signals:
                self._deliver(edge, payload)
                live = live or payload is not DEAD
        else:
            live = self.send(node_id, outcome.label, outcome.value)
        if not live:
            self.dead_ends.append(node_id)
            self.run.emit("dead_end", node_id, label=outcome.label)

    def _deliver(self, edge: FlowEdge, payload: Any) -> None:
        target = edge.target
        if edge.index in self.graph.back_edges and target == self.region:
            if payload is not DEAD:
                self.back_values.append(payload)
            return
        if target not in self.nodes:
            self.exits[edge.index] = payload
            return
        if target in self.launched or target in self.skipped:
            if payload is not DEAD:
                self.run.emit("late_arrival", target, source=edge.source)
            return
        self.edge_state[edge.index] = payload
        self._check_ready(target)

    def _check_ready(self, node_id: str) -> None:
        satisfied = False
        for group in self.graph.join_groups.get(node_id, []):
            states = [self.edge_state.get(i, _PENDING) for i in group.edges]
            live = [s for s in states if _has_value(s)]
            if group.mode == "any":
                if live:
                    satisfied = True
                    continue
                if all(s is DEAD for s in states):
                    continue
                return
            if any(s is _PENDING for s in states):
                return
            satisfied = satisfied or bool(live)
        if not satisfied:
            self._skip(node_id)
            return
        node = self.run.flow.node(node_id)
        values = tuple(
            (e, self.edge_state[e.index])
            for e in self.graph.incoming.get(node_id, [])
            if _has_value(self.edge_state.get(e.index, _PENDING))
        )
        self._launch(node_id, NodeInputs(node=node, values=values))

    def _skip(self, node_id: str) -> None:
        self.skipped.add(node_id)
        self.run.emit("node_skipped", node_id)
        node = self.run.flow.node(node_id)
        if node.kind is NodeKind.LOOP:
            edges = self.graph.exit_edges(node_id) + self.graph.completion_edges(node_id)
        else:
            edges = self.graph.outgoing.get(node_id, [])
        for edge in edges:
            self._deliver(edge, DEAD)


class FlowRun:
    """Interpreter state for one flow invocation (top-level or subflow)."""

    def __init__(self, services: RunServices, flow: FlowDefinition, ctx: ExecutionContext, *, announce_input: bool = True):
        self.services = services
        self.flow = flow
        self.ctx = ctx
        self.graph = services.graph(flow)
        self.announce_input = announce_input

    # ------------------------------------------------------------------
    # Accessors used by handlers and strategies
    # ------------------------------------------------------------------

    @property
    def document(self) -> FlowDocument:
        return self.services.document

    @property
    def config(self) -> EngineConfig:
        return self.services.config

    def agent(self, agent_id: str) -> AgentDefinition:
        agent = self.document.agent(agent_id)
        if agent is None:
            raise AgentFlowError(f"Unknown agent '{agent_id}'", flow_id=self.flow.id)
        return agent

    def emit(self, type: str, node_id: Optional[str] = None, **data: Any) -> RunEvent:
        return self.services.recorder.emit(type, flow_id=self.flow.id, node_id=node_id, **data)

    def bind(self, node_id: str, label: str, value: Any) -> None:
        self.ctx.bind(node_id, label, value)

    def append_turn(self, turn: Turn) -> Optional[Turn]:
        return self.ctx.transcript.append(turn)

    def evaluator(self, node_id: Optional[str] = None, extra: Optional[Mapping[str, Any]] = None) -> ConditionEvaluator:
        scope: Dict[str, Any] = {}
        loop_id = self.graph.region_of.get(node_id) if node_id else None
        if loop_id is not None:
            scope["iteration"] = self.ctx.loop_counters.get(loop_id, 0)
        scope.update(extra or {})
        return self.ctx.evaluator(scope)

    async def dispatch_tool(
        self,
        tool_id: str,
        arguments: Mapping[str, Any],
        *,
        node_id: str,
        call_id: Optional[str] = None,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> ToolResult:
        self.emit("tool_call", node_id, tool=tool_id, arguments=dict(arguments))
        try:
            result = await self.services.tools.invoke(
                tool_id,
                arguments,
                node_id=node_id,
                call_id=call_id,
                defaults=defaults,
                on_retry=lambda err, attempt, delay: self.emit(
                    "tool_retry", node_id, tool=tool_id, attempt=attempt, delay_s=delay, error=str(err)
                ),
            )
        except ToolExecutionError as e:
            self.ctx.record_tool_result(
                ToolResult(
                    call_id=call_id or "",
                    tool_id=tool_id,
                    success=False,
                    error=str(e.cause or e.message),
                    attempts=e.attempts or 1,
                    node_id=node_id,
                )
            )
            self.emit("tool_failed", node_id, tool=tool_id, error=e.to_dict())
            raise
        self.ctx.record_tool_result(result)
        self.emit("tool_result", node_id, tool=tool_id, success=result.success, attempts=result.attempts)
        return result

    def child_run(self, flow_id: str, ctx: ExecutionContext, *, announce_input: bool) -> "FlowRun":
        flow = self.document.flow(flow_id)
        if flow is None:
            raise AgentFlowError(f"Unknown flow '{flow_id}'", flow_id=self.flow.id)
        return FlowRun(self.services, flow, ctx, announce_input=announce_input)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self) -> Tuple[str, Any]:
        """Run the flow from its entry; returns (output node id, final output)."""
        top = RegionPass(self, None)
        top.start_at(self.flow.entry)
        await top.drive()
        if top.output is None:
            raise DeadEndError(
                f"Flow '{self.flow.id}' finished without reaching an output node",
                flow_id=self.flow.id,
                node_id=top.dead_ends[-1] if top.dead_ends else None,
                dead_ends=top.dead_ends,
            )
        self._check_dead_ends(top)
        return top.output

    async def run_loop_body(self, loop: FlowNode, value: Any) -> RegionPass:
        body = RegionPass(self, loop.id)
        if body.send(loop.id, LOOP_BODY, value):
            await body.drive()
        self._check_dead_ends(body)
        return body

    def _check_dead_ends(self, region: RegionPass) -> None:
        if not region.dead_ends:
            return
        if self.config.detached_branches == "best_effort":
            logger.warning("Branch ended without reaching an output", flow_id=self.flow.id, nodes=",".join(region.dead_ends))
            return
        raise DeadEndError(
            f"Branch ended at {', '.join(region.dead_ends)} without reaching an output node",
            flow_id=self.flow.id,
            node_id=region.dead_ends[0],
            dead_ends=region.dead_ends,
        )

    async def execute_node(self, node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
        handler = NODE_HANDLERS[node.kind]
        self.emit("node_started", node.id, kind=node.kind.value, inputs=inputs.sources)
        logger.debug("Node started", flow_id=self.flow.id, node_id=node.id, kind=node.kind.value)
        try:
            outcome = await handler(self, node, inputs)
        except AgentFlowError as e:
            if e.node_id is None:
                e.node_id = node.id
            if e.flow_id is None:
                e.flow_id = self.flow.id
            self.emit("node_failed", node.id, error=e.to_dict())
            logger.error("Node failed", flow_id=self.flow.id, node_id=node.id, error=str(e))
            raise
        except Exception as e:
            err = AgentFlowError(f"Node '{node.id}' failed: {e}", node_id=node.id, flow_id=self.flow.id, cause=e)
            self.emit("node_failed", node.id, error=err.to_dict())
            logger.error("Node failed", flow_id=self.flow.id, node_id=node.id, error=str(e))
            raise err from e
        self.emit("node_completed", node.id, label=outcome.label)
        logger.debug("Node completed", flow_id=self.flow.id, node_id=node.id, label=outcome.label)
        return outcome
