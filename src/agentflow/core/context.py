"""agentflow.core.context

Transcript and execution context of a flow run.

`Transcript` is the only structure appended to by concurrent branches, so
appends are serialized behind a lock and every turn receives a strictly
increasing `seq`. Once a run aborts the transcript is closed: committed turns
stay (partial audit trail), late appends are dropped.

`ExecutionContext` holds what node handlers write: output bindings keyed by
`"<node>/<label>"`, named variables, loop counters and the subflow call
stack. A subflow gets a child context seeded from its parent; nothing the
child writes reaches the parent until the engine promotes it. Per-agent
usage totals are the exception: parent and child share one table.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..logging import get_logger
from .conditions import ConditionEvaluator
from .errors import SubflowCycleError, SubflowDepthError
from .models import AgentUsage, ToolResult, Turn

logger = get_logger(__name__)


class Transcript:
    def __init__(self, seed: Sequence[Turn] = ()):
        self._lock = threading.Lock()
        self._turns: List[Turn] = list(seed)
        self._seed_len = len(self._turns)
        self._next_seq = max((t.seq for t in self._turns), default=-1) + 1
        self._closed = False

    def append(self, turn: Turn) -> Optional[Turn]:
        with self._lock:
            if self._closed:
                logger.warning("Dropping append to closed transcript", node_id=turn.node_id, role=turn.role)
                return None
            committed = replace(turn, seq=self._next_seq)
            self._next_seq += 1
            self._turns.append(committed)
            return committed

    def extend(self, turns: Sequence[Turn]) -> List[Turn]:
        out: List[Turn] = []
        for t in turns:
            committed = self.append(t)
            if committed is not None:
                out.append(committed)
        return out

    def snapshot(self) -> List[Turn]:
        with self._lock:
            return list(self._turns)

    def new_turns(self) -> List[Turn]:
        """Turns appended after construction (excludes the seed)."""
        with self._lock:
            return list(self._turns[self._seed_len :])

    def fork(self) -> "Transcript":
        return Transcript(self.snapshot())

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.snapshot())


class ExecutionContext:
    """Mutable state of one flow invocation."""

    def __init__(
        self,
        *,
        run_id: str,
        flow_id: str,
        task_input: Any,
        transcript: Optional[Transcript] = None,
        variables: Optional[Mapping[str, Any]] = None,
        parent: Optional["ExecutionContext"] = None,
        call_stack: Tuple[str, ...] = (),
        usage: Optional[Dict[str, AgentUsage]] = None,
    ):
        self.run_id = run_id
        self.flow_id = flow_id
        self.task_input = task_input
        self.transcript = transcript if transcript is not None else Transcript()
        self.parent = parent
        self.call_stack: Tuple[str, ...] = call_stack or (flow_id,)
        self.bindings: Dict[str, Any] = {}
        self.node_values: Dict[str, Any] = {}
        self.variables: Dict[str, Any] = {}
        if isinstance(task_input, Mapping):
            self.variables.update(task_input)
        self.variables.update(variables or {})
        self.loop_counters: Dict[str, int] = {}
        self.tool_results: List[ToolResult] = []
        self.usage: Dict[str, AgentUsage] = usage if usage is not None else {}

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def bind(self, node_id: str, label: str, value: Any) -> None:
        self.bindings[f"{node_id}/{label}"] = value
        self.node_values[node_id] = value

    def binding(self, selector: str, default: Any = None) -> Any:
        return self.bindings.get(selector, default)

    def has_binding(self, selector: str) -> bool:
        return selector in self.bindings

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def usage_for(self, agent_id: str) -> AgentUsage:
        return self.usage.setdefault(agent_id, AgentUsage())

    def record_tool_result(self, result: ToolResult) -> None:
        self.tool_results.append(result)

    # ------------------------------------------------------------------
    # Subflows
    # ------------------------------------------------------------------

    def child(self, flow_id: str, task_input: Any, *, max_depth: int) -> "ExecutionContext":
        """Create the context of a nested subflow run.

        Raises `SubflowCycleError` if `flow_id` is already in flight.
        """
        if flow_id in self.call_stack:
            raise SubflowCycleError(list(self.call_stack) + [flow_id], flow_id=self.flow_id)
        if len(self.call_stack) >= max_depth:
            raise SubflowDepthError(
                f"Subflow depth limit ({max_depth}) exceeded invoking '{flow_id}'",
                flow_id=self.flow_id,
            )
        return ExecutionContext(
            run_id=self.run_id,
            flow_id=flow_id,
            task_input=task_input,
            transcript=self.transcript.fork(),
            variables=None,
            parent=self,
            call_stack=self.call_stack + (flow_id,),
            usage=self.usage,
        )

    # ------------------------------------------------------------------
    # Name resolution for conditions
    # ------------------------------------------------------------------

    def resolve(self, name: str) -> Tuple[bool, Any]:
        if name in self.variables:
            return True, self.variables[name]
        head, _, rest = name.partition(".")
        if rest and head in self.variables:
            return True, _walk(self.variables[head], rest)
        if name in self.node_values:
            return True, self.node_values[name]
        if rest and head in self.node_values:
            selector = f"{head}/{rest}"
            if selector in self.bindings:
                return True, self.bindings[selector]
            return True, _walk(self.node_values[head], rest)
        if head in ("task", "task_input"):
            return True, _walk(self.task_input, rest) if rest else self.task_input
        if self.parent is not None:
            return self.parent.resolve(name)
        return False, None

    def evaluator(self, extra: Optional[Mapping[str, Any]] = None) -> ConditionEvaluator:
        scope = dict(extra or {})

        def _resolve(name: str) -> Tuple[bool, Any]:
            if name in scope:
                return True, scope[name]
            head, _, rest = name.partition(".")
            if rest and head in scope:
                return True, _walk(scope[head], rest)
            return self.resolve(name)

        return ConditionEvaluator(_resolve)


def _walk(value: Any, dotted: str) -> Any:
    for part in dotted.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        elif isinstance(value, (list, tuple)) and part.isdigit():
            idx = int(part)
            value = value[idx] if idx < len(value) else None
        else:
            return None
    return value
