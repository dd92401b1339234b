"""agentflow.handlers.base

Contracts shared by node handlers.

A handler is an async function `(run, node, inputs) -> NodeOutcome`. It writes
its results into the run's context itself (`run.bind`, transcript appends) and
tells the interpreter which output label fired.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Tuple

from ..graph.models import FlowEdge, FlowNode

if TYPE_CHECKING:
    from ..core.interpreter import FlowRun


@dataclass(frozen=True)
class NodeInputs:
    """Satisfied inputs of a node, in edge declaration order."""

    node: FlowNode
    values: Tuple[Tuple[FlowEdge, Any], ...] = ()

    @property
    def value(self) -> Any:
        """The single input value, or the list of values for multi-input nodes."""
        if not self.values:
            return None
        if len(self.values) == 1:
            return self.values[0][1]
        return [v for _, v in self.values]

    @property
    def sources(self) -> List[str]:
        return [e.source for e, _ in self.values]


@dataclass
class NodeOutcome:
    """What a handler reports back to the interpreter.

    - `label`: the output that fired; its edges are resolved against guards.
    - `signals`: explicit edge resolutions (used by loop nodes, whose exits
      leave from body nodes); when set, `label` is informational only.
    - `terminal`: the node is an Output node.
    """

    label: Optional[str]
    value: Any = None
    signals: Optional[List[Tuple[FlowEdge, Any]]] = None
    terminal: bool = False
    metadata: dict = field(default_factory=dict)


NodeHandler = Callable[["FlowRun", FlowNode, NodeInputs], Awaitable[NodeOutcome]]


class _Dead:
    """Marker for an edge that will never carry a value (dead path)."""

    _instance: Optional["_Dead"] = None

    def __new__(cls) -> "_Dead":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DEAD"

    def __bool__(self) -> bool:
        return False


DEAD = _Dead()


def context_message(run: "FlowRun", value: Any) -> Optional[str]:
    """Text of an input value that the transcript does not already carry.

    Agent and classification calls append it as a `Context:` message so that
    values produced by tool, merge or subflow nodes reach the model.
    """
    if value is None or value is DEAD:
        return None
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    if not text.strip():
        return None
    if any(turn.text == text for turn in run.ctx.transcript.snapshot()):
        return None
    return text
