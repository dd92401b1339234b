"""agentflow.handlers.structural

Merge and Parallel nodes. Neither calls a model; the join and fan-out
semantics themselves live in the interpreter's scheduling rule.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Tuple

from ..graph.models import FlowEdge, FlowNode, ParallelSpec
from .base import DEAD, NodeInputs, NodeOutcome

if TYPE_CHECKING:
    from ..core.interpreter import FlowRun


async def handle_merge(run: "FlowRun", node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
    values = [v for _, v in inputs.values]
    label = node.output_labels[0]
    run.bind(node.id, label, values)
    return NodeOutcome(label, values, metadata={"sources": inputs.sources})


async def handle_parallel(run: "FlowRun", node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
    spec = node.spec
    assert isinstance(spec, ParallelSpec)
    value = inputs.value
    label = node.output_labels[0]
    run.bind(node.id, label, value)

    # Fan out along every outgoing edge whose guard holds, whatever its label.
    evaluator = run.evaluator(node.id, {"value": value})
    signals: List[Tuple[FlowEdge, Any]] = []
    for edge in run.graph.outgoing.get(node.id, []):
        signals.append((edge, value if evaluator.evaluate(edge.condition) else DEAD))
    branches = [e.target for e, v in signals if v is not DEAD]
    run.emit("parallel_fanout", node.id, branches=branches, converge=spec.converge)
    return NodeOutcome(label, value, signals=signals)
