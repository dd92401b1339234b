"""agentflow.handlers.loop

Loop nodes run their body region until an iteration leaves the body
without routing back or one of the stop rules (break condition, iteration
bound) applies. Exit edges (body -> outside) resolve against the last iteration; the
loop node's own non-body edges fire when the loop stopped on its bound or
its break condition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Optional, Tuple

from ..graph.models import FlowEdge, FlowNode, LoopSpec
from ..logging import get_logger
from .base import DEAD, NodeInputs, NodeOutcome

if TYPE_CHECKING:
    from ..core.interpreter import FlowRun, RegionPass

logger = get_logger(__name__)


async def handle_loop(run: "FlowRun", node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
    spec = node.spec
    assert isinstance(spec, LoopSpec)
    counters = run.ctx.loop_counters
    counters[node.id] = 0

    value: Any = inputs.value
    last: Optional["RegionPass"] = None
    stop = "max_iterations"
    while counters[node.id] < spec.max_iterations:
        counters[node.id] += 1
        iteration = counters[node.id]
        run.bind(node.id, "body", value)
        run.emit("loop_iteration", node.id, iteration=iteration)
        last = await run.run_loop_body(node, value)

        if not last.back_values:
            stop = "exited"
            break
        value = last.back_values[-1]
        if spec.condition and run.evaluator(node.id, {"iteration": iteration}).evaluate(spec.condition):
            stop = "condition"
            break

    iterations = counters[node.id]
    run.emit("loop_completed", node.id, iterations=iterations, stop=stop)
    logger.debug("Loop completed", node_id=node.id, iterations=iterations, stop=stop)

    signals: List[Tuple[FlowEdge, Any]] = []
    for edge in run.graph.exit_edges(node.id):
        signals.append((edge, last.exits.get(edge.index, DEAD) if last is not None else DEAD))
    bounded = stop != "exited"
    if bounded:
        evaluator = run.evaluator(node.id, {"value": value, "iteration": iterations})
    for edge in run.graph.completion_edges(node.id):
        live = bounded and evaluator.evaluate(edge.condition)
        signals.append((edge, value if live else DEAD))

    return NodeOutcome("body", {"iterations": iterations, "stop": stop}, signals=signals)
