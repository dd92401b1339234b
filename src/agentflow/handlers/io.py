"""agentflow.handlers.io

Input and Output nodes: where a flow run starts and where it ends.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..core.models import Turn
from ..graph.models import FlowNode
from .base import NodeInputs, NodeOutcome

if TYPE_CHECKING:
    from ..core.interpreter import FlowRun


async def handle_input(run: "FlowRun", node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
    value = run.ctx.task_input
    if run.announce_input and value is not None:
        run.append_turn(Turn(role="user", content=value, node_id=node.id))
    label = node.output_labels[0]
    run.bind(node.id, label, value)
    return NodeOutcome(label, value)


async def handle_output(run: "FlowRun", node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
    value = inputs.value
    run.bind(node.id, "result", value)
    return NodeOutcome(None, value, terminal=True)
