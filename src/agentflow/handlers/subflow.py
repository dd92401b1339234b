"""agentflow.handlers.subflow

Subflow nodes run another flow of the same document as a nested run.

The child gets its own context (transcript forked from the parent, parent
visible for name resolution, call stack extended by the target flow). Cycles
and runaway depth are rejected by `ExecutionContext.child` before the child
starts. When the child finishes, its turns and tool results are promoted to
the parent and its designated output is bound to this node.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Any

from ..core.context import ExecutionContext
from ..core.errors import AgentFlowError
from ..graph.models import FlowNode, SubflowSpec, parse_selector
from ..logging import get_logger
from .base import NodeInputs, NodeOutcome

if TYPE_CHECKING:
    from ..core.interpreter import FlowRun

logger = get_logger(__name__)


def designated_output(spec: SubflowSpec, child: ExecutionContext, final_output: Any) -> Any:
    if not spec.output:
        return final_output
    node_id, label = parse_selector(spec.output)
    if label is not None:
        selector = f"{node_id}/{label}"
        if child.has_binding(selector):
            return child.binding(selector)
    elif node_id in child.node_values:
        return child.node_values[node_id]
    raise AgentFlowError(f"Subflow '{spec.flow}' produced no value at '{spec.output}'", flow_id=spec.flow)


def promote(run: "FlowRun", spec: SubflowSpec, child: ExecutionContext) -> None:
    if run.config.promote_subflow_transcript:
        turns = [replace(t, metadata={**t.metadata, "subflow": spec.flow}) for t in child.transcript.new_turns()]
        run.ctx.transcript.extend(turns)
    for result in child.tool_results:
        run.ctx.record_tool_result(result)


async def handle_subflow(run: "FlowRun", node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
    spec = node.spec
    assert isinstance(spec, SubflowSpec)
    if spec.input_mode == "value":
        task_input, announce = inputs.value, True
    else:
        task_input, announce = run.ctx.task_input, False

    child_ctx = run.ctx.child(spec.flow, task_input, max_depth=run.config.max_subflow_depth)
    child = run.child_run(spec.flow, child_ctx, announce_input=announce)
    run.emit("subflow_started", node.id, subflow=spec.flow, call_stack=list(child_ctx.call_stack))
    logger.info("Subflow started", node_id=node.id, subflow=spec.flow, depth=len(child_ctx.call_stack))
    try:
        output_node, final_output = await child.execute()
    finally:
        # Partial child turns are promoted too so a failure keeps its audit trail.
        promote(run, spec, child_ctx)

    value = designated_output(spec, child_ctx, final_output)
    label = node.output_labels[0]
    run.bind(node.id, label, value)
    run.emit("subflow_completed", node.id, subflow=spec.flow, output_node=output_node)
    return NodeOutcome(label, value)
