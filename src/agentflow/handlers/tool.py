"""agentflow.handlers.tool

Tool nodes call a document tool directly, without a model in between.

Arguments are the node's literal `arguments` with `$name` strings resolved
against the run context, overlaid with the keys of a dict input value.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Mapping

from ..core.models import Turn, TurnKind
from ..graph.models import FlowNode, ToolNodeSpec
from .base import NodeInputs, NodeOutcome

if TYPE_CHECKING:
    from ..core.interpreter import FlowRun


def resolve_arguments(run: "FlowRun", node: FlowNode, raw: Mapping[str, Any], value: Any) -> Dict[str, Any]:
    evaluator = None
    out: Dict[str, Any] = {}
    for key, item in raw.items():
        if isinstance(item, str) and item.startswith("$") and len(item) > 1:
            if evaluator is None:
                evaluator = run.evaluator(node.id, {"value": value})
            out[key] = evaluator.value(item[1:])
        else:
            out[key] = item
    return out


async def handle_tool(run: "FlowRun", node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
    spec = node.spec
    assert isinstance(spec, ToolNodeSpec)
    value = inputs.value
    defaults = resolve_arguments(run, node, spec.arguments, value)
    arguments = dict(value) if isinstance(value, Mapping) else {}

    result = await run.dispatch_tool(spec.tool, arguments, node_id=node.id, defaults=defaults)
    run.append_turn(
        Turn(
            role="tool",
            content=result.output,
            node_id=node.id,
            kind=TurnKind.TOOL_RESULT,
            metadata={"tool": spec.tool, "call_id": result.call_id, "success": result.success},
        )
    )
    label = node.output_labels[0]
    run.bind(node.id, label, result.output)
    return NodeOutcome(label, result.output)
