"""agentflow.handlers.decision

Decision nodes pick exactly one of their declared outputs.

- rule: output conditions are evaluated in declaration order, the first true
  one wins; an unconditioned (or `else`) output is the catch-all
- llm: a classification call constrained to the output labels; a reply that
  names none of them is a `DecisionError`, never a fallback
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from ..core.errors import DecisionError
from ..graph.models import AgentDefinition, DecisionSpec, FlowNode
from ..orchestration.base import StrategySession, make_participant
from .base import NodeInputs, NodeOutcome, context_message

if TYPE_CHECKING:
    from ..core.interpreter import FlowRun


def choose_by_rule(run: "FlowRun", node: FlowNode, value: Any) -> Optional[str]:
    evaluator = run.evaluator(node.id, {"value": value})
    for slot in node.outputs:
        if evaluator.evaluate(slot.condition):
            return slot.label
    return None


async def choose_by_llm(run: "FlowRun", node: FlowNode, spec: DecisionSpec, value: Any) -> str:
    agent = run.agent(spec.agent) if spec.agent else AgentDefinition(id=node.id, name=node.name)
    participant = make_participant(run, agent)
    instructions = run.services.prompts.resolve(spec.prompt) if spec.prompt else None
    session = StrategySession(
        run,
        node,
        [participant],
        context_message=context_message(run, value),
        strategy="classification",
    )
    return await session.classify(participant, node.output_labels, instructions=instructions)


async def handle_decision(run: "FlowRun", node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
    spec = node.spec
    assert isinstance(spec, DecisionSpec)
    value = inputs.value
    if spec.strategy == "llm":
        label: Optional[str] = await choose_by_llm(run, node, spec, value)
    else:
        label = choose_by_rule(run, node, value)
        if label is None:
            raise DecisionError(f"No output condition of decision '{node.id}' matched", node_id=node.id)
    run.bind(node.id, label, value)
    run.emit("decision", node.id, strategy=spec.strategy, label=label)
    return NodeOutcome(label, value)
