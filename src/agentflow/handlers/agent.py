"""agentflow.handlers.agent

Agent nodes produce the next turn of one or more agents.

The handler assembles the participants (node agent first where the strategy
has a lead agent), layers call settings node > agent > engine, picks the
strategy (node orchestration, else the run default) and binds the result to
the node's output. `bind_as` also stores it as a context variable, parsed as
JSON first when `parse_json` is set.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List

from ..core.errors import OrchestrationError
from ..graph.models import AgentNodeSpec, FlowNode
from ..logging import get_logger
from ..orchestration import get_strategy
from ..orchestration.actions import extract_json_object
from ..orchestration.base import StrategySession, make_participant
from .base import NodeInputs, NodeOutcome, context_message

if TYPE_CHECKING:
    from ..core.interpreter import FlowRun

logger = get_logger(__name__)

# Strategies with a lead agent: the node agent always speaks (or plans) first.
LEAD_AGENT_STRATEGIES = ("handoff", "group_chat", "magentic")


def participant_ids(spec: AgentNodeSpec, strategy: str) -> List[str]:
    orchestration = spec.orchestration
    ids = list(orchestration.participants) if orchestration and orchestration.participants else [spec.agent]
    if strategy in LEAD_AGENT_STRATEGIES:
        ids = [spec.agent] + [i for i in ids if i != spec.agent]
    return ids


async def handle_agent(run: "FlowRun", node: FlowNode, inputs: NodeInputs) -> NodeOutcome:
    spec = node.spec
    assert isinstance(spec, AgentNodeSpec)
    orchestration = spec.orchestration
    strategy = get_strategy(orchestration.strategy if orchestration else run.services.default_strategy)

    ids = participant_ids(spec, strategy.name)
    participants = [make_participant(run, run.agent(i), node_spec=spec, primary=i == spec.agent) for i in ids]
    options: Dict[str, Any] = run.flow.strategy_options(strategy.name)
    if orchestration is not None:
        options.update(orchestration.options)

    session = StrategySession(
        run,
        node,
        participants,
        options=options,
        context_message=context_message(run, inputs.value),
        strategy=strategy.name,
    )
    run.emit("strategy_started", node.id, strategy=strategy.name, participants=ids)
    result = await strategy.run(session)
    run.emit("strategy_completed", node.id, strategy=strategy.name, active_agent=result.active_agent)

    output = result.output
    label = node.output_labels[0]
    run.bind(node.id, label, output)
    if spec.bind_as:
        bound = output
        if spec.parse_json:
            bound = extract_json_object(output)
            if bound is None:
                raise OrchestrationError(f"Reply of agent node '{node.id}' is not a JSON object", node_id=node.id)
        run.ctx.set_variable(spec.bind_as, bound)
        logger.debug("Variable bound", node_id=node.id, name=spec.bind_as)
    return NodeOutcome(label, output, metadata={"strategy": strategy.name, "active_agent": result.active_agent})
