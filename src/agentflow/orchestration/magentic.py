"""agentflow.orchestration.magentic

Plan-then-execute. A manager agent writes a JSON plan; the steps then run in
order, each either an agent turn or a tool call. A step may carry a `when`
guard (evaluated against `last`, `steps`, `step_count` and the run context)
and any step may end execution early with a completion envelope.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from ..core.errors import OrchestrationError
from ..core.models import TurnKind
from ..logging import get_logger
from .actions import MagenticPlan, MagenticStep, parse_action, parse_plan
from .base import StrategyResult, StrategySession

logger = get_logger(__name__)

_PLANNING_INSTRUCTIONS = """Break the task into steps and reply with JSON only:
{"steps": [{"agent": "<agent id>", "instructions": "<what to do>"},
           {"tool": "<tool id>", "arguments": {...}, "instructions": "<why>"}]}
A step may add "when": "<condition>" to run only if the condition holds
(names available: last, steps, step_count).
Available agents:
%s
Available tools:
%s"""


@dataclass(frozen=True)
class MagenticOptions:
    max_steps: int = 12
    manager: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "MagenticOptions":
        return cls(max_steps=int(raw.get("max_steps", 12)), manager=raw.get("manager"))


class MagenticStrategy:
    name = "magentic"

    async def run(self, session: StrategySession) -> StrategyResult:
        opts = MagenticOptions.from_mapping(session.options)
        plan = await self._plan(session, opts)

        steps = plan.steps
        if len(steps) > opts.max_steps:
            session.emit("plan_truncated", planned=len(steps), max_steps=opts.max_steps)
            steps = steps[: opts.max_steps]

        outputs: List[Any] = []
        last: Any = None
        early = False
        for index, step in enumerate(steps):
            if step.when:
                scope = {"last": last, "steps": list(outputs), "step_count": len(outputs)}
                if not session.run.evaluator(session.node_id, scope).evaluate(step.when):
                    session.emit("plan_step_skipped", step=index, when=step.when)
                    continue
            last = await self._execute(session, index, step)
            outputs.append(last)
            session.emit("plan_step_completed", step=index, agent=step.agent, tool=step.tool)

            envelope = parse_action(last)
            if envelope is not None and envelope.action == "complete":
                last = envelope.result if envelope.result is not None else envelope.message
                early = True
                break

        session.emit("plan_finished", executed=len(outputs), early=early)
        return StrategyResult(output=last, metadata={"steps": len(outputs), "early": early})

    async def _plan(self, session: StrategySession, opts: MagenticOptions) -> MagenticPlan:
        manager = session.participant_for(opts.manager) if opts.manager else session.participants[0]
        agents = "\n".join(
            f"- {p.id}" + (f": {p.agent.description}" if p.agent.description else "") for p in session.participants
        )
        tool_ids = sorted({t for p in session.participants for t in p.tools})
        tools = "\n".join(f"- {t}" for t in tool_ids) or "- (none)"
        system = "\n\n".join(part for part in (manager.instructions, _PLANNING_INSTRUCTIONS % (agents, tools)) if part)

        response = await session.call_model(
            manager, session.base_messages(manager), purpose="plan", system_prompt=system
        )
        plan = parse_plan(response.text)
        known_agents = {p.id for p in session.participants}
        for i, step in enumerate(plan.steps):
            if step.agent and step.agent not in known_agents:
                raise OrchestrationError(f"Plan step {i} names unknown agent '{step.agent}'")
            if step.tool and session.run.document.tool(step.tool) is None:
                raise OrchestrationError(f"Plan step {i} names unknown tool '{step.tool}'")

        session.record(
            manager,
            response.text,
            kind=TurnKind.PLAN,
            metadata={"steps": [s.model_dump(exclude_defaults=True) for s in plan.steps]},
        )
        session.emit("plan_created", steps=len(plan.steps), manager=manager.id)
        logger.info("Plan created", node_id=session.node_id, steps=len(plan.steps))
        return plan

    async def _execute(self, session: StrategySession, index: int, step: MagenticStep) -> Any:
        if step.agent:
            participant = session.participant_for(step.agent)
            extra = [{"role": "user", "content": f"Context: {step.instructions}"}] if step.instructions else None
            outcome = await session.take_turn(participant, extra_messages=extra)
            return outcome.text

        result = await session.run.dispatch_tool(
            step.tool or "", step.arguments, node_id=session.node_id, call_id=f"step_{index}"
        )
        session.record(
            None,
            result.output,
            role="tool",
            kind=TurnKind.TOOL_RESULT,
            metadata={"tool": step.tool, "call_id": f"step_{index}", "success": result.success, "step": index},
        )
        return result.output
