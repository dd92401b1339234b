"""agentflow.orchestration.base

Shared machinery for orchestration strategies.

A `StrategySession` is what an agent (or decision) node hands to a strategy:
the participants, the strategy options, and the primitives every strategy is
built from:

- `call_model`: one provider call with the participant's layered call
  settings (timeout per attempt, retry with backoff, typed terminal error)
- `take_turn`: a full agent turn, including the tool loop
- `classify`: a constrained call that must name one of a set of labels
- `record`: append a turn to the run transcript
"""

from __future__ import annotations

import difflib
import inspect
import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from ..core.errors import DecisionError, ProviderRetryError, ProviderTimeoutError, ToolExecutionError, ToolLoopError
from ..core.models import ModelRequest, ModelResponse, ToolCall, ToolResult, Turn, TurnKind
from ..core.policy import RetryPolicy, call_with_retry
from ..graph.models import AgentDefinition, AgentNodeSpec, CallSettings, FlowNode
from ..logging import get_logger
from .actions import extract_json_object

if TYPE_CHECKING:
    from ..core.interpreter import FlowRun

logger = get_logger(__name__)


@dataclass(frozen=True)
class Participant:
    agent: AgentDefinition
    instructions: Optional[str]
    settings: CallSettings
    tools: Tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.agent.id

    @property
    def name(self) -> str:
        return self.agent.display_name

    @property
    def model(self) -> Optional[str]:
        return self.settings.model or self.agent.model


@dataclass
class TurnOutcome:
    participant: Participant
    text: str
    response: ModelResponse
    intercepted: Optional[ToolCall] = None
    turn: Optional[Turn] = None
    tool_results: List[ToolResult] = field(default_factory=list)


@dataclass
class StrategyResult:
    output: Any
    active_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class OrchestrationStrategy(Protocol):
    name: str

    async def run(self, session: "StrategySession") -> StrategyResult: ...


def make_participant(
    run: "FlowRun",
    agent: AgentDefinition,
    *,
    node_spec: Optional[AgentNodeSpec] = None,
    primary: bool = False,
) -> Participant:
    """Build a participant with node > agent > engine call settings.

    Prompt and tool overrides on the node only apply to the node's own agent.
    """
    prompt_ref = node_spec.prompt if (node_spec is not None and primary and node_spec.prompt) else agent.system_prompt
    instructions = run.services.prompts.resolve(prompt_ref) if prompt_ref else None
    tools = agent.tools
    if node_spec is not None and primary and node_spec.tools is not None:
        tools = node_spec.tools
    settings = CallSettings.layered(
        node_spec.parameters if node_spec is not None else None,
        agent.defaults,
        run.services.call_settings,
    )
    return Participant(agent=agent, instructions=instructions, settings=settings, tools=tuple(tools))


def render_messages(turns: Iterable[Turn], *, for_agent: Optional[str] = None) -> List[Dict[str, Any]]:
    """Render transcript turns as chat messages for a provider request."""
    messages: List[Dict[str, Any]] = []
    for t in turns:
        if t.kind == TurnKind.TOOL_CALL:
            messages.append(
                {
                    "role": "assistant",
                    "content": t.text,
                    "tool_calls": [{"id": c.id, "name": c.name, "arguments": dict(c.arguments)} for c in t.tool_calls],
                }
            )
        elif t.role == "tool":
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": t.metadata.get("call_id"),
                    "name": t.metadata.get("tool"),
                    "content": t.text,
                }
            )
        elif t.role == "assistant":
            msg: Dict[str, Any] = {"role": "assistant", "content": t.text}
            if t.agent_id and t.agent_id != for_agent:
                msg["name"] = t.agent_id
            messages.append(msg)
        else:
            messages.append({"role": t.role, "content": t.text})
    return messages


def resolve_participant(
    raw: str,
    participants: Sequence[Participant],
    *,
    aliases: Optional[Mapping[str, str]] = None,
) -> Optional[Participant]:
    """Match a free-form agent reference: alias, id or name, unique prefix, close match."""
    want = str(raw or "").strip().lstrip("@").strip().lower()
    if not want:
        return None
    alias_map = {str(k).lower(): str(v).lower() for k, v in (aliases or {}).items()}
    want = alias_map.get(want, want)
    for p in participants:
        if want in (p.id.lower(), p.name.lower()):
            return p
    prefixed = [p for p in participants if p.id.lower().startswith(want) or p.name.lower().startswith(want)]
    if len(prefixed) == 1:
        return prefixed[0]
    by_id = {p.id.lower(): p for p in participants}
    close = difflib.get_close_matches(want, list(by_id), n=1, cutoff=0.75)
    return by_id[close[0]] if close else None


def _normalize_label(text: str) -> str:
    return text.strip().strip("`'\".,:;!").strip().lower()


def match_label(text: str, labels: Sequence[str]) -> Optional[str]:
    """Map a classifier reply to one of `labels`; None if it names none of them."""
    by_norm = {label.lower(): label for label in labels}
    obj = extract_json_object(text)
    if isinstance(obj, dict):
        for key in ("label", "choice", "category", "output", "route"):
            if isinstance(obj.get(key), str):
                return by_norm.get(_normalize_label(obj[key]))
    candidate = _normalize_label(text)
    if candidate in by_norm:
        return by_norm[candidate]
    first_line = _normalize_label(text.strip().splitlines()[0]) if text.strip() else ""
    return by_norm.get(first_line)


class StrategySession:
    def __init__(
        self,
        run: "FlowRun",
        node: FlowNode,
        participants: Sequence[Participant],
        *,
        options: Optional[Mapping[str, Any]] = None,
        context_message: Optional[str] = None,
        strategy: str = "sequential",
    ):
        if not participants:
            raise ValueError("A strategy session needs at least one participant")
        self.run = run
        self.node = node
        self.participants = list(participants)
        self.options: Dict[str, Any] = dict(options or {})
        self.context_message = context_message
        self.strategy = strategy

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def node_id(self) -> str:
        return self.node.id

    def snapshot(self) -> List[Turn]:
        return self.run.ctx.transcript.snapshot()

    def roster(self) -> Dict[str, Participant]:
        return {p.id: p for p in self.participants}

    def participant_for(self, agent_id: str) -> Participant:
        for p in self.participants:
            if p.id == agent_id:
                return p
        return make_participant(self.run, self.run.agent(agent_id))

    def emit(self, type: str, **data: Any) -> None:
        self.run.emit(type, self.node_id, strategy=self.strategy, **data)

    def record(
        self,
        participant: Optional[Participant],
        content: Any,
        *,
        role: str = "assistant",
        kind: TurnKind = TurnKind.MESSAGE,
        metadata: Optional[Dict[str, Any]] = None,
        tool_calls: Tuple[ToolCall, ...] = (),
    ) -> Optional[Turn]:
        return self.run.append_turn(
            Turn(
                role=role,
                content=content,
                agent_id=participant.id if participant else None,
                node_id=self.node_id,
                kind=kind,
                tool_calls=tuple(tool_calls),
                metadata=dict(metadata or {}),
            )
        )

    def base_messages(self, participant: Participant, snapshot: Optional[List[Turn]] = None) -> List[Dict[str, Any]]:
        turns = snapshot if snapshot is not None else self.snapshot()
        messages = render_messages(turns, for_agent=participant.id)
        if self.context_message:
            messages.append({"role": "user", "content": f"Context:\n{self.context_message}"})
        return messages

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def call_model(
        self,
        participant: Participant,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        purpose: str = "turn",
        system_prompt: Optional[str] = None,
    ) -> ModelResponse:
        settings = participant.settings
        request = ModelRequest(
            model=participant.model,
            messages=messages,
            system_prompt=system_prompt if system_prompt is not None else participant.instructions,
            tools=tools or None,
            settings=settings,
            agent_id=participant.id,
            node_id=self.node_id,
            purpose=purpose,
        )
        provider = self.run.services.provider
        node_id = self.node_id
        attempts = 0

        async def _attempt() -> ModelResponse:
            nonlocal attempts
            attempts += 1
            result = provider.complete(request)
            if inspect.isawaitable(result):
                result = await result
            return ModelResponse.from_any(result)

        started = time.monotonic()
        response = await call_with_retry(
            _attempt,
            policy=RetryPolicy.from_settings(settings.retry),
            timeout_s=settings.timeout_s,
            on_timeout=lambda timeout, attempt: ProviderTimeoutError(
                f"Model call timed out after {timeout}s", node_id=node_id, attempts=attempt
            ),
            on_exhausted=lambda err, attempts: ProviderRetryError(
                f"Model call for agent '{participant.id}' failed after {attempts} attempt(s): {err}",
                node_id=node_id,
                attempts=attempts,
                cause=err,
            ),
            on_retry=lambda err, attempt, delay: self.emit(
                "provider_retry", agent=participant.id, attempt=attempt, delay_s=delay, error=str(err)
            ),
        )
        elapsed = time.monotonic() - started
        self.run.ctx.usage_for(participant.id).add_model_call(response.usage, attempts=attempts, duration_s=elapsed)
        self.emit(
            "model_call",
            agent=participant.id,
            purpose=purpose,
            attempts=attempts,
            duration_s=round(elapsed, 4),
            usage=response.usage,
        )
        return response

    async def take_turn(
        self,
        participant: Participant,
        *,
        extra_messages: Optional[List[Dict[str, Any]]] = None,
        extra_tools: Optional[List[Dict[str, Any]]] = None,
        intercept: Iterable[str] = (),
        snapshot: Optional[List[Turn]] = None,
        record: bool = True,
    ) -> TurnOutcome:
        """Run one agent turn, executing requested tools until a text reply.

        Calls to a name in `intercept` are not executed; the turn stops and
        returns the call for the strategy to act on (handoff, completion).
        Tool turns are always recorded; `record` only controls the final reply.
        """
        intercepted_names = set(intercept)
        messages = self.base_messages(participant, snapshot)
        messages.extend(extra_messages or [])
        schemas = self.run.services.tools.schemas(list(participant.tools)) + list(extra_tools or [])
        max_rounds = self.run.config.max_tool_rounds
        results: List[ToolResult] = []

        for depth in range(max_rounds + 1):
            response = await self.call_model(participant, messages, tools=schemas)
            intercepted = next((c for c in response.tool_calls if c.name in intercepted_names), None)
            if intercepted is not None:
                return TurnOutcome(participant, response.text, response, intercepted=intercepted, tool_results=results)
            if not response.tool_calls:
                turn = self.record(participant, response.text) if record else None
                return TurnOutcome(participant, response.text, response, turn=turn, tool_results=results)
            if depth == max_rounds:
                break
            await self._run_tools(participant, response, messages, results)

        # Depth guard reached: one corrective call with tools withheld.
        self.emit("tool_loop_limit", agent=participant.id, max_tool_rounds=max_rounds)
        messages.append(
            {
                "role": "user",
                "content": "Tool budget exhausted. Answer with the information gathered so far without calling tools.",
            }
        )
        response = await self.call_model(participant, messages, tools=None)
        if response.tool_calls:
            raise ToolLoopError(
                f"Agent '{participant.id}' kept requesting tools after {max_rounds} tool round(s)",
                node_id=self.node_id,
                attempts=max_rounds + 1,
            )
        turn = self.record(participant, response.text) if record else None
        return TurnOutcome(participant, response.text, response, turn=turn, tool_results=results)

    async def _run_tools(
        self,
        participant: Participant,
        response: ModelResponse,
        messages: List[Dict[str, Any]],
        results: List[ToolResult],
    ) -> None:
        calls = list(response.tool_calls)
        self.record(participant, response.content or "", kind=TurnKind.TOOL_CALL, tool_calls=tuple(calls))
        messages.append(
            {
                "role": "assistant",
                "content": response.content or "",
                "tool_calls": [{"id": c.id, "name": c.name, "arguments": dict(c.arguments)} for c in calls],
            }
        )
        for call in calls:
            try:
                if call.name not in participant.tools:
                    raise ToolExecutionError(
                        f"Tool '{call.name}' is not available to agent '{participant.id}'",
                        tool_id=call.name,
                        node_id=self.node_id,
                    )
                result = await self.run.dispatch_tool(call.name, call.arguments, node_id=self.node_id, call_id=call.id)
                content: Any = result.output
                success = True
            except ToolExecutionError as e:
                if not self.run.config.tool_errors_to_agent:
                    raise
                result = ToolResult(call_id=call.id, tool_id=call.name, success=False, error=str(e), node_id=self.node_id)
                content = {"error": str(e)}
                success = False
            results.append(result)
            self.run.ctx.usage_for(participant.id).add_tool_call(success=success)
            self.record(
                participant,
                content,
                role="tool",
                kind=TurnKind.TOOL_RESULT,
                metadata={"tool": call.name, "call_id": call.id, "success": success},
            )
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call.id,
                    "name": call.name,
                    "content": content if isinstance(content, str) else json.dumps(content, default=str),
                }
            )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    async def classify(self, participant: Participant, labels: Sequence[str], *, instructions: Optional[str] = None) -> str:
        system = "\n\n".join(
            part
            for part in (
                instructions or participant.instructions,
                "Classify the conversation. Reply with exactly one of these labels and nothing else: "
                + ", ".join(labels),
            )
            if part
        )
        response = await self.call_model(
            participant,
            self.base_messages(participant),
            purpose="classification",
            system_prompt=system,
        )
        label = match_label(response.text, labels)
        self.record(
            participant,
            response.text,
            kind=TurnKind.CLASSIFICATION,
            metadata={"label": label, "labels": list(labels)},
        )
        if label is None:
            raise DecisionError(
                f"Classifier answered {response.text!r}, which is not one of {list(labels)}",
                node_id=self.node_id,
            )
        return label
