"""agentflow.orchestration.handoff

Single active agent, switched when the active agent signals a handoff.

Intent is detected through four channels, highest priority first:

1. a call to the injected `handoff` / `complete` tools
2. a JSON action envelope in the reply text
3. a natural-language cue ("transfer to billing", "that's all")
4. deterministic rules matched against the latest user and assistant text

`force_handoff_tool` keeps only channel 1; any text reply is then the active
agent's final answer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from ..core.errors import HandoffCycleError, HandoffError, MaxHandoffsReachedError, MaxRoundsReachedError
from ..core.models import TurnKind
from ..logging import get_logger
from .actions import parse_action
from .base import Participant, StrategyResult, StrategySession, TurnOutcome, resolve_participant

logger = get_logger(__name__)

HANDOFF_TOOL = "handoff"
COMPLETE_TOOL = "complete"

HANDOFF_TOOL_SCHEMAS: List[Dict[str, Any]] = [
    {
        "name": HANDOFF_TOOL,
        "description": "Transfer the conversation to another agent.",
        "parameters": {
            "type": "object",
            "properties": {
                "to": {"type": "string", "description": "Id or name of the agent to hand off to."},
                "message": {"type": "string", "description": "Optional note for the next agent."},
            },
            "required": ["to"],
        },
    },
    {
        "name": COMPLETE_TOOL,
        "description": "Finish the conversation with a final answer.",
        "parameters": {
            "type": "object",
            "properties": {"message": {"type": "string", "description": "Final answer for the user."}},
        },
    },
]

_RE_HANDOFF = re.compile(
    r"""
    \b(?:hand[\s-]*off|handoff|transfer|delegate|connect|route)\b
    (?:\s+(?:you|this|it|them|(?:the|your)\s+(?:conversation|customer|user|request|case)))?
    (?:[^A-Za-z0-9@]+(?:to|with)\b)?
    [^A-Za-z0-9@]*
    (?:(?:the\s+)?(?:agent|assistant|team|specialist)\s+)?
    @?(?P<target>[A-Za-z0-9_.\-]+)
    """,
    re.IGNORECASE | re.VERBOSE,
)
_RE_COMPLETE = re.compile(r"\b(that'?s all|all set|nothing further|we are finished|task complete)\b", re.IGNORECASE)

RULE_MATCHERS = ("keywords_any", "keywords_all", "regex")


@dataclass(frozen=True)
class HandoffRule:
    id: str
    target: str
    matcher: str
    keywords: Tuple[str, ...] = ()
    pattern: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], index: int) -> "HandoffRule":
        matcher = str(raw.get("matcher") or "keywords_any")
        if matcher not in RULE_MATCHERS:
            raise HandoffError(f"Handoff rule #{index}: unknown matcher {matcher!r}")
        return cls(
            id=str(raw.get("id") or f"rule_{index}"),
            target=str(raw.get("target") or ""),
            matcher=matcher,
            keywords=tuple(str(k) for k in raw.get("keywords") or ()),
            pattern=raw.get("pattern"),
        )

    def matches(self, text: str) -> bool:
        lowered = text.lower()
        if self.matcher == "keywords_any":
            return any(k.lower() in lowered for k in self.keywords)
        if self.matcher == "keywords_all":
            return bool(self.keywords) and all(k.lower() in lowered for k in self.keywords)
        return bool(self.pattern) and re.search(self.pattern, text) is not None


@dataclass(frozen=True)
class HandoffOptions:
    max_handoffs: int = 4
    max_rounds: int = 32
    force_handoff_tool: bool = False
    aliases: Mapping[str, str] = field(default_factory=dict)
    rules: Tuple[HandoffRule, ...] = ()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "HandoffOptions":
        return cls(
            max_handoffs=int(raw.get("max_handoffs", 4)),
            max_rounds=int(raw.get("max_rounds", 32)),
            force_handoff_tool=bool(raw.get("force_handoff_tool", raw.get("forceHandoffTool", False))),
            aliases=dict(raw.get("aliases") or {}),
            rules=tuple(HandoffRule.from_dict(r, i) for i, r in enumerate(raw.get("rules") or [])),
        )


@dataclass(frozen=True)
class Intent:
    kind: str  # "respond" | "handoff" | "complete"
    text: str = ""
    target: Optional[str] = None
    source: Optional[str] = None  # tool | payload | parser | rule


class HandoffStrategy:
    name = "handoff"

    async def run(self, session: StrategySession) -> StrategyResult:
        opts = HandoffOptions.from_mapping(session.options)
        active = session.participants[0]
        roster = self._roster_message(session.participants)
        seen: Set[Tuple[str, str]] = set()
        handoffs = 0

        for _ in range(opts.max_rounds):
            outcome = await session.take_turn(
                active,
                extra_messages=[roster],
                extra_tools=HANDOFF_TOOL_SCHEMAS,
                intercept=(HANDOFF_TOOL, COMPLETE_TOOL),
                record=False,
            )
            intent = self._detect(session, opts, active, outcome)

            if intent.kind == "handoff":
                handoffs += 1
                if handoffs > opts.max_handoffs:
                    raise MaxHandoffsReachedError(f"More than {opts.max_handoffs} handoff(s) in one session")
                target = self._resolve(session, opts, active, intent.target or "")
                pair = (active.id, target.id)
                if pair in seen:
                    raise HandoffCycleError(f"Handoff {active.id} -> {target.id} repeated")
                seen.add(pair)
                session.record(
                    active,
                    intent.text or f"Handing off to {target.name}.",
                    kind=TurnKind.HANDOFF,
                    metadata={"to": target.id, "source": intent.source},
                )
                session.emit("handoff", **{"from": active.id, "to": target.id, "source": intent.source})
                logger.info("Handoff", node_id=session.node_id, src=active.id, dst=target.id, source=intent.source)
                active = target
                continue

            if intent.text:
                session.record(active, intent.text)
            session.emit("handoff_completed", agent=active.id, handoffs=handoffs, completed=intent.kind == "complete")
            return StrategyResult(output=intent.text, active_agent=active.id, metadata={"handoffs": handoffs})

        raise MaxRoundsReachedError(f"Handoff session exceeded {opts.max_rounds} round(s)")

    @staticmethod
    def _roster_message(participants: List[Participant]) -> Dict[str, Any]:
        lines = [f"- {p.id}" + (f": {p.agent.description}" if p.agent.description else "") for p in participants]
        return {
            "role": "system",
            "content": "Agents you can hand off to:\n"
            + "\n".join(lines)
            + "\nUse the `handoff` tool to transfer the conversation, or `complete` to finish.",
        }

    def _resolve(self, session: StrategySession, opts: HandoffOptions, active: Participant, raw: str) -> Participant:
        target = resolve_participant(raw, session.participants, aliases=opts.aliases)
        if target is None:
            raise HandoffError(f"Unknown handoff target '{raw}'")
        if target.id == active.id:
            raise HandoffError(f"Agent '{active.id}' cannot hand off to itself")
        return target

    def _detect(self, session: StrategySession, opts: HandoffOptions, active: Participant, outcome: TurnOutcome) -> Intent:
        text = outcome.text.strip()

        call = outcome.intercepted
        if call is not None:
            args = call.arguments
            if call.name == HANDOFF_TOOL:
                target = args.get("to") or args.get("target") or args.get("agent")
                return Intent("handoff", text=str(args.get("message") or ""), target=str(target or ""), source="tool")
            message = args.get("message") or args.get("result") or text
            return Intent("complete", text=str(message or ""), source="tool")

        if opts.force_handoff_tool:
            return Intent("respond", text=text)

        envelope = parse_action(text)
        if envelope is not None:
            if envelope.action == "handoff" and envelope.target:
                return Intent("handoff", text=envelope.message or "", target=envelope.target, source="payload")
            if envelope.action == "complete":
                return Intent("complete", text=envelope.final_text or "", source="payload")
            if envelope.action == "respond":
                text = envelope.message or text

        # Heuristic cues only count when they name a reachable agent.
        match = _RE_HANDOFF.search(text)
        if match:
            target = resolve_participant(match.group("target"), session.participants, aliases=opts.aliases)
            if target is not None and target.id != active.id:
                return Intent("handoff", text=text, target=target.id, source="parser")
        if _RE_COMPLETE.search(text):
            return Intent("complete", text=text, source="parser")

        latest_user = next((t.text for t in reversed(session.snapshot()) if t.role == "user"), "")
        haystack = f"{latest_user}\n{text}"
        for rule in opts.rules:
            if not rule.matches(haystack):
                continue
            target = resolve_participant(rule.target, session.participants, aliases=opts.aliases)
            if target is None:
                raise HandoffError(f"Handoff rule '{rule.id}' names unknown agent '{rule.target}'")
            if target.id != active.id:
                return Intent("handoff", text=text, target=target.id, source="rule")

        return Intent("respond", text=text)
