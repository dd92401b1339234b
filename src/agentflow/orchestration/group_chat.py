"""agentflow.orchestration.group_chat

Moderated group conversation. After each turn a moderator picks the next
speaker: `round_robin` cycles through the participants, `llm` asks a
moderator agent. The chat ends when the moderator concludes, when a reply
carries a completion envelope, or when `max_rounds` turns have been taken.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..core.errors import OrchestrationError
from .actions import extract_json_object, parse_action
from .base import Participant, StrategyResult, StrategySession, TurnOutcome, resolve_participant

MODERATORS = ("round_robin", "llm")
_DONE_WORDS = {"done", "conclude", "concluded", "finish", "stop"}


@dataclass(frozen=True)
class GroupChatOptions:
    max_rounds: int = 6
    moderator: str = "round_robin"
    moderator_agent: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "GroupChatOptions":
        moderator = str(raw.get("moderator") or "round_robin").lower()
        if moderator not in MODERATORS:
            raise OrchestrationError(f"Unknown group chat moderator {moderator!r}; expected one of {MODERATORS}")
        return cls(
            max_rounds=int(raw.get("max_rounds", 6)),
            moderator=moderator,
            moderator_agent=raw.get("moderator_agent"),
        )


class GroupChatStrategy:
    name = "group_chat"

    async def run(self, session: StrategySession) -> StrategyResult:
        opts = GroupChatOptions.from_mapping(session.options)
        moderator = session.participant_for(opts.moderator_agent) if opts.moderator_agent else session.participants[0]
        last: Optional[TurnOutcome] = None
        output: Any = None
        reason = "budget"
        turns = 0

        for round_no in range(opts.max_rounds):
            if opts.moderator == "llm":
                speaker = await self._select(session, moderator)
                if speaker is None:
                    reason = "moderator"
                    break
            else:
                speaker = session.participants[round_no % len(session.participants)]
            session.emit("speaker_selected", agent=speaker.id, round=round_no + 1)

            last = await session.take_turn(speaker)
            turns += 1
            output = last.text
            envelope = parse_action(last.text)
            if envelope is not None and envelope.action == "complete":
                output = envelope.final_text or last.text
                reason = "completed"
                break

        session.emit("group_chat_finished", reason=reason, turns=turns)
        return StrategyResult(
            output=output,
            active_agent=last.participant.id if last else None,
            metadata={"reason": reason, "turns": turns},
        )

    async def _select(self, session: StrategySession, moderator: Participant) -> Optional[Participant]:
        """Ask the moderator who speaks next; None means the chat is over."""
        roster = "\n".join(
            f"- {p.id}" + (f": {p.agent.description}" if p.agent.description else "") for p in session.participants
        )
        system = "\n\n".join(
            part
            for part in (
                moderator.instructions,
                "You moderate a group conversation between these participants:\n"
                + roster
                + "\nReply with the id of the participant who should speak next, "
                'or DONE when the conversation has reached a conclusion. JSON {"next": "<id>"} is also accepted.',
            )
            if part
        )
        response = await session.call_model(
            moderator,
            session.base_messages(moderator),
            purpose="moderation",
            system_prompt=system,
        )
        text = response.text.strip()
        obj = extract_json_object(text)
        if obj is not None:
            envelope = parse_action(obj)
            if envelope is not None and envelope.action == "complete":
                return None
            choice = obj.get("next") or obj.get("speaker") or obj.get("agent")
            if choice is None:
                raise OrchestrationError(f"Moderator reply names no speaker: {text!r}")
            text = str(choice)
        if text.strip(" .!").lower() in _DONE_WORDS:
            return None
        speaker = resolve_participant(text, session.participants)
        if speaker is None:
            raise OrchestrationError(f"Moderator picked unknown participant {text!r}")
        return speaker
