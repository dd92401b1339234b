"""agentflow.orchestration.sequential

Each participant takes one turn, in order. Later participants see earlier
turns because every reply is appended to the shared transcript.
"""

from __future__ import annotations

from typing import Optional

from .base import StrategyResult, StrategySession, TurnOutcome


class SequentialStrategy:
    name = "sequential"

    async def run(self, session: StrategySession) -> StrategyResult:
        last: Optional[TurnOutcome] = None
        for participant in session.participants:
            last = await session.take_turn(participant)
            session.emit("strategy_turn", agent=participant.id)
        assert last is not None
        return StrategyResult(
            output=last.text,
            active_agent=last.participant.id,
            metadata={"turns": len(session.participants)},
        )
