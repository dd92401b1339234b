"""agentflow.orchestration.concurrent

Fan-out: every participant answers the same transcript snapshot, the calls
run concurrently, and the replies are aggregated once all of them are in.
"""

from __future__ import annotations

import asyncio
from typing import Any, List

from ..core.errors import OrchestrationError
from .base import StrategyResult, StrategySession, TurnOutcome

AGGREGATES = ("concat", "list")


class ConcurrentStrategy:
    name = "concurrent"

    async def run(self, session: StrategySession) -> StrategyResult:
        aggregate = str(session.options.get("aggregate") or "concat").lower()
        if aggregate not in AGGREGATES:
            raise OrchestrationError(f"Unknown aggregate mode {aggregate!r}; expected one of {AGGREGATES}")

        snapshot = session.snapshot()
        tasks = [
            asyncio.ensure_future(session.take_turn(p, snapshot=snapshot, record=False)) for p in session.participants
        ]
        try:
            outcomes: List[TurnOutcome] = list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        # Replies are committed in participant order, not completion order.
        for outcome in outcomes:
            session.record(outcome.participant, outcome.text)

        output: Any
        if aggregate == "list":
            output = [{"agent": o.participant.id, "content": o.text} for o in outcomes]
        else:
            output = "\n\n".join(f"{o.participant.name}: {o.text}" for o in outcomes)
        session.emit("concurrent_aggregated", agents=[o.participant.id for o in outcomes], aggregate=aggregate)
        return StrategyResult(output=output, metadata={"aggregate": aggregate})
