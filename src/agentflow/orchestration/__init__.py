"""agentflow.orchestration

Turn-taking strategies used by agent nodes.
"""

from typing import Dict

from .base import OrchestrationStrategy, Participant, StrategyResult, StrategySession, TurnOutcome, make_participant
from .concurrent import ConcurrentStrategy
from .group_chat import GroupChatStrategy
from .handoff import HandoffStrategy
from .magentic import MagenticStrategy
from .sequential import SequentialStrategy

STRATEGIES: Dict[str, OrchestrationStrategy] = {
    s.name: s
    for s in (
        SequentialStrategy(),
        ConcurrentStrategy(),
        HandoffStrategy(),
        GroupChatStrategy(),
        MagenticStrategy(),
    )
}


def get_strategy(name: str) -> OrchestrationStrategy:
    key = str(name or "").strip().lower().replace("-", "_")
    key = {"plan_execute": "magentic", "plan": "magentic"}.get(key, key)
    try:
        return STRATEGIES[key]
    except KeyError:
        raise KeyError(f"Unknown orchestration strategy '{name}'; available: {sorted(STRATEGIES)}") from None


__all__ = [
    "STRATEGIES",
    "get_strategy",
    "OrchestrationStrategy",
    "Participant",
    "StrategyResult",
    "StrategySession",
    "TurnOutcome",
    "make_participant",
]
