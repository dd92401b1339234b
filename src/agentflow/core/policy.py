"""agentflow.core.policy

Retry and timeout policy for provider and tool calls.

Backoff shapes:
- exponential: `backoff_s * 2**(attempt-1)`, capped at `max_backoff_s`
- fixed: `backoff_s` between every attempt
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from ..graph.models import RetrySettings
from ..logging import get_logger
from .errors import AgentFlowError, DecisionError, FlowValidationError, StructuralError

logger = get_logger(__name__)

# Errors that are never worth another attempt.
NON_RETRYABLE: Tuple[Type[BaseException], ...] = (FlowValidationError, StructuralError, DecisionError)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff_s: float = 0.0
    backoff: str = "exponential"
    max_backoff_s: float = 60.0

    @classmethod
    def from_settings(cls, settings: Optional[RetrySettings]) -> "RetryPolicy":
        """Resolve layered (possibly partial) settings into a concrete policy."""
        if settings is None:
            return NO_RETRY
        return cls(
            max_attempts=max(1, settings.max_attempts if settings.max_attempts is not None else 1),
            backoff_s=max(0.0, settings.backoff_s if settings.backoff_s is not None else 0.0),
            backoff=settings.backoff or "exponential",
            max_backoff_s=settings.max_backoff_s if settings.max_backoff_s is not None else 60.0,
        )

    def backoff_seconds(self, attempt: int) -> float:
        """Seconds to wait after failed `attempt` (1-indexed)."""
        if self.backoff == "fixed":
            return self.backoff_s
        delay = self.backoff_s * (2 ** (attempt - 1))
        return min(delay, self.max_backoff_s)


NO_RETRY = RetryPolicy(max_attempts=1)


def normalize_timeout_s(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    # Non-positive values mean "unlimited".
    return None if f <= 0 else f


async def call_with_retry(
    fn: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    timeout_s: Optional[float],
    on_timeout: Callable[[float, int], BaseException],
    on_exhausted: Callable[[BaseException, int], AgentFlowError],
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Run `fn` with a per-attempt timeout and the retry policy.

    `on_timeout(timeout_s, attempt)` builds the exception recorded for a timed
    out attempt; `on_exhausted(last_error, attempts)` builds the terminal error.
    Cancellation is never retried.
    """
    timeout = normalize_timeout_s(timeout_s)
    last_exc: Optional[BaseException] = None
    attempt = 0
    for attempt in range(1, policy.max_attempts + 1):
        try:
            if timeout is None:
                return await fn()
            return await asyncio.wait_for(fn(), timeout=timeout)
        except asyncio.TimeoutError:
            last_exc = on_timeout(timeout or 0.0, attempt)
        except NON_RETRYABLE:
            raise
        except Exception as e:
            last_exc = e

        if attempt < policy.max_attempts:
            delay = policy.backoff_seconds(attempt)
            logger.warning("Retrying call", attempt=attempt, delay_s=delay, error=str(last_exc))
            if on_retry is not None:
                on_retry(last_exc, attempt, delay)
            if delay > 0:
                await sleep(delay)

    assert last_exc is not None
    raise on_exhausted(last_exc, attempt) from last_exc
