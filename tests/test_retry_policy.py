from __future__ import annotations

import asyncio
from typing import List

import pytest

from agentflow import (
    CallSettings,
    EngineConfig,
    FlowEngine,
    ProviderError,
    ProviderRetryError,
    ProviderTimeoutError,
    RetrySettings,
    ScriptedProvider,
    ScriptedReply,
)
from agentflow.core.errors import DecisionError
from agentflow.core.policy import RetryPolicy, call_with_retry

DOC = {
    "agents": [{"id": "bot"}],
    "flows": [
        {
            "id": "main",
            "entry": "in",
            "nodes": [
                {"id": "in", "type": "input"},
                {"id": "ask", "type": "agent", "agent": "bot"},
                {"id": "out", "type": "output"},
            ],
            "edges": [{"from": "in", "to": "ask"}, {"from": "ask", "to": "out"}],
        }
    ],
}


def _engine(script: list, *, attempts: int, timeout_s: float = 5.0) -> FlowEngine:
    settings = CallSettings(timeout_s=timeout_s, retry=RetrySettings(max_attempts=attempts, backoff_s=0.0))
    return FlowEngine(provider=ScriptedProvider(script), config=EngineConfig(call_settings=settings))


def test_backoff_shapes() -> None:
    exp = RetryPolicy(max_attempts=5, backoff_s=0.5, backoff="exponential", max_backoff_s=1.5)
    assert [exp.backoff_seconds(i) for i in (1, 2, 3, 4)] == [0.5, 1.0, 1.5, 1.5]

    fixed = RetryPolicy(max_attempts=5, backoff_s=0.5, backoff="fixed")
    assert [fixed.backoff_seconds(i) for i in (1, 2, 3)] == [0.5, 0.5, 0.5]


def test_policy_from_partial_settings() -> None:
    policy = RetryPolicy.from_settings(RetrySettings(max_attempts=3))
    assert policy.max_attempts == 3
    assert policy.backoff == "exponential"
    assert RetryPolicy.from_settings(None).max_attempts == 1


def test_call_with_retry_sleeps_between_attempts() -> None:
    calls = {"n": 0}
    slept: List[float] = []
    retried: List[int] = []

    async def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError("boom")
        return "ok"

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)

    result = asyncio.run(
        call_with_retry(
            flaky,
            policy=RetryPolicy(max_attempts=3, backoff_s=0.25),
            timeout_s=None,
            on_timeout=lambda t, a: TimeoutError(),
            on_exhausted=lambda err, n: ProviderRetryError("exhausted", attempts=n, cause=err),
            on_retry=lambda err, attempt, delay: retried.append(attempt),
            sleep=fake_sleep,
        )
    )
    assert result == "ok"
    assert slept == [0.25, 0.5]
    assert retried == [1, 2]


def test_non_retryable_errors_are_raised_immediately() -> None:
    calls = {"n": 0}

    async def decide() -> str:
        calls["n"] += 1
        raise DecisionError("no label")

    with pytest.raises(DecisionError):
        asyncio.run(
            call_with_retry(
                decide,
                policy=RetryPolicy(max_attempts=4),
                timeout_s=None,
                on_timeout=lambda t, a: TimeoutError(),
                on_exhausted=lambda err, n: ProviderRetryError("exhausted", attempts=n, cause=err),
            )
        )
    assert calls["n"] == 1


def test_provider_errors_are_retried_and_reported() -> None:
    engine = _engine([ProviderError("flaky"), ProviderError("flaky"), "ok"], attempts=3)
    result = engine.run(DOC, task_input="hello")

    assert result.final_output == "ok"
    retries = [e for e in result.events if e.type == "provider_retry"]
    assert [e.data["attempt"] for e in retries] == [1, 2]
    assert all(e.node_id == "ask" for e in retries)


def test_exhausted_retries_fail_the_run_with_partial_transcript() -> None:
    engine = _engine([ProviderError("down"), ProviderError("still down")], attempts=2)
    with pytest.raises(ProviderRetryError) as excinfo:
        engine.run(DOC, task_input="hello")

    err = excinfo.value
    assert err.attempts == 2
    assert err.node_id == "ask"
    assert isinstance(err.cause, ProviderError)
    assert [t.text for t in err.transcript] == ["hello"]
    assert err.events[-1].type == "run_failed"


def test_timeout_is_a_typed_provider_error() -> None:
    engine = _engine([ScriptedReply("too late", delay_s=0.5)], attempts=1, timeout_s=0.05)
    with pytest.raises(ProviderRetryError) as excinfo:
        engine.run(DOC, task_input="hello")
    assert isinstance(excinfo.value.cause, ProviderTimeoutError)
