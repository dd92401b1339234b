"""agentflow.core.config

Engine configuration.

`EngineConfig` holds engine-wide defaults and the guards that keep a run
bounded (tool-loop depth, subflow depth). It also pins down the behaviors
that have more than one reasonable reading:

- `call_settings.retry.backoff`: provider retry backoff shape
  ("exponential" by default, or "fixed").
- `max_tool_rounds`: how many model->tools->model rounds one agent turn may take.
- `detached_branches`: what a non-converging Parallel branch owes the run.
  "require_output" (default) means every live branch must end in an Output
  (or join a node that leads to one); a branch that dead-ends fails the run.
  "best_effort" only records such dead ends as events.

`RunOptions` carries the per-call knobs of `FlowEngine.run`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, Optional

from ..graph.models import CallSettings, RetrySettings

DETACHED_BRANCH_POLICIES = ("require_output", "best_effort")


def _default_call_settings() -> CallSettings:
    return CallSettings(
        timeout_s=60.0,
        retry=RetrySettings(max_attempts=3, backoff_s=0.5, backoff="exponential", max_backoff_s=8.0),
    )


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults and bounds.

    Attributes:
        default_strategy: Orchestration strategy for agent nodes that do not name one.
        call_settings: Lowest layer of the node > agent > engine call-settings merge.
        max_tool_rounds: Tool-loop depth guard per agent turn.
        tool_errors_to_agent: Report tool failures inside an agent turn back to the
            agent as error results (a corrective turn) instead of failing the run.
        max_subflow_depth: Maximum nesting of subflow invocations.
        detached_branches: Policy for non-converging Parallel branches (see module doc).
        promote_subflow_transcript: Append a finished child run's turns to the parent transcript.
        log_level: Level applied by `agentflow.logging.configure_logging`.
    """

    default_strategy: str = "sequential"
    call_settings: CallSettings = field(default_factory=_default_call_settings)
    max_tool_rounds: int = 4
    tool_errors_to_agent: bool = True
    max_subflow_depth: int = 8
    detached_branches: str = "require_output"
    promote_subflow_transcript: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.detached_branches not in DETACHED_BRANCH_POLICIES:
            raise ValueError(f"detached_branches must be one of {DETACHED_BRANCH_POLICIES}, got {self.detached_branches!r}")
        if self.max_tool_rounds < 0:
            raise ValueError("max_tool_rounds must be >= 0")
        if self.max_subflow_depth < 1:
            raise ValueError("max_subflow_depth must be >= 1")

    def with_overrides(self, **kwargs: Any) -> "EngineConfig":
        return replace(self, **kwargs)

    @classmethod
    def from_env(cls, prefix: str = "AGENTFLOW_", environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build a config from environment variables (unset variables keep defaults).

        Recognized: DEFAULT_STRATEGY, MAX_TOOL_ROUNDS, MAX_SUBFLOW_DEPTH, DETACHED_BRANCHES,
        LOG_LEVEL, MODEL, TIMEOUT_S, RETRY_MAX_ATTEMPTS, RETRY_BACKOFF_S, RETRY_BACKOFF.
        """
        env = os.environ if environ is None else environ

        def _get(name: str) -> Optional[str]:
            value = env.get(prefix + name)
            return value.strip() if isinstance(value, str) and value.strip() else None

        base = cls()
        kwargs: Dict[str, Any] = {}
        if _get("DEFAULT_STRATEGY"):
            kwargs["default_strategy"] = _get("DEFAULT_STRATEGY")
        if _get("MAX_TOOL_ROUNDS"):
            kwargs["max_tool_rounds"] = int(_get("MAX_TOOL_ROUNDS"))  # type: ignore[arg-type]
        if _get("MAX_SUBFLOW_DEPTH"):
            kwargs["max_subflow_depth"] = int(_get("MAX_SUBFLOW_DEPTH"))  # type: ignore[arg-type]
        if _get("DETACHED_BRANCHES"):
            kwargs["detached_branches"] = _get("DETACHED_BRANCHES")
        if _get("LOG_LEVEL"):
            kwargs["log_level"] = _get("LOG_LEVEL")

        retry = base.call_settings.retry or RetrySettings()
        retry = RetrySettings(
            max_attempts=int(_get("RETRY_MAX_ATTEMPTS")) if _get("RETRY_MAX_ATTEMPTS") else retry.max_attempts,
            backoff_s=float(_get("RETRY_BACKOFF_S")) if _get("RETRY_BACKOFF_S") else retry.backoff_s,
            backoff=_get("RETRY_BACKOFF") or retry.backoff,
            max_backoff_s=retry.max_backoff_s,
        )
        kwargs["call_settings"] = replace(
            base.call_settings,
            model=_get("MODEL") or base.call_settings.model,
            timeout_s=float(_get("TIMEOUT_S")) if _get("TIMEOUT_S") else base.call_settings.timeout_s,
            retry=retry,
        )
        return cls(**kwargs)


EventCallback = Callable[[Any], None]


@dataclass(frozen=True)
class RunOptions:
    """Per-run options for `FlowEngine.run`.

    `call_settings` is layered over the engine's own defaults, so a caller can
    change e.g. the model for one run without rebuilding the engine.
    """

    strategy: Optional[str] = None
    call_settings: Optional[CallSettings] = None
    variables: Mapping[str, Any] = field(default_factory=dict)
    on_event: Optional[EventCallback] = None
    run_id: Optional[str] = None

    @classmethod
    def coerce(cls, raw: Any) -> "RunOptions":
        if raw is None:
            return cls()
        if isinstance(raw, RunOptions):
            return raw
        if isinstance(raw, Mapping):
            settings = raw.get("call_settings")
            return cls(
                strategy=raw.get("strategy"),
                call_settings=CallSettings.from_dict(settings) if settings is not None else None,
                variables=dict(raw.get("variables") or {}),
                on_event=raw.get("on_event"),
                run_id=raw.get("run_id"),
            )
        raise TypeError(f"Unsupported run options type: {type(raw).__name__}")
