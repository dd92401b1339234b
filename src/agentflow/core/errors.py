"""agentflow.core.errors

Error taxonomy for flow runs.

- Validation errors are raised before any node executes.
- Structural errors (dead ends, handoff cycles, subflow recursion) abort the run.
- Provider errors are retried per CallSettings, then surface with the last cause.
- Tool errors are distinct from provider errors and only retried when the tool
  definition carries a retry policy.
- Decision errors are always fatal.

Every error carries the node id, attempt count and underlying cause when known.
The engine attaches `transcript` and `events` snapshots before re-raising.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class AgentFlowError(Exception):
    """Base class for every error raised by the engine."""

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        node_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        attempts: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.flow_id = flow_id
        self.attempts = attempts
        self.cause = cause
        # Filled in by the engine when the run aborts.
        self.transcript: List[Any] = []
        self.events: List[Any] = []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "type": type(self).__name__,
            "message": self.message,
            "node_id": self.node_id,
            "flow_id": self.flow_id,
            "attempts": self.attempts,
            "cause": repr(self.cause) if self.cause is not None else None,
        }

    def __str__(self) -> str:
        where = []
        if self.flow_id:
            where.append(f"flow={self.flow_id}")
        if self.node_id:
            where.append(f"node={self.node_id}")
        if self.attempts:
            where.append(f"attempts={self.attempts}")
        if not where:
            return self.message
        return f"{self.message} ({', '.join(where)})"


# ---------------------------------------------------------------------------
# (a) validation
# ---------------------------------------------------------------------------


class FlowValidationError(AgentFlowError):
    kind = "validation"

    def __init__(self, errors: Sequence[str] | str, **kwargs: Any):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        message = "Invalid flow document: " + "; ".join(self.errors)
        super().__init__(message, **kwargs)


class ConditionError(FlowValidationError):
    """A guard or break condition could not be parsed or evaluated."""

    def __init__(self, expression: str, reason: str, **kwargs: Any):
        self.expression = expression
        super().__init__([f"condition {expression!r}: {reason}"], **kwargs)


# ---------------------------------------------------------------------------
# (b) structural runtime errors
# ---------------------------------------------------------------------------


class StructuralError(AgentFlowError):
    kind = "structural"


class DeadEndError(StructuralError):
    def __init__(self, message: str, *, dead_ends: Sequence[str] = (), **kwargs: Any):
        super().__init__(message, **kwargs)
        self.dead_ends = list(dead_ends)


class SubflowCycleError(FlowValidationError, StructuralError):
    kind = "structural"

    def __init__(self, path: Sequence[str], **kwargs: Any):
        self.path = list(path)
        super().__init__([f"subflow cycle detected: {' -> '.join(self.path)}"], **kwargs)


class SubflowDepthError(StructuralError):
    pass


class HandoffError(StructuralError):
    pass


class HandoffCycleError(HandoffError):
    pass


class MaxHandoffsReachedError(HandoffError):
    pass


class MaxRoundsReachedError(StructuralError):
    pass


class OrchestrationError(StructuralError):
    """A strategy could not make progress (bad plan, unknown participant...)."""


# ---------------------------------------------------------------------------
# (c) provider errors
# ---------------------------------------------------------------------------


class ProviderError(AgentFlowError):
    kind = "provider"


class ProviderTimeoutError(ProviderError):
    pass


class ProviderRetryError(ProviderError):
    """Raised after every attempt allowed by the retry policy failed."""


# ---------------------------------------------------------------------------
# (d) tool errors
# ---------------------------------------------------------------------------


class ToolExecutionError(AgentFlowError):
    kind = "tool"

    def __init__(self, message: str, *, tool_id: Optional[str] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.tool_id = tool_id

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["tool_id"] = self.tool_id
        return out


class ToolLoopError(ToolExecutionError):
    """The agent kept requesting tools past the tool-loop depth guard."""


# ---------------------------------------------------------------------------
# (e) decision errors
# ---------------------------------------------------------------------------


class DecisionError(AgentFlowError):
    kind = "decision"
