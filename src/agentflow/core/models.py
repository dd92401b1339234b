"""agentflow.core.models

Runtime records: transcript turns, model requests/responses, tool results,
run events and the final run result.

These are plain dataclasses so they serialize with `dataclasses.asdict` and
can be written to the JSONL event ledger as-is.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..graph.models import CallSettings


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


class TurnKind(str, Enum):
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    CLASSIFICATION = "classification"
    PLAN = "plan"
    HANDOFF = "handoff"


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    @classmethod
    def from_any(cls, raw: Any) -> "ToolCall":
        if isinstance(raw, ToolCall):
            return raw
        if isinstance(raw, dict):
            fn = raw.get("function") if isinstance(raw.get("function"), dict) else {}
            name = raw.get("name") or fn.get("name") or ""
            args = raw.get("arguments", fn.get("arguments"))
            if isinstance(args, str):
                try:
                    args = json.loads(args) if args.strip() else {}
                except ValueError:
                    args = {"input": args}
            call_id = raw.get("id") or raw.get("call_id") or new_id()
            return cls(name=str(name), arguments=dict(args or {}), id=str(call_id))
        return cls(
            name=str(getattr(raw, "name", "") or ""),
            arguments=dict(getattr(raw, "arguments", None) or {}),
            id=str(getattr(raw, "call_id", None) or getattr(raw, "id", None) or new_id()),
        )


@dataclass(frozen=True)
class Turn:
    """One entry of the run transcript.

    `seq` is assigned by the transcript on append and is strictly increasing.
    """

    role: str  # user | assistant | tool | system
    content: Any
    agent_id: Optional[str] = None
    node_id: Optional[str] = None
    kind: TurnKind = TurnKind.MESSAGE
    tool_calls: tuple = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    seq: int = -1

    @property
    def text(self) -> str:
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, ensure_ascii=False, default=str)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["kind"] = self.kind.value
        return out


@dataclass
class ModelRequest:
    model: Optional[str]
    messages: List[Dict[str, Any]]
    system_prompt: Optional[str] = None
    tools: Optional[List[Dict[str, Any]]] = None
    settings: CallSettings = field(default_factory=CallSettings)
    agent_id: Optional[str] = None
    node_id: Optional[str] = None
    purpose: str = "turn"  # turn | classification | plan | moderation

    @property
    def last_user_text(self) -> str:
        for msg in reversed(self.messages):
            if msg.get("role") == "user":
                return str(msg.get("content") or "")
        return ""


@dataclass
class ModelResponse:
    content: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_any(cls, raw: Any) -> "ModelResponse":
        if isinstance(raw, ModelResponse):
            return raw
        if raw is None:
            return cls(content="")
        if isinstance(raw, str):
            return cls(content=raw)
        if isinstance(raw, dict):
            return cls(
                content=raw.get("content"),
                tool_calls=[ToolCall.from_any(tc) for tc in raw.get("tool_calls") or []],
                usage=raw.get("usage"),
                model=raw.get("model"),
                finish_reason=raw.get("finish_reason"),
                metadata=dict(raw.get("metadata") or {}),
            )
        raise TypeError(f"Cannot convert {type(raw).__name__} to ModelResponse")

    @property
    def text(self) -> str:
        return (self.content or "").strip()


@dataclass
class ToolResult:
    call_id: str
    tool_id: str
    success: bool
    output: Any = None
    error: Optional[str] = None
    attempts: int = 1
    node_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _token_count(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def normalize_usage(raw: Optional[Mapping[str, Any]]) -> Dict[str, int]:
    """Token counts from a provider usage payload (OpenAI or input/output naming)."""
    raw = raw or {}
    prompt = _token_count(raw.get("prompt_tokens", raw.get("input_tokens")))
    completion = _token_count(raw.get("completion_tokens", raw.get("output_tokens")))
    total = _token_count(raw.get("total_tokens")) or prompt + completion
    return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": total}


@dataclass
class AgentUsage:
    """Per-agent totals over a run, subflows included."""

    model_calls: int = 0
    attempts: int = 0
    duration_s: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    tool_calls: int = 0
    failed_tool_calls: int = 0

    def add_model_call(self, usage: Optional[Mapping[str, Any]], *, attempts: int, duration_s: float) -> None:
        tokens = normalize_usage(usage)
        self.model_calls += 1
        self.attempts += attempts
        self.duration_s += duration_s
        self.prompt_tokens += tokens["prompt_tokens"]
        self.completion_tokens += tokens["completion_tokens"]
        self.total_tokens += tokens["total_tokens"]

    def add_tool_call(self, *, success: bool) -> None:
        self.tool_calls += 1
        if not success:
            self.failed_tool_calls += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RunEvent:
    run_id: str
    seq: int
    type: str
    flow_id: Optional[str] = None
    node_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FlowRunResult:
    run_id: str
    flow_id: str
    final_output: Any
    transcript: List[Turn]
    tool_results: List[ToolResult]
    events: List[RunEvent]
    bindings: Dict[str, Any] = field(default_factory=dict)
    output_node: Optional[str] = None
    usage: Dict[str, AgentUsage] = field(default_factory=dict)

    def assistant_turns(self) -> List[Turn]:
        return [t for t in self.transcript if t.role == "assistant" and t.kind == TurnKind.MESSAGE]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "flow_id": self.flow_id,
            "final_output": self.final_output,
            "transcript": [t.to_dict() for t in self.transcript],
            "tool_results": [r.to_dict() for r in self.tool_results],
            "events": [e.to_dict() for e in self.events],
            "output_node": self.output_node,
            "usage": {agent_id: u.to_dict() for agent_id, u in self.usage.items()},
        }
