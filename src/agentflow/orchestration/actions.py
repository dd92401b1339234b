"""agentflow.orchestration.actions

Structured replies agents may embed in their text.

Agents are asked to answer in plain text, but handoff, group chat and
plan-execute strategies also understand a small JSON vocabulary:

    {"action": "handoff", "to": "billing", "message": "..."}
    {"action": "complete", "result": "..."}
    {"steps": [{"agent": "researcher", "instructions": "..."}]}

The JSON may be the whole reply, a fenced ```json block, or the last `{...}`
object in the text.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..core.errors import OrchestrationError

_FENCED = re.compile(r"```(?:json|JSON)?\s*(\{.*?\})\s*```", re.DOTALL)

ACTION_ALIASES: Dict[str, str] = {
    "respond": "respond",
    "reply": "respond",
    "answer": "respond",
    "handoff": "handoff",
    "hand_off": "handoff",
    "transfer": "handoff",
    "complete": "complete",
    "done": "complete",
    "finish": "complete",
    "conclude": "complete",
}


def extract_json_object(text: Any) -> Optional[Dict[str, Any]]:
    """Return the JSON object carried by `text`, or None."""
    if isinstance(text, dict):
        return text
    if not isinstance(text, str) or "{" not in text:
        return None
    stripped = text.strip()
    try:
        obj = json.loads(stripped)
        if isinstance(obj, dict):
            return obj
    except ValueError:
        pass
    for match in _FENCED.finditer(text):
        try:
            obj = json.loads(match.group(1))
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj

    decoder = json.JSONDecoder()
    found: Optional[Dict[str, Any]] = None
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(text, idx)
        except ValueError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            found = obj
        idx = text.find("{", end)
    return found


class ActionEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    action: str
    target: Optional[str] = Field(default=None, validation_alias=AliasChoices("to", "target", "agent", "next"))
    message: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("message", "content", "reply", "response", "reason")
    )
    result: Any = None

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> str:
        key = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        if key not in ACTION_ALIASES:
            raise ValueError(f"unknown action {value!r}")
        return ACTION_ALIASES[key]

    @property
    def final_text(self) -> Optional[str]:
        if self.result is not None:
            return self.result if isinstance(self.result, str) else json.dumps(self.result, default=str)
        return self.message


def parse_action(text: Any) -> Optional[ActionEnvelope]:
    obj = extract_json_object(text)
    if not obj or "action" not in obj:
        return None
    try:
        return ActionEnvelope.model_validate(obj)
    except ValidationError:
        return None


class MagenticStep(BaseModel):
    model_config = ConfigDict(extra="ignore")

    agent: Optional[str] = None
    tool: Optional[str] = None
    arguments: Dict[str, Any] = Field(default_factory=dict)
    instructions: str = Field(default="", validation_alias=AliasChoices("instructions", "task", "description"))
    when: Optional[str] = None

    @model_validator(mode="after")
    def _one_executor(self) -> "MagenticStep":
        if bool(self.agent) == bool(self.tool):
            raise ValueError("a step names exactly one of 'agent' or 'tool'")
        return self


class MagenticPlan(BaseModel):
    steps: List[MagenticStep] = Field(min_length=1)


def parse_plan(text: str) -> MagenticPlan:
    obj = extract_json_object(text)
    if obj is None:
        raise OrchestrationError(f"Planner reply contains no JSON plan: {text[:200]!r}")
    try:
        return MagenticPlan.model_validate(obj)
    except ValidationError as e:
        raise OrchestrationError(f"Invalid plan: {e}", cause=e) from e
