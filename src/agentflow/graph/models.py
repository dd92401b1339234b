"""agentflow.graph.models

Immutable data model of a flow document.

A document holds agents, tools, prompts and flows. Each flow is a directed
graph of `FlowNode`s connected by `FlowEdge`s. Node kinds form a closed set
(`NodeKind`); each node carries exactly one kind-specific spec record and
handlers dispatch on the tag, never on the spec's class.

`load_flow_document` is intentionally permissive about its input shape (dict,
JSON text, a path, or any object exposing `model_dump()`/`to_dict()`), and
strict about its output: everything downstream works with the frozen
dataclasses defined here.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..core.errors import FlowValidationError


class NodeKind(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    AGENT = "agent"
    DECISION = "decision"
    TOOL = "tool"
    MERGE = "merge"
    PARALLEL = "parallel"
    LOOP = "loop"
    SUBFLOW = "subflow"


ORCHESTRATION_STRATEGIES = ("sequential", "concurrent", "handoff", "group_chat", "magentic")
_STRATEGY_ALIASES = {"plan_execute": "magentic", "plan": "magentic", "groupchat": "group_chat"}

LOOP_BODY = "body"

# Output label used when a node does not declare its outputs.
IMPLICIT_OUTPUTS: Dict[NodeKind, Tuple[str, ...]] = {
    NodeKind.INPUT: ("out",),
    NodeKind.OUTPUT: (),
    NodeKind.AGENT: ("out",),
    NodeKind.DECISION: (),
    NodeKind.TOOL: ("out",),
    NodeKind.MERGE: ("out",),
    NodeKind.PARALLEL: ("out",),
    NodeKind.LOOP: (LOOP_BODY,),
    NodeKind.SUBFLOW: ("out",),
}


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _first(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


# ---------------------------------------------------------------------------
# Call settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetrySettings:
    """Retry policy for provider (and optionally tool) calls.

    `None` fields mean "inherit from the next layer".
    """

    max_attempts: Optional[int] = None
    backoff_s: Optional[float] = None
    backoff: Optional[str] = None  # "exponential" | "fixed"
    max_backoff_s: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> Optional["RetrySettings"]:
        if raw is None:
            return None
        if isinstance(raw, RetrySettings):
            return raw
        backoff_s = _opt_float(raw.get("backoff_s"))
        if backoff_s is None and raw.get("backoff_ms") is not None:
            backoff_s = float(raw["backoff_ms"]) / 1000.0
        backoff = raw.get("backoff")
        if backoff is not None and backoff not in ("exponential", "fixed"):
            raise FlowValidationError([f"retry backoff must be 'exponential' or 'fixed', got {backoff!r}"])
        return cls(
            max_attempts=_opt_int(_first(raw.get("max_attempts"), raw.get("max"))),
            backoff_s=backoff_s,
            backoff=backoff,
            max_backoff_s=_opt_float(raw.get("max_backoff_s")),
        )

    @classmethod
    def layered(cls, *layers: Optional["RetrySettings"]) -> "RetrySettings":
        """First non-None value per field wins (layers are highest priority first)."""
        present = [l for l in layers if l is not None]
        return cls(
            max_attempts=_first(*(l.max_attempts for l in present)),
            backoff_s=_first(*(l.backoff_s for l in present)),
            backoff=_first(*(l.backoff for l in present)),
            max_backoff_s=_first(*(l.max_backoff_s for l in present)),
        )


@dataclass(frozen=True)
class CallSettings:
    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout_s: Optional[float] = None
    retry: Optional[RetrySettings] = None

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "CallSettings":
        if raw is None:
            return cls()
        if isinstance(raw, CallSettings):
            return raw
        timeout_s = _opt_float(raw.get("timeout_s"))
        if timeout_s is None and raw.get("timeout_ms") is not None:
            timeout_s = float(raw["timeout_ms"]) / 1000.0
        return cls(
            model=raw.get("model"),
            temperature=_opt_float(raw.get("temperature")),
            top_p=_opt_float(raw.get("top_p")),
            max_tokens=_opt_int(raw.get("max_tokens")),
            timeout_s=timeout_s,
            retry=RetrySettings.from_dict(raw.get("retry")),
        )

    @classmethod
    def layered(cls, *layers: Optional["CallSettings"]) -> "CallSettings":
        """Merge settings; earlier layers win (node > agent > engine)."""
        present = [l for l in layers if l is not None]
        retries = [l.retry for l in present if l.retry is not None]
        return cls(
            model=_first(*(l.model for l in present)),
            temperature=_first(*(l.temperature for l in present)),
            top_p=_first(*(l.top_p for l in present)),
            max_tokens=_first(*(l.max_tokens for l in present)),
            timeout_s=_first(*(l.timeout_s for l in present)),
            retry=RetrySettings.layered(*retries) if retries else None,
        )

    def generation_params(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.temperature is not None:
            out["temperature"] = self.temperature
        if self.top_p is not None:
            out["top_p"] = self.top_p
        if self.max_tokens is not None:
            out["max_tokens"] = self.max_tokens
        return out


# ---------------------------------------------------------------------------
# Document-level definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentMetadata:
    name: Optional[str] = None
    description: Optional[str] = None
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AgentDefinition:
    id: str
    model: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    system_prompt: Optional[str] = None
    tools: Tuple[str, ...] = ()
    defaults: CallSettings = field(default_factory=CallSettings)

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class ToolDefinition:
    id: str
    kind: str = "function"
    description: Optional[str] = None
    spec: Any = None
    function: Optional[str] = None
    retry: Optional[RetrySettings] = None
    timeout_s: Optional[float] = None

    @property
    def registry_name(self) -> str:
        return self.function or self.id


@dataclass(frozen=True)
class PromptDefinition:
    id: str
    text: Optional[str] = None
    file: Optional[str] = None
    description: Optional[str] = None


# ---------------------------------------------------------------------------
# Node kind variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InputSpec:
    pass


@dataclass(frozen=True)
class OutputSpec:
    pass


@dataclass(frozen=True)
class OrchestrationSpec:
    strategy: str
    participants: Tuple[str, ...] = ()
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentNodeSpec:
    agent: str
    prompt: Optional[str] = None
    tools: Optional[Tuple[str, ...]] = None
    parameters: CallSettings = field(default_factory=CallSettings)
    orchestration: Optional[OrchestrationSpec] = None
    bind_as: Optional[str] = None
    parse_json: bool = False


@dataclass(frozen=True)
class DecisionSpec:
    strategy: str = "rule"  # "rule" | "llm"
    prompt: Optional[str] = None
    agent: Optional[str] = None


@dataclass(frozen=True)
class ToolNodeSpec:
    tool: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MergeSpec:
    pass


@dataclass(frozen=True)
class ParallelSpec:
    converge: bool = True


@dataclass(frozen=True)
class LoopSpec:
    max_iterations: int
    condition: Optional[str] = None


@dataclass(frozen=True)
class SubflowSpec:
    flow: str
    input_mode: str = "task"  # "task" | "value"
    output: Optional[str] = None


NodeSpec = Union[
    InputSpec,
    OutputSpec,
    AgentNodeSpec,
    DecisionSpec,
    ToolNodeSpec,
    MergeSpec,
    ParallelSpec,
    LoopSpec,
    SubflowSpec,
]


@dataclass(frozen=True)
class OutputSlot:
    label: str
    condition: Optional[str] = None


@dataclass(frozen=True)
class FlowNode:
    id: str
    kind: NodeKind
    spec: NodeSpec
    name: Optional[str] = None
    description: Optional[str] = None
    inputs: Tuple[str, ...] = ()
    outputs: Tuple[OutputSlot, ...] = ()
    layout: Optional[Mapping[str, Any]] = None  # presentation only

    @property
    def output_labels(self) -> Tuple[str, ...]:
        if self.outputs:
            return tuple(o.label for o in self.outputs)
        return IMPLICIT_OUTPUTS[self.kind]

    @property
    def default_output(self) -> Optional[str]:
        labels = self.output_labels
        return labels[0] if len(labels) == 1 else None


@dataclass(frozen=True)
class FlowEdge:
    source: str
    output: Optional[str]
    target: str
    condition: Optional[str] = None
    label: Optional[str] = None
    index: int = 0

    @property
    def selector(self) -> str:
        return f"{self.source}/{self.output}"


@dataclass(frozen=True)
class FlowDefinition:
    id: str
    entry: str
    nodes: Tuple[FlowNode, ...]
    edges: Tuple[FlowEdge, ...]
    description: Optional[str] = None
    handoff: Mapping[str, Any] = field(default_factory=dict)
    group_chat: Mapping[str, Any] = field(default_factory=dict)
    magentic: Mapping[str, Any] = field(default_factory=dict)
    _nodes_by_id: Dict[str, FlowNode] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_nodes_by_id", {n.id: n for n in self.nodes})

    def node(self, node_id: str) -> FlowNode:
        try:
            return self._nodes_by_id[node_id]
        except KeyError:
            raise KeyError(f"Unknown node '{node_id}' in flow '{self.id}'") from None

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes_by_id

    def strategy_options(self, strategy: str) -> Dict[str, Any]:
        block = {"handoff": self.handoff, "group_chat": self.group_chat, "magentic": self.magentic}.get(strategy)
        return dict(block or {})


@dataclass(frozen=True)
class FlowDocument:
    agents: Tuple[AgentDefinition, ...] = ()
    tools: Tuple[ToolDefinition, ...] = ()
    prompts: Tuple[PromptDefinition, ...] = ()
    flows: Tuple[FlowDefinition, ...] = ()
    version: Optional[str] = None
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)
    base_dir: Optional[Path] = None
    _index: Dict[str, Dict[str, Any]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "_index",
            {
                "agents": {a.id: a for a in self.agents},
                "tools": {t.id: t for t in self.tools},
                "prompts": {p.id: p for p in self.prompts},
                "flows": {f.id: f for f in self.flows},
            },
        )

    def agent(self, agent_id: str) -> Optional[AgentDefinition]:
        return self._index["agents"].get(agent_id)

    def tool(self, tool_id: str) -> Optional[ToolDefinition]:
        return self._index["tools"].get(tool_id)

    def prompt(self, prompt_id: str) -> Optional[PromptDefinition]:
        return self._index["prompts"].get(prompt_id)

    def flow(self, flow_id: str) -> Optional[FlowDefinition]:
        return self._index["flows"].get(flow_id)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _as_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _require(raw: Mapping[str, Any], key: str, where: str) -> Any:
    value = raw.get(key)
    if value is None or value == "":
        raise FlowValidationError([f"{where}: missing required field '{key}'"])
    return value


def _parse_agent(raw: Mapping[str, Any]) -> AgentDefinition:
    agent_id = str(_require(raw, "id", "agent"))
    return AgentDefinition(
        id=agent_id,
        model=raw.get("model"),
        name=raw.get("name"),
        description=raw.get("description"),
        system_prompt=_first(raw.get("system_prompt"), raw.get("instructions")),
        tools=_as_tuple(raw.get("tools")),
        defaults=CallSettings.from_dict(raw.get("defaults")),
    )


def _parse_tool(raw: Mapping[str, Any]) -> ToolDefinition:
    tool_id = str(_require(raw, "id", "tool"))
    return ToolDefinition(
        id=tool_id,
        kind=str(raw.get("kind") or "function"),
        description=raw.get("description"),
        spec=raw.get("spec"),
        function=raw.get("function"),
        retry=RetrySettings.from_dict(raw.get("retry")),
        timeout_s=_opt_float(raw.get("timeout_s")),
    )


def _parse_prompt(raw: Mapping[str, Any]) -> PromptDefinition:
    return PromptDefinition(
        id=str(_require(raw, "id", "prompt")),
        text=raw.get("text"),
        file=raw.get("file"),
        description=raw.get("description"),
    )


def _parse_outputs(raw: Any) -> Tuple[OutputSlot, ...]:
    if not raw:
        return ()
    slots: List[OutputSlot] = []
    for item in raw:
        if isinstance(item, str):
            slots.append(OutputSlot(label=item))
        elif isinstance(item, Mapping):
            label = item.get("label") or item.get("name") or item.get("id")
            if not label:
                raise FlowValidationError(["output slot is missing a label"])
            slots.append(OutputSlot(label=str(label), condition=item.get("condition")))
        else:
            raise FlowValidationError([f"invalid output slot {item!r}"])
    return tuple(slots)


def _strategy_name(raw: Any) -> str:
    key = str(raw or "sequential").strip().lower().replace("-", "_")
    return _STRATEGY_ALIASES.get(key, key)


def _parse_orchestration(raw: Any) -> Optional[OrchestrationSpec]:
    if raw is None:
        return None
    if isinstance(raw, str):
        return OrchestrationSpec(strategy=_strategy_name(raw))
    return OrchestrationSpec(
        strategy=_strategy_name(raw.get("strategy")),
        participants=_as_tuple(raw.get("participants")),
        options=dict(raw.get("options") or {}),
    )


def _agent_spec(raw: Mapping[str, Any], where: str) -> AgentNodeSpec:
    tools = raw.get("tools")
    return AgentNodeSpec(
        agent=str(_require(raw, "agent", where)),
        prompt=raw.get("prompt"),
        tools=_as_tuple(tools) if tools is not None else None,
        parameters=CallSettings.from_dict(raw.get("parameters")),
        orchestration=_parse_orchestration(raw.get("orchestration")),
        bind_as=raw.get("bind_as"),
        parse_json=bool(raw.get("parse_json", False)),
    )


def _decision_spec(raw: Mapping[str, Any], where: str) -> DecisionSpec:
    strategy = str(raw.get("strategy") or "rule").lower()
    if strategy not in ("rule", "llm"):
        raise FlowValidationError([f"{where}: decision strategy must be 'rule' or 'llm', got {strategy!r}"])
    return DecisionSpec(strategy=strategy, prompt=raw.get("prompt"), agent=raw.get("agent"))


def _tool_spec(raw: Mapping[str, Any], where: str) -> ToolNodeSpec:
    return ToolNodeSpec(tool=str(_require(raw, "tool", where)), arguments=dict(raw.get("arguments") or {}))


def _loop_spec(raw: Mapping[str, Any], where: str) -> LoopSpec:
    return LoopSpec(max_iterations=int(_require(raw, "max_iterations", where)), condition=raw.get("condition"))


def _subflow_spec(raw: Mapping[str, Any], where: str) -> SubflowSpec:
    mode = str(raw.get("input") or "task")
    if mode not in ("task", "value"):
        raise FlowValidationError([f"{where}: subflow input must be 'task' or 'value', got {mode!r}"])
    return SubflowSpec(flow=str(_require(raw, "flow", where)), input_mode=mode, output=raw.get("output"))


_SPEC_PARSERS: Dict[NodeKind, Callable[[Mapping[str, Any], str], NodeSpec]] = {
    NodeKind.INPUT: lambda raw, where: InputSpec(),
    NodeKind.OUTPUT: lambda raw, where: OutputSpec(),
    NodeKind.AGENT: _agent_spec,
    NodeKind.DECISION: _decision_spec,
    NodeKind.TOOL: _tool_spec,
    NodeKind.MERGE: lambda raw, where: MergeSpec(),
    NodeKind.PARALLEL: lambda raw, where: ParallelSpec(converge=bool(raw.get("converge", True))),
    NodeKind.LOOP: _loop_spec,
    NodeKind.SUBFLOW: _subflow_spec,
}


def _parse_node(raw: Mapping[str, Any], flow_id: str) -> FlowNode:
    node_id = str(_require(raw, "id", f"flow '{flow_id}' node"))
    where = f"flow '{flow_id}' node '{node_id}'"
    raw_kind = str(_require(raw, "type", where)).strip().lower()
    try:
        kind = NodeKind(raw_kind)
    except ValueError:
        raise FlowValidationError([f"{where}: unknown node type {raw_kind!r}"]) from None
    return FlowNode(
        id=node_id,
        kind=kind,
        spec=_SPEC_PARSERS[kind](raw, where),
        name=raw.get("name"),
        description=raw.get("description"),
        inputs=_as_tuple(raw.get("inputs")),
        outputs=_parse_outputs(raw.get("outputs")),
        layout=raw.get("layout"),
    )


def parse_selector(selector: str) -> Tuple[str, Optional[str]]:
    """Split `"node/label"` (or `"node:label"`) into its parts."""
    text = str(selector).strip()
    for sep in ("/", ":"):
        if sep in text:
            node, label = text.split(sep, 1)
            return node.strip(), (label.strip() or None)
    return text, None


def _parse_edge(raw: Mapping[str, Any], index: int, nodes: Mapping[str, FlowNode], flow_id: str) -> FlowEdge:
    where = f"flow '{flow_id}' edge #{index}"
    source, output = parse_selector(_require(raw, "from", where))
    if output is None and source in nodes:
        output = nodes[source].default_output
    return FlowEdge(
        source=source,
        output=output,
        target=str(_require(raw, "to", where)),
        condition=raw.get("condition"),
        label=raw.get("label"),
        index=index,
    )


def _parse_flow(raw: Mapping[str, Any]) -> FlowDefinition:
    flow_id = str(_require(raw, "id", "flow"))
    nodes = tuple(_parse_node(n, flow_id) for n in raw.get("nodes") or [])
    by_id = {n.id: n for n in nodes}
    edges = tuple(_parse_edge(e, i, by_id, flow_id) for i, e in enumerate(raw.get("edges") or []))
    return FlowDefinition(
        id=flow_id,
        entry=str(_require(raw, "entry", f"flow '{flow_id}'")),
        nodes=nodes,
        edges=edges,
        description=raw.get("description"),
        handoff=dict(raw.get("handoff") or {}),
        group_chat=dict(raw.get("group_chat") or {}),
        magentic=dict(raw.get("magentic") or {}),
    )


def _coerce_raw(raw: Any) -> Tuple[Dict[str, Any], Optional[Path]]:
    if isinstance(raw, Path) or (isinstance(raw, str) and not raw.lstrip().startswith("{")):
        path = Path(raw)
        if not path.is_file():
            raise FlowValidationError([f"flow document not found: {path}"])
        return json.loads(path.read_text(encoding="utf-8")), path.parent
    if isinstance(raw, str):
        return json.loads(raw), None
    if isinstance(raw, Mapping):
        return dict(raw), None
    for attr in ("model_dump", "to_dict"):
        fn = getattr(raw, attr, None)
        if callable(fn):
            data = fn()
            if isinstance(data, Mapping):
                return dict(data), None
    raise FlowValidationError([f"unsupported flow document type: {type(raw).__name__}"])


def load_flow_document(raw: Any, *, base_dir: Optional[Union[str, Path]] = None) -> FlowDocument:
    """Build a `FlowDocument` from a dict, JSON text, a file path, or a model object."""
    if isinstance(raw, FlowDocument):
        return raw
    try:
        data, inferred_dir = _coerce_raw(raw)
    except json.JSONDecodeError as e:
        raise FlowValidationError([f"flow document is not valid JSON: {e}"], cause=e) from e

    metadata_raw = data.get("metadata") or {}
    return FlowDocument(
        agents=tuple(_parse_agent(a) for a in data.get("agents") or []),
        tools=tuple(_parse_tool(t) for t in data.get("tools") or []),
        prompts=tuple(_parse_prompt(p) for p in data.get("prompts") or []),
        flows=tuple(_parse_flow(f) for f in data.get("flows") or []),
        version=str(data["version"]) if data.get("version") is not None else None,
        metadata=DocumentMetadata(
            name=metadata_raw.get("name"),
            description=metadata_raw.get("description"),
            tags=_as_tuple(metadata_raw.get("tags")),
        ),
        base_dir=Path(base_dir) if base_dir is not None else inferred_dir,
    )
