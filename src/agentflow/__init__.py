"""
AgentFlow

Declarative multi-agent workflow runtime.

A flow document declares agents, tools, prompts and flows (directed graphs of
typed nodes). The engine validates a document, then executes one flow per
call:
- agent nodes run one of five orchestration strategies over their participants
- decision, parallel, merge and loop nodes route values along guarded edges
- subflow nodes invoke other flows with an isolated context

Every run appends to an event ledger and returns the final output together
with the shared transcript.
"""

from .core.config import EngineConfig, RunOptions
from .core.engine import FlowEngine, run
from .core.errors import (
    AgentFlowError,
    ConditionError,
    DeadEndError,
    DecisionError,
    FlowValidationError,
    HandoffCycleError,
    HandoffError,
    MaxHandoffsReachedError,
    MaxRoundsReachedError,
    OrchestrationError,
    ProviderError,
    ProviderRetryError,
    ProviderTimeoutError,
    StructuralError,
    SubflowCycleError,
    SubflowDepthError,
    ToolExecutionError,
    ToolLoopError,
)
from .core.models import AgentUsage, FlowRunResult, ModelRequest, ModelResponse, RunEvent, ToolCall, ToolResult, Turn, TurnKind
from .graph.compiler import compile_flow, validate_document
from .graph.models import CallSettings, FlowDocument, NodeKind, RetrySettings, load_flow_document
from .integrations.abstractcore import AbstractCoreProvider, AbstractCoreToolRegistry, RemoteAbstractCoreProvider
from .integrations.prompts import DocumentPromptLoader, StaticPromptLoader
from .integrations.providers import ScriptedProvider, ScriptedReply, tool_call_reply
from .integrations.tools import MappingToolRegistry
from .logging import configure_logging, get_logger
from .storage import EventStore, InMemoryEventStore, JsonlEventStore

__all__ = [
    # Engine
    "FlowEngine",
    "run",
    "EngineConfig",
    "RunOptions",
    # Documents
    "FlowDocument",
    "NodeKind",
    "CallSettings",
    "RetrySettings",
    "load_flow_document",
    "validate_document",
    "compile_flow",
    # Run models
    "FlowRunResult",
    "AgentUsage",
    "Turn",
    "TurnKind",
    "ToolCall",
    "ToolResult",
    "RunEvent",
    "ModelRequest",
    "ModelResponse",
    # Errors
    "AgentFlowError",
    "FlowValidationError",
    "ConditionError",
    "StructuralError",
    "DeadEndError",
    "SubflowCycleError",
    "SubflowDepthError",
    "HandoffError",
    "HandoffCycleError",
    "MaxHandoffsReachedError",
    "MaxRoundsReachedError",
    "OrchestrationError",
    "ProviderError",
    "ProviderTimeoutError",
    "ProviderRetryError",
    "ToolExecutionError",
    "ToolLoopError",
    "DecisionError",
    # Providers, tools, prompts
    "ScriptedProvider",
    "ScriptedReply",
    "tool_call_reply",
    "AbstractCoreProvider",
    "RemoteAbstractCoreProvider",
    "AbstractCoreToolRegistry",
    "MappingToolRegistry",
    "DocumentPromptLoader",
    "StaticPromptLoader",
    # Storage backends
    "EventStore",
    "InMemoryEventStore",
    "JsonlEventStore",
    # Logging
    "configure_logging",
    "get_logger",
]
