"""agentflow.handlers

Per-kind node handlers, dispatched by `NodeKind` tag.
"""

from typing import Dict

from ..graph.models import NodeKind
from .agent import handle_agent
from .base import DEAD, NodeHandler, NodeInputs, NodeOutcome
from .decision import handle_decision
from .io import handle_input, handle_output
from .loop import handle_loop
from .structural import handle_merge, handle_parallel
from .subflow import handle_subflow
from .tool import handle_tool

NODE_HANDLERS: Dict[NodeKind, NodeHandler] = {
    NodeKind.INPUT: handle_input,
    NodeKind.OUTPUT: handle_output,
    NodeKind.AGENT: handle_agent,
    NodeKind.DECISION: handle_decision,
    NodeKind.TOOL: handle_tool,
    NodeKind.MERGE: handle_merge,
    NodeKind.PARALLEL: handle_parallel,
    NodeKind.LOOP: handle_loop,
    NodeKind.SUBFLOW: handle_subflow,
}

_missing = set(NodeKind) - set(NODE_HANDLERS)
if _missing:
    raise RuntimeError(f"No handler registered for node kinds: {sorted(k.value for k in _missing)}")

__all__ = ["DEAD", "NODE_HANDLERS", "NodeHandler", "NodeInputs", "NodeOutcome"]
