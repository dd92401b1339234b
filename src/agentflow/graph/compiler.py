"""agentflow.graph.compiler

Validation and execution indexes for flow graphs.

`validate_document` rejects malformed documents before anything runs and
reports every problem it finds at once. `compile_flow` derives what the
interpreter needs from a validated flow:

- outgoing/incoming edges in declaration order
- loop bodies: for a Loop node L, the nodes reachable from L that lead back
  to L; edges from the body into L are back edges, edges leaving the body
  are exit edges
- regions: every node belongs to the innermost loop body containing it
  (or to the top-level region, `None`)
- join groups: how a node's inputs combine (see `InputGroup`)
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from ..core.conditions import is_catch_all, validate_condition
from ..core.errors import ConditionError, FlowValidationError, SubflowCycleError
from .models import (
    AgentNodeSpec,
    DecisionSpec,
    FlowDefinition,
    FlowDocument,
    FlowEdge,
    LOOP_BODY,
    LoopSpec,
    ORCHESTRATION_STRATEGIES,
    NodeKind,
    ParallelSpec,
    SubflowSpec,
    ToolNodeSpec,
)


@dataclass(frozen=True)
class InputGroup:
    """A set of incoming edges that resolve together.

    mode "all": every edge must resolve (value or dead) before the group does.
    mode "any": the first edge carrying a value resolves the group; used where
    the branches of a non-converging Parallel node meet again.
    """

    edges: Tuple[int, ...]
    mode: str = "all"
    origin: Optional[str] = None


@dataclass
class FlowGraph:
    flow: FlowDefinition
    outgoing: Dict[str, List[FlowEdge]] = field(default_factory=dict)
    incoming: Dict[str, List[FlowEdge]] = field(default_factory=dict)
    loop_bodies: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    region_of: Dict[str, Optional[str]] = field(default_factory=dict)
    back_edges: FrozenSet[int] = frozenset()
    join_groups: Dict[str, List[InputGroup]] = field(default_factory=dict)

    def edge(self, index: int) -> FlowEdge:
        return self.flow.edges[index]

    def region_nodes(self, region: Optional[str]) -> List[str]:
        return [n.id for n in self.flow.nodes if self.region_of.get(n.id) == region]

    def exit_edges(self, loop_id: str) -> List[FlowEdge]:
        body = self.loop_bodies.get(loop_id, frozenset())
        return [e for e in self.flow.edges if e.source in body and e.target not in body and e.target != loop_id]

    def body_entry_edges(self, loop_id: str) -> List[FlowEdge]:
        body = self.loop_bodies.get(loop_id, frozenset())
        return [e for e in self.outgoing.get(loop_id, []) if e.target in body]

    def completion_edges(self, loop_id: str) -> List[FlowEdge]:
        """Edges leaving the loop node itself; they fire once the loop stops on its bound."""
        body = self.loop_bodies.get(loop_id, frozenset())
        return [e for e in self.outgoing.get(loop_id, []) if e.target not in body]


def _adjacency(flow: FlowDefinition) -> Tuple[Dict[str, List[FlowEdge]], Dict[str, List[FlowEdge]]]:
    out: Dict[str, List[FlowEdge]] = {n.id: [] for n in flow.nodes}
    inc: Dict[str, List[FlowEdge]] = {n.id: [] for n in flow.nodes}
    for e in flow.edges:
        if e.source in out and e.target in inc:
            out[e.source].append(e)
            inc[e.target].append(e)
    return out, inc


def _reach(start: Iterable[str], step: Dict[str, List[str]], *, blocked: Optional[str] = None) -> Set[str]:
    seen: Set[str] = set()
    queue = deque(s for s in start if s != blocked)
    while queue:
        cur = queue.popleft()
        if cur in seen:
            continue
        seen.add(cur)
        for nxt in step.get(cur, []):
            if nxt != blocked and nxt not in seen:
                queue.append(nxt)
    return seen


def _loop_bodies(flow: FlowDefinition, out: Dict[str, List[FlowEdge]]) -> Dict[str, FrozenSet[str]]:
    fwd = {k: [e.target for e in v] for k, v in out.items()}
    rev: Dict[str, List[str]] = {n.id: [] for n in flow.nodes}
    for src, targets in fwd.items():
        for t in targets:
            rev[t].append(src)
    bodies: Dict[str, FrozenSet[str]] = {}
    for node in flow.nodes:
        if node.kind is not NodeKind.LOOP:
            continue
        # Only the body port opens the body; completion edges may lead back into an enclosing loop.
        entry = [e.target for e in out[node.id] if e.output == LOOP_BODY]
        forward = _reach(entry, fwd, blocked=node.id)
        backward = _reach(rev[node.id], rev, blocked=node.id)
        bodies[node.id] = frozenset(forward & backward)
    return bodies


def _find_cycle(nodes: Iterable[str], succ: Dict[str, List[str]]) -> Optional[List[str]]:
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in nodes}
    stack: List[str] = []

    def visit(n: str) -> Optional[List[str]]:
        color[n] = GREY
        stack.append(n)
        for m in succ.get(n, []):
            if color.get(m) == GREY:
                return stack[stack.index(m) :] + [m]
            if color.get(m) == WHITE:
                found = visit(m)
                if found:
                    return found
        stack.pop()
        color[n] = BLACK
        return None

    for n in list(color):
        if color[n] == WHITE:
            found = visit(n)
            if found:
                return found
    return None


def _join_groups(flow: FlowDefinition, out: Dict[str, List[FlowEdge]], inc: Dict[str, List[FlowEdge]], back: FrozenSet[int]) -> Dict[str, List[InputGroup]]:
    dag = {k: [e.target for e in v if e.index not in back] for k, v in out.items()}
    grouped: Dict[str, Tuple[str, Set[int]]] = {}
    for node in flow.nodes:
        if node.kind is not NodeKind.PARALLEL or not isinstance(node.spec, ParallelSpec) or node.spec.converge:
            continue
        branches = [_reach([e.target], dag) for e in out[node.id] if e.index not in back]
        if len(branches) < 2:
            continue
        upstream = set().union(*branches) | {node.id}
        counts: Dict[str, int] = {}
        for reach in branches:
            for n in reach:
                counts[n] = counts.get(n, 0) + 1
        for target, count in counts.items():
            if count < 2 or target in grouped:
                continue
            edges = {e.index for e in inc[target] if e.source in upstream and e.index not in back}
            if len(edges) > 1:
                grouped[target] = (node.id, edges)

    groups: Dict[str, List[InputGroup]] = {}
    for node in flow.nodes:
        edges_in = [e for e in inc[node.id] if e.index not in back]
        result: List[InputGroup] = []
        origin, any_edges = grouped.get(node.id, (None, set()))
        if any_edges:
            result.append(InputGroup(edges=tuple(sorted(any_edges)), mode="any", origin=origin))
        for e in edges_in:
            if e.index not in any_edges:
                result.append(InputGroup(edges=(e.index,)))
        groups[node.id] = result
    return groups


def compile_flow(flow: FlowDefinition) -> FlowGraph:
    out, inc = _adjacency(flow)
    bodies = _loop_bodies(flow, out)

    region_of: Dict[str, Optional[str]] = {}
    for node in flow.nodes:
        containing = [(len(body), loop_id) for loop_id, body in bodies.items() if node.id in body]
        region_of[node.id] = min(containing)[1] if containing else None

    back = frozenset(e.index for e in flow.edges if e.target in bodies and e.source in bodies[e.target])
    return FlowGraph(
        flow=flow,
        outgoing=out,
        incoming=inc,
        loop_bodies=bodies,
        region_of=region_of,
        back_edges=back,
        join_groups=_join_groups(flow, out, inc, back),
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_condition(expr: Optional[str], where: str, errors: List[str]) -> None:
    try:
        validate_condition(expr)
    except ConditionError as e:
        errors.append(f"{where}: {e.errors[0]}")


def _duplicates(ids: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    dups: List[str] = []
    for i in ids:
        if i in seen and i not in dups:
            dups.append(i)
        seen.add(i)
    return dups


def _validate_flow(doc: FlowDocument, flow: FlowDefinition, errors: List[str]) -> None:
    where = f"flow '{flow.id}'"
    node_ids = [n.id for n in flow.nodes]
    for dup in _duplicates(node_ids):
        errors.append(f"{where}: duplicate node id '{dup}'")

    if not flow.has_node(flow.entry):
        errors.append(f"{where}: entry node '{flow.entry}' does not exist")
    elif flow.node(flow.entry).kind is not NodeKind.INPUT:
        errors.append(f"{where}: entry node '{flow.entry}' must be an input node")

    tool_ids = {t.id for t in doc.tools}
    for node in flow.nodes:
        nwhere = f"{where} node '{node.id}'"
        if node.kind is NodeKind.INPUT:
            if node.id != flow.entry:
                errors.append(f"{nwhere}: only the entry node may be an input node")
            if len(node.output_labels) != 1:
                errors.append(f"{nwhere}: input node must have exactly one output")
        spec = node.spec
        if isinstance(spec, AgentNodeSpec):
            agent = doc.agent(spec.agent)
            if agent is None:
                errors.append(f"{nwhere}: unknown agent '{spec.agent}'")
            if spec.orchestration is not None:
                if spec.orchestration.strategy not in ORCHESTRATION_STRATEGIES:
                    errors.append(f"{nwhere}: unknown orchestration strategy '{spec.orchestration.strategy}'")
                for pid in spec.orchestration.participants:
                    if doc.agent(pid) is None:
                        errors.append(f"{nwhere}: unknown participant agent '{pid}'")
            allowed = tool_ids | set(agent.tools if agent else ())
            for tid in spec.tools or ():
                if tid not in allowed:
                    errors.append(f"{nwhere}: tool '{tid}' is not declared")
        elif isinstance(spec, DecisionSpec):
            if not node.outputs:
                errors.append(f"{nwhere}: decision node must declare its outputs")
            if spec.agent is not None and doc.agent(spec.agent) is None:
                errors.append(f"{nwhere}: unknown agent '{spec.agent}'")
            if spec.strategy == "rule":
                for pos, slot in enumerate(node.outputs):
                    if is_catch_all(slot.condition) and pos != len(node.outputs) - 1:
                        errors.append(f"{nwhere}: catch-all output '{slot.label}' must be declared last")
            for slot in node.outputs:
                _check_condition(slot.condition, f"{nwhere} output '{slot.label}'", errors)
        elif isinstance(spec, ToolNodeSpec):
            if spec.tool not in tool_ids:
                errors.append(f"{nwhere}: unknown tool '{spec.tool}'")
        elif isinstance(spec, LoopSpec):
            if spec.max_iterations < 1:
                errors.append(f"{nwhere}: max_iterations must be >= 1")
            _check_condition(spec.condition, f"{nwhere} break condition", errors)
        elif isinstance(spec, SubflowSpec):
            if doc.flow(spec.flow) is None:
                errors.append(f"{nwhere}: unknown subflow '{spec.flow}'")

    for e in flow.edges:
        ewhere = f"{where} edge #{e.index} ({e.source} -> {e.target})"
        if not flow.has_node(e.source):
            errors.append(f"{ewhere}: unknown source node '{e.source}'")
            continue
        if not flow.has_node(e.target):
            errors.append(f"{ewhere}: unknown target node '{e.target}'")
            continue
        src = flow.node(e.source)
        if src.kind is NodeKind.OUTPUT:
            errors.append(f"{ewhere}: output nodes have no outputs")
        elif e.output is None:
            errors.append(f"{ewhere}: source has several outputs; name one with '{e.source}/<label>'")
        elif e.output not in src.output_labels:
            errors.append(f"{ewhere}: '{e.output}' is not an output of '{e.source}'")
        if e.target == flow.entry:
            errors.append(f"{ewhere}: entry node '{flow.entry}' must not have incoming edges")
        _check_condition(e.condition, ewhere, errors)

    if errors or not flow.has_node(flow.entry):
        return

    graph = compile_flow(flow)
    fwd = {k: [e.target for e in v] for k, v in graph.outgoing.items()}
    reachable = _reach([flow.entry], fwd)
    for node in flow.nodes:
        if node.id not in reachable:
            errors.append(f"{where}: node '{node.id}' is unreachable from entry '{flow.entry}'")

    dag = {k: [e.target for e in v if e.index not in graph.back_edges] for k, v in graph.outgoing.items()}
    cycle = _find_cycle(node_ids, dag)
    if cycle:
        errors.append(f"{where}: cycle {' -> '.join(cycle)} does not pass through a loop node")

    for loop_id, body in graph.loop_bodies.items():
        if not body:
            errors.append(f"{where} loop '{loop_id}': body never returns to the loop node")
            continue
        for e in flow.edges:
            if e.target in body and e.source not in body and e.source != loop_id:
                errors.append(f"{where} loop '{loop_id}': edge #{e.index} enters the loop body from '{e.source}'")
        if not graph.exit_edges(loop_id) and not graph.completion_edges(loop_id):
            errors.append(f"{where} loop '{loop_id}': body has no exit edge")


def find_subflow_cycle(doc: FlowDocument, flow_id: str) -> Optional[List[str]]:
    """Return the first subflow reference cycle reachable from `flow_id`, if any."""

    def refs(fid: str) -> List[str]:
        flow = doc.flow(fid)
        if flow is None:
            return []
        return [n.spec.flow for n in flow.nodes if isinstance(n.spec, SubflowSpec)]

    path: List[str] = []
    done: Set[str] = set()

    def visit(fid: str) -> Optional[List[str]]:
        if fid in path:
            return path[path.index(fid) :] + [fid]
        if fid in done:
            return None
        path.append(fid)
        for child in refs(fid):
            found = visit(child)
            if found:
                return found
        path.pop()
        done.add(fid)
        return None

    return visit(flow_id)


def validate_document(doc: FlowDocument, flow_id: Optional[str] = None) -> None:
    """Validate a document (and, if given, that `flow_id` exists and is acyclic across subflows)."""
    errors: List[str] = []
    for label, ids in (
        ("agent", [a.id for a in doc.agents]),
        ("tool", [t.id for t in doc.tools]),
        ("prompt", [p.id for p in doc.prompts]),
        ("flow", [f.id for f in doc.flows]),
    ):
        for dup in _duplicates(ids):
            errors.append(f"duplicate {label} id '{dup}'")

    tool_ids = {t.id for t in doc.tools}
    for agent in doc.agents:
        for tid in agent.tools:
            if tid not in tool_ids:
                errors.append(f"agent '{agent.id}': unknown tool '{tid}'")

    for flow in doc.flows:
        _validate_flow(doc, flow, errors)

    if flow_id is not None and doc.flow(flow_id) is None:
        errors.append(f"unknown flow '{flow_id}'")
    if errors:
        raise FlowValidationError(errors, flow_id=flow_id)

    if flow_id is not None:
        cycle = find_subflow_cycle(doc, flow_id)
        if cycle:
            raise SubflowCycleError(cycle, flow_id=flow_id)
