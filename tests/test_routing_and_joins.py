from __future__ import annotations

from typing import List, Optional

import pytest

from agentflow import (
    CallSettings,
    ConditionError,
    DeadEndError,
    DecisionError,
    EngineConfig,
    FlowEngine,
    ProviderError,
    ProviderRetryError,
    RetrySettings,
    ScriptedProvider,
    ScriptedReply,
)

AGENTS = [{"id": "alpha", "name": "Alpha"}, {"id": "beta", "name": "Beta"}]


def _config(**kwargs) -> EngineConfig:
    return EngineConfig(call_settings=CallSettings(timeout_s=5.0, retry=RetrySettings(max_attempts=1)), **kwargs)


def _flow(nodes: list, edges: list) -> dict:
    return {"agents": AGENTS, "flows": [{"id": "main", "entry": "in", "nodes": nodes, "edges": edges}]}


def _types(events, node_id: Optional[str] = None) -> List[str]:
    return [e.type for e in events if node_id is None or e.node_id == node_id]


def _fan_out(converge: bool, tail: str) -> dict:
    nodes = [
        {"id": "in", "type": "input"},
        {"id": "fan", "type": "parallel", "converge": converge},
        {"id": "a", "type": "agent", "agent": "alpha"},
        {"id": "b", "type": "agent", "agent": "beta"},
    ]
    edges = [{"from": "in", "to": "fan"}, {"from": "fan", "to": "a"}, {"from": "fan", "to": "b"}]
    if tail == "merge":
        nodes += [{"id": "join", "type": "merge"}, {"id": "out", "type": "output"}]
        edges += [{"from": "a", "to": "join"}, {"from": "b", "to": "join"}, {"from": "join", "to": "out"}]
    else:
        nodes += [{"id": "out_a", "type": "output"}, {"id": "out_b", "type": "output"}]
        edges += [{"from": "a", "to": "out_a"}, {"from": "b", "to": "out_b"}]
    return _flow(nodes, edges)


def test_merge_waits_for_every_live_branch() -> None:
    provider = ScriptedProvider({"alpha": [ScriptedReply("from alpha", delay_s=0.05)], "beta": ["from beta"]})
    result = FlowEngine(provider=provider, config=_config()).run(_fan_out(True, "merge"), task_input="go")

    # Values arrive in edge declaration order, not completion order.
    assert result.final_output == ["from alpha", "from beta"]
    # Both replies were committed before the merge ran.
    merge_started = next(e.seq for e in result.events if e.type == "node_started" and e.node_id == "join")
    completed = [e.seq for e in result.events if e.type == "node_completed" and e.node_id in ("a", "b")]
    assert len(completed) == 2 and max(completed) < merge_started
    assert [t.agent_id for t in result.assistant_turns()] == ["beta", "alpha"]


def test_failed_branch_cancels_its_siblings() -> None:
    provider = ScriptedProvider({"alpha": [ProviderError("down")], "beta": [ScriptedReply("slow", delay_s=2.0)]})
    engine = FlowEngine(provider=provider, config=_config())
    with pytest.raises(ProviderRetryError) as excinfo:
        engine.run(_fan_out(True, "merge"), task_input="go")

    events = excinfo.value.events
    assert "node_cancelled" in _types(events, "b")
    assert "node_failed" in _types(events, "a")
    assert "join" not in {e.node_id for e in events if e.type == "node_started"}


def test_failure_keeps_finished_sibling_turns_and_drops_cancelled_ones() -> None:
    doc = {
        "agents": [{"id": "quick"}, {"id": "slow"}, {"id": "broken"}],
        "flows": [
            {
                "id": "main",
                "entry": "in",
                "nodes": [
                    {"id": "in", "type": "input"},
                    {"id": "fan", "type": "parallel", "converge": True},
                    {"id": "q", "type": "agent", "agent": "quick"},
                    {"id": "s", "type": "agent", "agent": "slow"},
                    {"id": "x", "type": "agent", "agent": "broken"},
                    {"id": "join", "type": "merge"},
                    {"id": "out", "type": "output"},
                ],
                "edges": [
                    {"from": "in", "to": "fan"},
                    {"from": "fan", "to": "q"},
                    {"from": "fan", "to": "s"},
                    {"from": "fan", "to": "x"},
                    {"from": "q", "to": "join"},
                    {"from": "s", "to": "join"},
                    {"from": "x", "to": "join"},
                    {"from": "join", "to": "out"},
                ],
            }
        ],
    }
    provider = ScriptedProvider(
        {
            "quick": ["quick answer"],
            "slow": [ScriptedReply("late answer", delay_s=2.0)],
            "broken": [ScriptedReply(ProviderError("down"), delay_s=0.05)],
        }
    )
    with pytest.raises(ProviderRetryError) as excinfo:
        FlowEngine(provider=provider, config=_config()).run(doc, task_input="go")

    err = excinfo.value
    assert err.node_id == "x"
    texts = [t.text for t in err.transcript if t.role == "assistant"]
    assert texts == ["quick answer"]
    assert [t.text for t in err.transcript if t.role == "user"] == ["go"]
    assert "node_completed" in _types(err.events, "q")
    assert "node_cancelled" in _types(err.events, "s")
    assert "node_completed" not in _types(err.events, "s")
    assert "join" not in {e.node_id for e in err.events if e.type == "node_started"}


def test_detached_branches_first_output_wins() -> None:
    provider = ScriptedProvider({"alpha": ["fast"], "beta": [ScriptedReply("slow", delay_s=0.05)]})
    result = FlowEngine(provider=provider, config=_config()).run(_fan_out(False, "outputs"), task_input="go")

    assert result.output_node == "out_a"
    assert result.final_output == "fast"
    # The other branch still ran to completion.
    assert "output_ignored" in _types(result.events, "out_b")
    assert [t.text for t in result.assistant_turns()] == ["fast", "slow"]


def test_detached_branches_rejoin_on_first_arrival() -> None:
    provider = ScriptedProvider({"alpha": ["fast"], "beta": [ScriptedReply("slow", delay_s=0.05)]})
    result = FlowEngine(provider=provider, config=_config()).run(_fan_out(False, "merge"), task_input="go")

    assert result.final_output == ["fast"]
    assert "late_arrival" in _types(result.events, "join")


def _decision_doc(outputs: list) -> dict:
    labels = [o["label"] for o in outputs]
    nodes = [{"id": "in", "type": "input"}, {"id": "route", "type": "decision", "outputs": outputs}]
    nodes += [{"id": f"out_{label}", "type": "output"} for label in labels]
    edges = [{"from": "in", "to": "route"}] + [{"from": f"route/{label}", "to": f"out_{label}"} for label in labels]
    return _flow(nodes, edges)


def test_decision_rules_are_order_sensitive() -> None:
    refund = {"label": "refund", "condition": "'refund' in value"}
    charge = {"label": "charge", "condition": "'charge' in value"}
    other = {"label": "other"}
    engine = FlowEngine(provider=ScriptedProvider([]), config=_config())
    task = "Refund the double charge please"

    first = engine.run(_decision_doc([refund, charge, other]), task_input=task)
    second = engine.run(_decision_doc([charge, refund, other]), task_input=task)
    fallback = engine.run(_decision_doc([refund, charge, other]), task_input="hello")

    assert first.output_node == "out_refund"
    assert second.output_node == "out_charge"
    assert fallback.output_node == "out_other"
    assert first.final_output == task
    assert first.bindings["route/refund"] == task
    skipped = [e.node_id for e in first.events if e.type == "node_skipped"]
    assert sorted(skipped) == ["out_charge", "out_other"]


def test_decision_without_matching_rule_fails() -> None:
    engine = FlowEngine(provider=ScriptedProvider([]), config=_config())
    doc = _decision_doc([{"label": "yes", "condition": "value == 'y'"}, {"label": "no", "condition": "value == 'n'"}])
    with pytest.raises(DecisionError) as excinfo:
        engine.run(doc, task_input="maybe")
    assert excinfo.value.node_id == "route"


def test_guarded_edges_and_dead_end() -> None:
    doc = _flow(
        [{"id": "in", "type": "input"}, {"id": "out", "type": "output"}],
        [{"from": "in", "to": "out", "condition": "value == 'ok'"}],
    )
    engine = FlowEngine(provider=ScriptedProvider([]), config=_config())
    assert engine.run(doc, task_input="ok").final_output == "ok"

    with pytest.raises(DeadEndError) as excinfo:
        engine.run(doc, task_input="nope")
    assert excinfo.value.dead_ends == ["in"]
    assert excinfo.value.events[-1].type == "run_failed"


def test_failing_edge_guard_names_its_source_node() -> None:
    doc = _flow(
        [{"id": "in", "type": "input"}, {"id": "a", "type": "agent", "agent": "alpha"}, {"id": "out", "type": "output"}],
        [{"from": "in", "to": "a"}, {"from": "a", "to": "out", "condition": "int(value) > 3"}],
    )
    engine = FlowEngine(provider=ScriptedProvider(["plenty"]), config=_config())
    with pytest.raises(ConditionError) as excinfo:
        engine.run(doc, task_input="how many?")

    err = excinfo.value
    assert err.node_id == "a"
    assert err.flow_id == "main"
    assert err.expression == "int(value) > 3"
    failed = err.events[-1]
    assert failed.type == "run_failed"
    assert failed.node_id == "a"


def test_best_effort_policy_tolerates_dead_branches() -> None:
    doc = _flow(
        [
            {"id": "in", "type": "input"},
            {"id": "fan", "type": "parallel", "converge": False},
            {"id": "a", "type": "agent", "agent": "alpha"},
            {"id": "b", "type": "agent", "agent": "beta"},
            {"id": "out", "type": "output"},
        ],
        [
            {"from": "in", "to": "fan"},
            {"from": "fan", "to": "a"},
            {"from": "fan", "to": "b"},
            {"from": "a", "to": "out"},
            {"from": "b", "to": "out", "condition": "false"},
        ],
    )
    provider = ScriptedProvider({"alpha": ["kept"], "beta": ["dropped"]})
    result = FlowEngine(provider=provider, config=_config(detached_branches="best_effort")).run(doc, task_input="go")
    assert result.final_output == "kept"
    assert "dead_end" in _types(result.events, "b")


def test_require_output_policy_rejects_dead_branches() -> None:
    doc = _flow(
        [
            {"id": "in", "type": "input"},
            {"id": "fan", "type": "parallel", "converge": False},
            {"id": "a", "type": "agent", "agent": "alpha"},
            {"id": "b", "type": "agent", "agent": "beta"},
            {"id": "out", "type": "output"},
        ],
        [
            {"from": "in", "to": "fan"},
            {"from": "fan", "to": "a"},
            {"from": "fan", "to": "b"},
            {"from": "a", "to": "out"},
            {"from": "b", "to": "out", "condition": "false"},
        ],
    )
    provider = ScriptedProvider({"alpha": ["kept"], "beta": ["dropped"]})
    with pytest.raises(DeadEndError) as excinfo:
        FlowEngine(provider=provider, config=_config()).run(doc, task_input="go")
    assert excinfo.value.dead_ends == ["b"]
