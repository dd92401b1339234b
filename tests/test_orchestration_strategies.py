from __future__ import annotations

from typing import Any, Dict, List

import pytest

from agentflow import (
    CallSettings,
    EngineConfig,
    FlowEngine,
    HandoffCycleError,
    HandoffError,
    MaxHandoffsReachedError,
    OrchestrationError,
    RetrySettings,
    ScriptedProvider,
    ScriptedReply,
    TurnKind,
    tool_call_reply,
)

AGENTS = [
    {"id": "front", "name": "Front Desk", "description": "Greets customers."},
    {"id": "billing", "name": "Billing", "description": "Refunds and invoices."},
    {"id": "tech", "name": "Tech", "description": "Fixes bugs.", "tools": ["search"]},
]


def _config(**kwargs) -> EngineConfig:
    return EngineConfig(call_settings=CallSettings(timeout_s=5.0, retry=RetrySettings(max_attempts=1)), **kwargs)


def _doc(agent: str, strategy: str, participants: List[str], options: Dict[str, Any] | None = None, **flow_extra) -> dict:
    orchestration = {"strategy": strategy, "participants": participants, "options": dict(options or {})}
    flow = {
        "id": "main",
        "entry": "in",
        "nodes": [
            {"id": "in", "type": "input"},
            {"id": "team", "type": "agent", "agent": agent, "orchestration": orchestration},
            {"id": "out", "type": "output"},
        ],
        "edges": [{"from": "in", "to": "team"}, {"from": "team", "to": "out"}],
    }
    flow.update(flow_extra)
    return {"agents": AGENTS, "tools": [{"id": "search"}], "flows": [flow]}


def _run(doc: dict, script: Dict[str, list], task: str = "I was charged twice", **config):
    provider = ScriptedProvider(script)
    engine = FlowEngine(provider=provider, tools={"search": lambda q: f"results for {q}"}, config=_config(**config))
    return provider, engine.run(doc, task_input=task)


def _events(result, type_: str) -> List[Dict[str, Any]]:
    return [e.data for e in result.events if e.type == type_]


# ---------------------------------------------------------------------------
# sequential / concurrent
# ---------------------------------------------------------------------------


def test_sequential_participants_see_earlier_turns() -> None:
    provider, result = _run(
        _doc("front", "sequential", ["front", "billing"]),
        {"front": ["Hello, let me check."], "billing": ["Refund issued."]},
    )
    assert result.final_output == "Refund issued."
    assert [t.agent_id for t in result.assistant_turns()] == ["front", "billing"]

    billing_messages = provider.calls_for("billing")[0].messages
    assert {"role": "assistant", "content": "Hello, let me check.", "name": "front"} in billing_messages


def test_default_strategy_applies_without_orchestration() -> None:
    doc = _doc("front", "sequential", [])
    del doc["flows"][0]["nodes"][1]["orchestration"]
    _, result = _run(doc, {"front": ["Hi!"]})
    assert result.final_output == "Hi!"
    assert _events(result, "strategy_started")[0]["strategy"] == "sequential"


def test_concurrent_aggregates_in_participant_order() -> None:
    provider, result = _run(
        _doc("front", "concurrent", ["front", "billing"]),
        {"front": [ScriptedReply("Welcome back.", delay_s=0.05)], "billing": ["Refund queued."]},
    )
    assert result.final_output == "Front Desk: Welcome back.\n\nBilling: Refund queued."
    assert [t.agent_id for t in result.assistant_turns()] == ["front", "billing"]
    # Both participants answered the same snapshot.
    assert provider.calls_for("front")[0].messages == provider.calls_for("billing")[0].messages


def test_concurrent_list_aggregate() -> None:
    _, result = _run(
        _doc("front", "concurrent", ["front", "billing"], {"aggregate": "list"}),
        {"front": ["a"], "billing": ["b"]},
    )
    assert result.final_output == [{"agent": "front", "content": "a"}, {"agent": "billing", "content": "b"}]


# ---------------------------------------------------------------------------
# handoff
# ---------------------------------------------------------------------------


def test_handoff_via_tool_call() -> None:
    provider, result = _run(
        _doc("front", "handoff", ["front", "billing"]),
        {
            "front": [tool_call_reply("handoff", {"to": "billing", "message": "Customer wants a refund."})],
            "billing": ["Refund issued."],
        },
    )
    assert result.final_output == "Refund issued."
    handoffs = _events(result, "handoff")
    assert handoffs == [{"strategy": "handoff", "from": "front", "to": "billing", "source": "tool"}]
    handoff_turns = [t for t in result.transcript if t.kind == TurnKind.HANDOFF]
    assert handoff_turns[0].text == "Customer wants a refund."
    assert _events(result, "strategy_completed")[0]["active_agent"] == "billing"

    offered = {t["name"] for t in provider.calls_for("front")[0].tools or []}
    assert {"handoff", "complete"} <= offered


def test_handoff_via_payload_and_language_cue() -> None:
    _, by_payload = _run(
        _doc("front", "handoff", ["front", "billing"]),
        {"front": ['{"action": "handoff", "to": "Billing", "message": "over to you"}'], "billing": ["Done."]},
    )
    assert _events(by_payload, "handoff")[0]["source"] == "payload"

    _, by_cue = _run(
        _doc("front", "handoff", ["front", "billing"]),
        {"front": ["Let me transfer you to billing."], "billing": ["Done."]},
    )
    assert _events(by_cue, "handoff")[0]["source"] == "parser"
    assert by_cue.final_output == "Done."


def test_force_handoff_tool_ignores_language_cues() -> None:
    provider, result = _run(
        _doc("front", "handoff", ["front", "billing"], handoff={"force_handoff_tool": True}),
        {"front": ["Let me transfer you to billing."], "billing": ["never used"]},
    )
    assert result.final_output == "Let me transfer you to billing."
    assert provider.calls_for("billing") == []
    assert _events(result, "handoff") == []


def test_handoff_rules_route_on_keywords() -> None:
    rules = [{"id": "refunds", "target": "billing", "keywords": ["refund", "charged"]}]
    _, result = _run(
        _doc("front", "handoff", ["front", "billing"], {"rules": rules}),
        {"front": ["Let me look into that."], "billing": ["Refund issued."]},
    )
    assert _events(result, "handoff")[0]["source"] == "rule"
    assert result.final_output == "Refund issued."


def test_completion_tool_ends_the_session() -> None:
    _, result = _run(
        _doc("front", "handoff", ["front", "billing"]),
        {"front": [tool_call_reply("complete", {"message": "All sorted."})]},
    )
    assert result.final_output == "All sorted."
    assert _events(result, "handoff_completed")[0]["completed"] is True


def test_handoff_cycle_is_detected() -> None:
    with pytest.raises(HandoffCycleError):
        _run(
            _doc("front", "handoff", ["front", "billing"]),
            {
                "front": [tool_call_reply("handoff", {"to": "billing"}), tool_call_reply("handoff", {"to": "billing"})],
                "billing": [tool_call_reply("handoff", {"to": "front"})],
            },
        )


def test_handoff_budget_is_enforced() -> None:
    with pytest.raises(MaxHandoffsReachedError):
        _run(
            _doc("front", "handoff", ["front", "billing"], {"max_handoffs": 1}),
            {
                "front": [tool_call_reply("handoff", {"to": "billing"})],
                "billing": [tool_call_reply("handoff", {"to": "front"})],
            },
        )


def test_handoff_to_unknown_agent_fails() -> None:
    with pytest.raises(HandoffError) as excinfo:
        _run(
            _doc("front", "handoff", ["front", "billing"]),
            {"front": [tool_call_reply("handoff", {"to": "legal"})]},
        )
    assert "legal" in str(excinfo.value)


# ---------------------------------------------------------------------------
# group chat
# ---------------------------------------------------------------------------


def test_group_chat_round_robin_until_budget() -> None:
    _, result = _run(
        _doc("front", "group_chat", ["front", "billing"], {"max_rounds": 3}),
        {"front": ["f1", "f2"], "billing": ["b1"]},
    )
    assert [t.text for t in result.assistant_turns()] == ["f1", "b1", "f2"]
    assert result.final_output == "f2"
    assert _events(result, "group_chat_finished")[0]["reason"] == "budget"


def test_group_chat_ends_on_completion_envelope() -> None:
    _, result = _run(
        _doc("front", "group_chat", ["front", "billing"], {"max_rounds": 6}),
        {"front": ["f1"], "billing": ['{"action": "complete", "result": "Refund approved."}']},
    )
    assert result.final_output == "Refund approved."
    assert _events(result, "group_chat_finished")[0] == {"strategy": "group_chat", "reason": "completed", "turns": 2}


def test_group_chat_llm_moderator() -> None:
    options = {"moderator": "llm", "moderator_agent": "tech", "max_rounds": 5}
    provider, result = _run(
        _doc("front", "group_chat", ["front", "billing"], options),
        {"tech": ['{"next": "billing"}', "front", "DONE"], "billing": ["b1"], "front": ["f1"]},
    )
    assert [t.agent_id for t in result.assistant_turns()] == ["billing", "front"]
    assert result.final_output == "f1"
    assert [r.purpose for r in provider.calls_for("tech")] == ["moderation"] * 3
    assert _events(result, "group_chat_finished")[0]["reason"] == "moderator"


def test_group_chat_moderator_must_pick_a_participant() -> None:
    options = {"moderator": "llm", "moderator_agent": "tech"}
    with pytest.raises(OrchestrationError):
        _run(_doc("front", "group_chat", ["front", "billing"], options), {"tech": ["zebra"]})


# ---------------------------------------------------------------------------
# magentic (plan then execute)
# ---------------------------------------------------------------------------

PLAN = (
    '{"steps": ['
    '{"tool": "search", "arguments": {"q": "double charge"}},'
    '{"agent": "billing", "instructions": "Check the invoice."},'
    '{"agent": "tech", "instructions": "Never needed.", "when": "step_count > 5"},'
    '{"agent": "front", "task": "Reply to the customer."}'
    "]}"
)


def test_magentic_plans_then_executes_steps() -> None:
    provider, result = _run(
        _doc("front", "magentic", ["front", "billing", "tech"]),
        {"front": [PLAN, "Your refund is on its way."], "billing": ["Invoice INV-7 charged twice."]},
    )
    assert result.final_output == "Your refund is on its way."
    assert provider.calls_for("front")[0].purpose == "plan"
    assert "- search" in (provider.calls_for("front")[0].system_prompt or "")

    plan_turn = next(t for t in result.transcript if t.kind == TurnKind.PLAN)
    assert len(plan_turn.metadata["steps"]) == 4
    assert result.tool_results[0].output == "results for double charge"
    assert [d["step"] for d in _events(result, "plan_step_skipped")] == [2]
    assert _events(result, "plan_finished")[0]["executed"] == 3

    billing_messages = provider.calls_for("billing")[0].messages
    assert billing_messages[-1] == {"role": "user", "content": "Context: Check the invoice."}


def test_magentic_truncates_long_plans() -> None:
    _, result = _run(
        _doc("front", "magentic", ["front", "billing"], {"max_steps": 1}),
        {"front": ['{"steps": [{"agent": "billing", "instructions": "a"}, {"agent": "front", "instructions": "b"}]}'], "billing": ["only step"]},
    )
    assert result.final_output == "only step"
    assert _events(result, "plan_truncated")[0]["planned"] == 2


def test_magentic_rejects_plans_with_unknown_agents() -> None:
    with pytest.raises(OrchestrationError):
        _run(
            _doc("front", "magentic", ["front", "billing"]),
            {"front": ['{"steps": [{"agent": "legal", "instructions": "sue"}]}']},
        )
    with pytest.raises(OrchestrationError):
        _run(_doc("front", "magentic", ["front", "billing"]), {"front": ["I would rather not plan."]})
