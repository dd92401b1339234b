#!/usr/bin/env python3
"""
01_support_triage.py - Triage a support request across specialist agents

Demonstrates:
- Input -> triage agent -> rule Decision -> specialist -> Merge -> Output
- Binding an agent's JSON reply as a context variable (`bind_as` + `parse_json`)
- A specialist calling a host tool inside its turn
- Streaming run events through `on_event`

By default the run is offline (scripted model replies). Pass `--live` to call a
real model through AbstractCore:

    pip install abstractcore
    python examples/01_support_triage.py --live --provider ollama --model qwen3:4b-instruct-2507-q4_K_M
"""

import argparse
import json

from agentflow import (
    EngineConfig,
    FlowEngine,
    ScriptedProvider,
    configure_logging,
    tool_call_reply,
)

DOCUMENT = {
    "version": "1",
    "metadata": {"name": "support-triage"},
    "agents": [
        {
            "id": "triage",
            "name": "Triage",
            "instructions": 'Classify the request. Reply with JSON only: {"category": "tech" | "billing" | "general"}.',
        },
        {"id": "tech", "name": "Tech Support", "instructions": "Solve technical problems step by step."},
        {
            "id": "billing",
            "name": "Billing",
            "instructions": "Resolve billing questions. Look up invoices before answering.",
            "tools": ["lookup_invoice"],
        },
        {"id": "general", "name": "Concierge", "instructions": "Answer general questions briefly."},
    ],
    "tools": [{"id": "lookup_invoice", "description": "Fetch an invoice by customer email."}],
    "flows": [
        {
            "id": "support",
            "entry": "in",
            "nodes": [
                {"id": "in", "type": "input"},
                {"id": "classify", "type": "agent", "agent": "triage", "bind_as": "triage", "parse_json": True},
                {
                    "id": "route",
                    "type": "decision",
                    "outputs": [
                        {"label": "tech", "condition": "triage.category == 'tech'"},
                        {"label": "billing", "condition": "triage.category == 'billing'"},
                        {"label": "general"},
                    ],
                },
                {"id": "tech", "type": "agent", "agent": "tech"},
                {"id": "billing", "type": "agent", "agent": "billing"},
                {"id": "general", "type": "agent", "agent": "general"},
                {"id": "join", "type": "merge"},
                {"id": "out", "type": "output"},
            ],
            "edges": [
                {"from": "in", "to": "classify"},
                {"from": "classify", "to": "route"},
                {"from": "route/tech", "to": "tech"},
                {"from": "route/billing", "to": "billing"},
                {"from": "route/general", "to": "general"},
                {"from": "tech", "to": "join"},
                {"from": "billing", "to": "join"},
                {"from": "general", "to": "join"},
                {"from": "join", "to": "out"},
            ],
        }
    ],
}


def lookup_invoice(email: str) -> dict:
    return {"email": email, "invoice": "INV-1042", "amount": 49.0, "charged": 2}


def scripted_provider() -> ScriptedProvider:
    return ScriptedProvider(
        {
            "triage": ['{"category": "billing"}'],
            "billing": [
                tool_call_reply("lookup_invoice", {"email": "ada@example.com"}),
                "Invoice INV-1042 was charged twice. I have issued a refund of 49.00.",
            ],
        }
    )


def on_event(event) -> None:
    if event.type in ("node_started", "decision", "tool_call", "run_completed", "run_failed"):
        detail = {k: v for k, v in event.data.items() if k in ("kind", "label", "tool")}
        print(f"  [{event.seq:03d}] {event.type:<14} {event.node_id or '':<10} {json.dumps(detail)}")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--live", action="store_true", help="call a real model through AbstractCore")
    parser.add_argument("--provider", default="ollama")
    parser.add_argument("--model", default="qwen3:4b-instruct-2507-q4_K_M")
    parser.add_argument("--task", default="Hi, I was charged twice this month. My email is ada@example.com.")
    args = parser.parse_args()

    config = EngineConfig.from_env()
    configure_logging(config.log_level)

    if args.live:
        from agentflow.integrations.abstractcore import AbstractCoreProvider

        provider = AbstractCoreProvider(args.provider, args.model)
    else:
        provider = scripted_provider()

    engine = FlowEngine(provider=provider, tools={"lookup_invoice": lookup_invoice}, config=config)
    print(f"Task: {args.task}\n")
    result = engine.run(DOCUMENT, "support", args.task, {"on_event": on_event})

    print("\nTranscript:")
    for turn in result.transcript:
        who = turn.agent_id or turn.role
        print(f"  {turn.seq:>2} {who:<8} {turn.kind.value:<12} {turn.text[:80]}")
    print("\nUsage:")
    for agent_id, usage in result.usage.items():
        print(f"  {agent_id:<8} calls={usage.model_calls} tokens={usage.total_tokens} tools={usage.tool_calls}")
    print(f"\nFinal output: {result.final_output}")


if __name__ == "__main__":
    main()
