"""agentflow.core.engine

Engine entry point.

`FlowEngine` binds the external collaborators (model provider, tool registry,
prompt loader, event store) once; each `arun` call loads and validates a
document, runs one flow invocation to completion and returns a
`FlowRunResult`. A failed run raises a typed `AgentFlowError` carrying the
partial transcript and the event ledger.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional, Union

from ..graph.compiler import validate_document
from ..graph.models import CallSettings, FlowDocument, load_flow_document
from ..integrations.prompts import DocumentPromptLoader, PromptLoader
from ..integrations.providers import ModelProvider
from ..integrations.tools import build_tool_registry
from ..logging import get_logger
from ..storage.base import EventStore
from .config import EngineConfig, RunOptions
from .context import ExecutionContext
from .errors import AgentFlowError, FlowValidationError
from .interpreter import EventRecorder, FlowRun, RunServices
from .models import FlowRunResult, new_id
from .tool_dispatcher import ToolDispatcher

logger = get_logger(__name__)


class FlowEngine:
    def __init__(
        self,
        *,
        provider: ModelProvider,
        tools: Any = None,
        prompts: Optional[PromptLoader] = None,
        config: Optional[EngineConfig] = None,
        event_store: Optional[EventStore] = None,
        base_dir: Optional[Union[str, Path]] = None,
        http_transport: Any = None,
    ):
        self.provider = provider
        self.tools = tools
        self.prompts = prompts
        self.config = config or EngineConfig()
        self.event_store = event_store
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self._http_transport = http_transport

    def _select_flow(self, doc: FlowDocument, flow_id: Optional[str]) -> str:
        if flow_id:
            if doc.flow(flow_id) is None:
                raise FlowValidationError([f"unknown flow '{flow_id}'"])
            return flow_id
        if len(doc.flows) == 1:
            return doc.flows[0].id
        raise FlowValidationError(["flow_id is required when the document defines several flows"])

    async def arun(
        self,
        document: Any,
        flow_id: Optional[str] = None,
        task_input: Any = None,
        options: Any = None,
    ) -> FlowRunResult:
        opts = RunOptions.coerce(options)
        doc = load_flow_document(document, base_dir=self.base_dir)
        flow_id = self._select_flow(doc, flow_id)
        validate_document(doc, flow_id)
        flow = doc.flow(flow_id)
        assert flow is not None

        run_id = opts.run_id or new_id()
        base_dir = self.base_dir or doc.base_dir
        recorder = EventRecorder(run_id, store=self.event_store, callback=opts.on_event)
        registry = build_tool_registry(doc, self.tools, base_dir=base_dir, http_transport=self._http_transport)
        services = RunServices(
            document=doc,
            provider=self.provider,
            tools=ToolDispatcher(doc, registry),
            prompts=self.prompts or DocumentPromptLoader(doc, base_dir=base_dir),
            config=self.config,
            call_settings=CallSettings.layered(opts.call_settings, self.config.call_settings),
            default_strategy=opts.strategy or self.config.default_strategy,
            recorder=recorder,
        )
        ctx = ExecutionContext(run_id=run_id, flow_id=flow.id, task_input=task_input, variables=opts.variables)
        run = FlowRun(services, flow, ctx)

        recorder.emit("run_started", flow_id=flow.id, strategy=services.default_strategy)
        logger.info("Run started", run_id=run_id, flow_id=flow.id)
        try:
            output_node, final_output = await run.execute()
        except AgentFlowError as e:
            ctx.transcript.close()
            if e.flow_id is None:
                e.flow_id = flow.id
            recorder.emit("run_failed", flow_id=flow.id, node_id=e.node_id, error=e.to_dict())
            e.transcript = ctx.transcript.snapshot()
            e.events = recorder.snapshot()
            logger.error("Run failed", run_id=run_id, flow_id=flow.id, node_id=e.node_id, error=e.message)
            raise
        except BaseException:
            ctx.transcript.close()
            raise

        ctx.transcript.close()
        recorder.emit("run_completed", flow_id=flow.id, output_node=output_node)
        logger.info("Run completed", run_id=run_id, flow_id=flow.id, output_node=output_node)
        return FlowRunResult(
            run_id=run_id,
            flow_id=flow.id,
            final_output=final_output,
            transcript=ctx.transcript.snapshot(),
            tool_results=list(ctx.tool_results),
            events=recorder.snapshot(),
            bindings=dict(ctx.bindings),
            output_node=output_node,
            usage=dict(ctx.usage),
        )

    def run(self, document: Any, flow_id: Optional[str] = None, task_input: Any = None, options: Any = None) -> FlowRunResult:
        """Synchronous wrapper around `arun` (not for use inside a running event loop)."""
        return asyncio.run(self.arun(document, flow_id, task_input, options))


def run(
    document: Any,
    flow_id: Optional[str] = None,
    task_input: Any = None,
    options: Any = None,
    *,
    provider: ModelProvider,
    tools: Any = None,
    prompts: Optional[PromptLoader] = None,
    config: Optional[EngineConfig] = None,
) -> FlowRunResult:
    """Run one flow invocation with a throwaway engine."""
    engine = FlowEngine(provider=provider, tools=tools, prompts=prompts, config=config)
    return engine.run(document, flow_id, task_input, options)
