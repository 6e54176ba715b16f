"""Bounded tool-calling loop driving one conversation reply."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from helpdesk_agent.agent.context import AgentContext
from helpdesk_agent.agent.llm import ChatModel
from helpdesk_agent.agent.registry import ToolRegistry
from helpdesk_agent.config import AgentConfig
from helpdesk_agent.errors import ToolExecutionError
from helpdesk_agent.obs.tracing import Timer, TraceStore
from helpdesk_agent.types import ConversationTurn, ToolResult, ToolSpec, ToolTrace

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    TOOL_EXECUTION = "tool_execution"
    COMPLETED = "completed"
    STOPPED = "stopped"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class RunResult:
    state: RunState
    reply: str | None
    turns: list[ConversationTurn]
    model_calls: int = 0
    tool_traces: list[ToolTrace] = field(default_factory=list)
    trace_id: str | None = None


class Orchestrator:
    """Alternates model calls and tool execution until the run settles.

    Per iteration the whole turn history and the tool specs go to the model.
    Tool calls are executed one after another in the order emitted, each
    producing exactly one tool turn; a failing tool yields its error text as
    the result. When any tool of a batch asks to stop, the run ends without
    another model call. A response without tool calls completes the run, with
    its text as the reply when non-empty.

    Hitting the iteration cap ends the run in `RunState.EXHAUSTED` with no
    reply. Model failures (`ModelCallError`) propagate to the caller.
    """

    def __init__(
        self,
        chat_model: ChatModel,
        config: AgentConfig | None = None,
        trace_store: TraceStore | None = None,
    ) -> None:
        self.chat_model = chat_model
        self.config = config or AgentConfig()
        self.trace_store = trace_store

    def run(
        self,
        context: AgentContext,
        turns: list[ConversationTurn],
        tools: ToolRegistry,
    ) -> RunResult:
        history = list(turns)
        specs = tools.specs()
        max_iterations = context.profile.max_tool_calls or self.config.max_iterations
        max_tokens = context.profile.max_response_length or self.config.max_tokens

        traces: list[ToolTrace] = []
        tools.set_observer(traces.append)
        result = RunResult(state=RunState.AWAITING_MODEL, reply=None, turns=history)
        try:
            with Timer() as timer:
                self._loop(context, history, tools, specs, max_iterations, max_tokens, result)
        finally:
            tools.set_observer(None)

        result.tool_traces = traces
        if self.trace_store is not None:
            record = self.trace_store.create_record(
                conversation_id=context.conversation.id,
                state=result.state.value,
                model_calls=result.model_calls,
                reply=result.reply,
                tool_traces=traces,
                latency_ms=timer.elapsed_ms,
            )
            result.trace_id = record.trace_id
        return result

    def _loop(
        self,
        context: AgentContext,
        history: list[ConversationTurn],
        tools: ToolRegistry,
        specs: list[ToolSpec],
        max_iterations: int,
        max_tokens: int,
        result: RunResult,
    ) -> None:
        conversation_id = context.conversation.id
        for _ in range(max_iterations):
            result.state = RunState.AWAITING_MODEL
            response = self.chat_model.complete(
                history,
                specs,
                max_tokens=max_tokens,
                temperature=self.config.temperature,
            )
            result.model_calls += 1

            if not response.tool_calls:
                result.state = RunState.COMPLETED
                result.reply = response.content or None
                return

            result.state = RunState.TOOL_EXECUTION
            history.append(ConversationTurn.assistant(response.content, response.tool_calls))

            stop = False
            for invocation in response.tool_calls:
                try:
                    outcome = tools.execute(context, invocation)
                except ToolExecutionError as exc:
                    logger.warning(
                        "Tool %s failed for conversation %d: %s", invocation.name, conversation_id, exc
                    )
                    content = f"Error executing tool: {exc}"
                else:
                    content = outcome.content
                    stop = stop or outcome.stop
                history.append(ToolResult(tool_call_id=invocation.id, content=content).as_turn())

            if stop:
                result.state = RunState.STOPPED
                logger.info("Run stopped by tool for conversation %d", conversation_id)
                return

        result.state = RunState.EXHAUSTED
        logger.warning(
            "Reached %d model iterations without a final answer for conversation %d",
            max_iterations,
            conversation_id,
        )
