"""Tool registry dispatching to built-in handlers or declarative HTTP tools."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from time import perf_counter
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from helpdesk_agent.agent.context import AgentContext
from helpdesk_agent.errors import NotFoundError, ToolExecutionError
from helpdesk_agent.store.records import HttpToolDefinition
from helpdesk_agent.types import ToolInvocation, ToolSpec, ToolTrace

if TYPE_CHECKING:
    from helpdesk_agent.agent.http_tools import HttpToolExecutor

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """Result text for the model and whether the run must end after this batch."""

    content: str
    stop: bool = False


@dataclass(slots=True, frozen=True)
class BuiltinTool:
    args_schema: type[BaseModel]
    handler: Callable[[AgentContext, Any], ToolOutcome]


@dataclass(slots=True, frozen=True)
class HttpTool:
    definition: HttpToolDefinition


ToolKind = BuiltinTool | HttpTool


@dataclass(slots=True, frozen=True)
class RegisteredTool:
    spec: ToolSpec
    kind: ToolKind


class ToolRegistry:
    """Stores the tools of one agent and executes model tool calls.

    Every failure is raised as `ToolExecutionError` so the caller can turn it
    into tool-result text for the model.
    """

    def __init__(self, http_executor: HttpToolExecutor | None = None) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self._http_executor = http_executor
        self._observer: Callable[[ToolTrace], None] | None = None

    def register(self, spec: ToolSpec, kind: ToolKind) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = RegisteredTool(spec=spec, kind=kind)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def specs(self) -> list[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    def execute(self, context: AgentContext, invocation: ToolInvocation) -> ToolOutcome:
        start = perf_counter()
        payload: dict[str, Any] = {"raw": invocation.arguments_json}
        try:
            tool = self._tools.get(invocation.name)
            if tool is None:
                raise ToolExecutionError(f"Unknown tool: {invocation.name}")
            payload = _parse_arguments(invocation)
            outcome = self._dispatch(tool, context, payload)
        except ToolExecutionError as exc:
            self._notify(invocation.name, payload, str(exc), start, error=True)
            raise

        self._notify(invocation.name, payload, outcome.content, start, stop=outcome.stop)
        return outcome

    def _dispatch(
        self, tool: RegisteredTool, context: AgentContext, payload: dict[str, Any]
    ) -> ToolOutcome:
        name = tool.spec.name
        match tool.kind:
            case BuiltinTool(args_schema=args_schema, handler=handler):
                try:
                    args = args_schema.model_validate(payload)
                except ValidationError as exc:
                    raise ToolExecutionError(
                        f"invalid arguments for {name}: {_first_error(exc)}"
                    ) from exc
                try:
                    return handler(context, args)
                except (sqlite3.Error, NotFoundError) as exc:
                    raise ToolExecutionError(f"{name} failed: {exc}") from exc
            case HttpTool(definition=definition):
                if self._http_executor is None:
                    raise ToolExecutionError(f"HTTP tools are not available: {name}")
                return ToolOutcome(content=self._http_executor.execute(context, definition, payload))
        raise ToolExecutionError(f"Unsupported tool kind for {name}")

    def _notify(
        self,
        name: str,
        payload: dict[str, Any],
        output: str,
        start: float,
        *,
        error: bool = False,
        stop: bool = False,
    ) -> None:
        if self._observer is None:
            return
        self._observer(
            ToolTrace(
                name=name,
                input_payload=payload,
                output_preview=output[:320],
                latency_ms=(perf_counter() - start) * 1000.0,
                error=error,
                stop=stop,
            )
        )


def _parse_arguments(invocation: ToolInvocation) -> dict[str, Any]:
    try:
        value = json.loads(invocation.arguments_json or "{}")
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(
            f"failed to parse {invocation.name} arguments: {exc.msg}"
        ) from exc
    if not isinstance(value, dict):
        raise ToolExecutionError(f"{invocation.name} arguments must be a JSON object")
    return value


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "arguments"
    return f"{location}: {first.get('msg', 'invalid value')}"
