"""Declarative HTTP tools: schema building and request execution."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from helpdesk_agent.agent.context import AgentContext
from helpdesk_agent.errors import ToolExecutionError
from helpdesk_agent.store.records import HttpToolDefinition, ToolParam
from helpdesk_agent.types import ToolSpec

logger = logging.getLogger(__name__)

_JSON_SCHEMA_TYPES = {
    "string": "string",
    "int": "integer",
    "float": "number",
    "bool": "boolean",
}


def build_http_tool_spec(definition: HttpToolDefinition) -> ToolSpec:
    """Advertise only model-filled query and body parameters."""
    properties: dict[str, Any] = {}
    required: list[str] = []
    for param in [*definition.query_params, *definition.body_params]:
        if param.value_type != "by_model":
            continue
        prop: dict[str, Any] = {"type": _JSON_SCHEMA_TYPES[param.data_type]}
        if param.example:
            prop["description"] = f"Example: {param.example}"
        properties[param.key] = prop
        if param.required and param.key not in required:
            required.append(param.key)

    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return ToolSpec(name=definition.name, description=definition.description, parameters=schema)


class HttpToolExecutor:
    """Executes HTTP tools with one shared `httpx.Client` and a fixed timeout.

    The response body is returned verbatim whatever the status code. Transport
    failures and requests httpx refuses to build are raised as
    `ToolExecutionError`.
    """

    def __init__(self, timeout: float = 30.0, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(timeout=timeout)

    def execute(
        self,
        context: AgentContext,
        definition: HttpToolDefinition,
        model_args: dict[str, Any],
    ) -> str:
        endpoint = definition.endpoint
        query = _resolve_all(definition.query_params, model_args, context)
        if query:
            separator = "&" if "?" in endpoint else "?"
            endpoint = f"{endpoint}{separator}{urlencode(query)}"

        headers: dict[str, str] = {}
        content: bytes | None = None
        if definition.body_type == "json":
            headers["Content-Type"] = "application/json"
        elif definition.body_type == "form":
            headers["Content-Type"] = "application/x-www-form-urlencoded"

        if definition.method != "GET" and definition.body_params and definition.body_type:
            body = {
                key: convert_value(value, _data_type(definition.body_params, key))
                for key, value in _resolve_all(definition.body_params, model_args, context).items()
            }
            if definition.body_type == "json":
                content = json.dumps(body).encode("utf-8")
            else:
                content = urlencode({key: _format(value) for key, value in body.items()}).encode("utf-8")

        headers.update(_resolve_all(definition.header_params, model_args, context))
        headers.update(_authorization(definition))

        try:
            response = self._client.request(
                definition.method, endpoint, content=content, headers=headers
            )
        except httpx.HTTPError as exc:
            raise ToolExecutionError(f"request failed: {exc}") from exc
        except (httpx.InvalidURL, UnicodeEncodeError) as exc:
            # Header values must be ASCII; URLs must parse.
            raise ToolExecutionError(f"request could not be built: {exc}") from exc

        result = response.text
        if definition.response_instructions:
            result = (
                f"API Response:\n{result}\n\nInstructions: {definition.response_instructions}"
            )
        logger.info(
            "Executed HTTP tool %s for conversation %d (status %d)",
            definition.name,
            context.conversation.id,
            response.status_code,
        )
        return result

    def close(self) -> None:
        self._client.close()


def resolve_param_value(
    param: ToolParam, model_args: dict[str, Any], context: AgentContext
) -> str:
    """Resolve a parameter; model arguments only ever fill ``by_model`` params."""
    if param.value_type == "by_model":
        if param.key not in model_args or model_args[param.key] is None:
            return ""
        return _format(model_args[param.key])
    if param.value_type == "variable":
        return resolve_variable(param.value, context)
    return param.value


def resolve_variable(variable: str, context: AgentContext) -> str:
    conversation = context.conversation
    match variable:
        case "conversation_id":
            return str(conversation.id)
        case "client_id":
            return "" if conversation.client_id is None else str(conversation.client_id)
        case "client_name":
            return context.client.name if context.client is not None else ""
        case "department_id":
            return "" if conversation.department_id is None else str(conversation.department_id)
        case "channel_id":
            return conversation.channel_id
    return variable


def convert_value(value: str, data_type: str) -> Any:
    """Convert a resolved string to the parameter's declared body type."""
    if data_type == "int":
        try:
            return int(value)
        except ValueError:
            try:
                return int(float(value))
            except ValueError:
                return 0
    if data_type == "float":
        try:
            return float(value)
        except ValueError:
            return 0.0
    if data_type == "bool":
        return value.lower() in ("true", "1")
    return value


def _resolve_all(
    params: list[ToolParam], model_args: dict[str, Any], context: AgentContext
) -> dict[str, str]:
    resolved: dict[str, str] = {}
    for param in params:
        value = resolve_param_value(param, model_args, context)
        if value != "":
            resolved[param.key] = value
    return resolved


def _data_type(params: list[ToolParam], key: str) -> str:
    for param in params:
        if param.key == key:
            return param.data_type
    return "string"


def _authorization(definition: HttpToolDefinition) -> dict[str, str]:
    value = definition.authorization_value
    match definition.authorization_type:
        case "bearer":
            return {"Authorization": f"Bearer {value}"}
        case "basic":
            encoded = base64.b64encode(value.encode("utf-8")).decode("ascii")
            return {"Authorization": f"Basic {encoded}"}
        case "api_key" if definition.authorization_header:
            return {definition.authorization_header: value}
    return {}


def _format(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)
