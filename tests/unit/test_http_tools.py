import base64
import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from helpdesk_agent.agent.http_tools import (
    HttpToolExecutor,
    build_http_tool_spec,
    convert_value,
    resolve_variable,
)
from helpdesk_agent.agent.llm import ChatResponse
from helpdesk_agent.agent.orchestrator import Orchestrator, RunState
from helpdesk_agent.agent.registry import HttpTool, ToolRegistry
from helpdesk_agent.errors import ToolExecutionError
from helpdesk_agent.store.records import HttpToolDefinition, ToolParam
from helpdesk_agent.types import ConversationTurn, ToolInvocation


def _executor(responder) -> tuple[HttpToolExecutor, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responder(request)

    client = httpx.Client(transport=httpx.MockTransport(_handler))
    return HttpToolExecutor(client=client), seen


def _order_lookup() -> HttpToolDefinition:
    return HttpToolDefinition(
        name="lookupOrder",
        description="Look up an order",
        endpoint="https://shop.example.com/api/orders?source=bot",
        method="GET",
        query_params=[
            ToolParam(key="order_id", value_type="by_model", example="A-100", required=True),
            ToolParam(key="conversation", value="conversation_id", value_type="variable"),
            ToolParam(key="region", value="eu", value_type="constant"),
        ],
        header_params=[ToolParam(key="X-Client", value="client_name", value_type="variable")],
        authorization_type="bearer",
        authorization_value="secret-token",
    )


def test_get_tool_encodes_query_and_resolves_variables(support_context) -> None:
    executor, seen = _executor(lambda request: httpx.Response(200, text='{"status": "shipped"}'))

    result = executor.execute(support_context, _order_lookup(), {"order_id": "A 100&x"})

    assert result == '{"status": "shipped"}'
    request = seen[0]
    assert request.method == "GET"
    url = urlsplit(str(request.url))
    assert url.path == "/api/orders"
    assert parse_qs(url.query) == {
        "source": ["bot"],
        "order_id": ["A 100&x"],
        "conversation": ["42"],
        "region": ["eu"],
    }
    assert request.headers["Authorization"] == "Bearer secret-token"
    assert request.headers["X-Client"] == "Dana"
    assert request.content == b""


def test_model_arguments_cannot_override_constants(support_context) -> None:
    executor, seen = _executor(lambda request: httpx.Response(200, text="ok"))

    executor.execute(
        support_context,
        _order_lookup(),
        {"order_id": "A-1", "region": "us", "conversation": "999"},
    )

    query = parse_qs(urlsplit(str(seen[0].url)).query)
    assert query["region"] == ["eu"]
    assert query["conversation"] == ["42"]


def test_json_body_converts_declared_types(support_context) -> None:
    definition = HttpToolDefinition(
        name="createTicket",
        endpoint="https://desk.example.com/tickets",
        method="POST",
        body_type="json",
        body_params=[
            ToolParam(key="subject", value_type="by_model", required=True),
            ToolParam(key="quantity", value_type="by_model", data_type="int"),
            ToolParam(key="amount", value_type="by_model", data_type="float"),
            ToolParam(key="urgent", value="true", data_type="bool"),
            ToolParam(key="client", value="client_id", value_type="variable", data_type="int"),
        ],
        authorization_type="api_key",
        authorization_header="X-Api-Key",
        authorization_value="k-123",
    )
    executor, seen = _executor(lambda request: httpx.Response(201, text="created"))

    executor.execute(
        support_context, definition, {"subject": "Broken", "quantity": "3", "amount": 9.5}
    )

    request = seen[0]
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Api-Key"] == "k-123"
    assert json.loads(request.content) == {
        "subject": "Broken",
        "quantity": 3,
        "amount": 9.5,
        "urgent": True,
        "client": 7,
    }


def test_form_body_and_basic_auth(support_context) -> None:
    definition = HttpToolDefinition(
        name="subscribe",
        endpoint="https://mail.example.com/subscribe",
        method="PUT",
        body_type="form",
        body_params=[ToolParam(key="email", value_type="by_model")],
        authorization_type="basic",
        authorization_value="user:pass",
    )
    executor, seen = _executor(lambda request: httpx.Response(200, text="ok"))

    executor.execute(support_context, definition, {"email": "dana@example.com"})

    request = seen[0]
    assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
    assert parse_qs(request.content.decode()) == {"email": ["dana@example.com"]}
    expected = base64.b64encode(b"user:pass").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"


def test_error_status_body_is_returned_with_instructions(support_context) -> None:
    definition = _order_lookup().model_copy(
        update={"response_instructions": "Summarize the order status."}
    )
    executor, _ = _executor(lambda request: httpx.Response(404, text="order not found"))

    result = executor.execute(support_context, definition, {"order_id": "missing"})

    assert result == (
        "API Response:\norder not found\n\nInstructions: Summarize the order status."
    )


def test_transport_failure_is_a_tool_error(support_context) -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    executor, _ = _executor(_refuse)

    with pytest.raises(ToolExecutionError, match="request failed"):
        executor.execute(support_context, _order_lookup(), {"order_id": "A-1"})


def test_tool_spec_exposes_only_model_filled_params() -> None:
    spec = build_http_tool_spec(_order_lookup())

    assert spec.name == "lookupOrder"
    assert spec.description == "Look up an order"
    assert spec.parameters == {
        "type": "object",
        "properties": {"order_id": {"type": "string", "description": "Example: A-100"}},
        "required": ["order_id"],
    }


def test_value_helpers(support_context) -> None:
    assert convert_value("12", "int") == 12
    assert convert_value("12.7", "int") == 12
    assert convert_value("abc", "int") == 0
    assert convert_value("2.5", "float") == 2.5
    assert convert_value("nope", "float") == 0.0
    assert convert_value("TRUE", "bool") is True
    assert convert_value("yes", "bool") is False
    assert convert_value("text", "string") == "text"

    assert resolve_variable("department_id", support_context) == "3"
    assert resolve_variable("channel_id", support_context) == ""
    assert resolve_variable("unknown_var", support_context) == "unknown_var"


def test_non_ascii_header_value_is_a_tool_error(support_context) -> None:
    support_context.client = support_context.client.model_copy(update={"name": "José"})
    executor, seen = _executor(lambda request: httpx.Response(200, text="{}"))

    with pytest.raises(ToolExecutionError, match="could not be built"):
        executor.execute(support_context, _order_lookup(), {"order_id": "A-1"})
    assert seen == []


def test_unparseable_endpoint_is_a_tool_error(support_context) -> None:
    executor, seen = _executor(lambda request: httpx.Response(200, text="{}"))
    definition = _order_lookup().model_copy(update={"endpoint": "https://shop.example.com:99999/x"})

    with pytest.raises(ToolExecutionError):
        executor.execute(support_context, definition, {"order_id": "A-1"})
    assert seen == []


def test_unbuildable_request_does_not_abort_the_run(support_context, scripted_model) -> None:
    support_context.client = support_context.client.model_copy(update={"name": "José"})
    executor, _ = _executor(lambda request: httpx.Response(200, text="{}"))
    registry = ToolRegistry(http_executor=executor)
    definition = _order_lookup()
    registry.register(build_http_tool_spec(definition), HttpTool(definition=definition))
    model = scripted_model(
        [
            ChatResponse(
                tool_calls=[
                    ToolInvocation("call-1", "lookupOrder", json.dumps({"order_id": "A-1"}))
                ]
            ),
            ChatResponse(content="I could not reach the order system."),
        ]
    )

    result = Orchestrator(model).run(
        support_context,
        [ConversationTurn.system("You are helpful."), ConversationTurn.user("Where is A-1?")],
        registry,
    )

    assert result.state is RunState.COMPLETED
    tool_turn = model.calls[1]["turns"][-1]
    assert tool_turn.role == "tool"
    assert tool_turn.content.startswith("Error executing tool:")
