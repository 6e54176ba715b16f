import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from helpdesk_agent.agent.llm import (
    ChatResponse,
    LangChainChatModel,
    Translator,
    _text_content,
    _to_message,
    _tool_invocations,
)
from helpdesk_agent.errors import ModelCallError
from helpdesk_agent.types import ConversationTurn, ToolInvocation


def test_turns_map_to_langchain_messages() -> None:
    assert isinstance(_to_message(ConversationTurn.system("rules")), SystemMessage)
    assert isinstance(_to_message(ConversationTurn.user("hi")), HumanMessage)

    tool = _to_message(ConversationTurn(role="tool", content="ok", tool_call_id="c1"))
    assert isinstance(tool, ToolMessage)
    assert tool.tool_call_id == "c1"

    assistant = _to_message(
        ConversationTurn.assistant(
            "",
            [
                ToolInvocation("c1", "setTag", '{"tags": ["billing"]}'),
                ToolInvocation("c2", "setPriority", "{broken"),
            ],
        )
    )
    assert isinstance(assistant, AIMessage)
    assert [(call["id"], call["name"], call["args"]) for call in assistant.tool_calls] == [
        ("c1", "setTag", {"tags": ["billing"]})
    ]
    assert assistant.invalid_tool_calls[0]["id"] == "c2"
    assert assistant.invalid_tool_calls[0]["args"] == "{broken"


def test_raw_provider_tool_calls_keep_their_argument_text() -> None:
    reply = AIMessage(
        content="",
        additional_kwargs={
            "tool_calls": [
                {
                    "id": "call_1",
                    "type": "function",
                    "function": {"name": "handover", "arguments": '{"reason": "angry"}'},
                }
            ]
        },
    )

    assert _tool_invocations(reply) == [
        ToolInvocation("call_1", "handover", '{"reason": "angry"}')
    ]


def test_parsed_tool_calls_are_serialized() -> None:
    reply = AIMessage(
        content="",
        tool_calls=[{"name": "searchKnowledgeBase", "args": {"query": "refund"}, "id": "c9"}],
    )

    assert _tool_invocations(reply) == [
        ToolInvocation("c9", "searchKnowledgeBase", '{"query": "refund"}')
    ]


def test_text_content_joins_blocks() -> None:
    assert _text_content("plain") == "plain"
    assert _text_content([{"type": "text", "text": "Hello "}, "world", {"type": "image"}]) == (
        "Hello world"
    )


def test_langchain_model_returns_final_text() -> None:
    llm = GenericFakeChatModel(messages=iter([AIMessage(content="Hi, how can I help?")]))
    model = LangChainChatModel(llm=llm)

    response = model.complete(
        [ConversationTurn.system("rules"), ConversationTurn.user("hello")],
        [],
        max_tokens=100,
        temperature=0.0,
    )

    assert response.content == "Hi, how can I help?"
    assert response.tool_calls == []


def test_langchain_model_wraps_provider_errors() -> None:
    llm = GenericFakeChatModel(messages=iter([]))
    model = LangChainChatModel(llm=llm)

    with pytest.raises(ModelCallError, match="chat completion failed"):
        model.complete([ConversationTurn.user("hello")], [], max_tokens=10, temperature=0.0)


def test_detect_language_reduces_reply_to_code(scripted_model) -> None:
    translator = Translator(scripted_model([ChatResponse(content=" 'fa' (Persian)\n")]))

    assert translator.detect_language("سلام") == "fa"


def test_translator_degrades_on_failure(scripted_model) -> None:
    failing = Translator(
        scripted_model([ModelCallError("down"), ModelCallError("down"), ChatResponse(content="")])
    )

    assert failing.translate("Hello", "de") == "Hello"
    assert failing.detect_language("Hello") is None
    assert failing.translate("Hello", "de") == "Hello"
