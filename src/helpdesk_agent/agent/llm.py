"""Chat-completion client used by the orchestrator and the translator."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_openai import ChatOpenAI

from helpdesk_agent.errors import ModelCallError
from helpdesk_agent.types import ConversationTurn, ToolInvocation, ToolSpec

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChatResponse:
    """First choice of a completion: final text and/or tool calls."""

    content: str = ""
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    finish_reason: str | None = None


class ChatModel(Protocol):
    def complete(
        self,
        turns: list[ConversationTurn],
        tools: list[ToolSpec],
        *,
        max_tokens: int,
        temperature: float,
    ) -> ChatResponse:
        """Run one completion; raise `ModelCallError` on any provider failure."""


class LangChainChatModel:
    """`ChatModel` backed by a LangChain chat model (OpenAI by default).

    Tool-call arguments are passed through as the raw JSON text the provider
    returned, malformed or not, so argument errors surface in the tool layer
    where the model can see and correct them.
    """

    def __init__(
        self,
        model: str = "gpt-4o",
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        llm: BaseChatModel | None = None,
    ) -> None:
        self.model = model
        self._llm = llm or ChatOpenAI(
            model=model,
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    def complete(
        self,
        turns: list[ConversationTurn],
        tools: list[ToolSpec],
        *,
        max_tokens: int,
        temperature: float,
    ) -> ChatResponse:
        messages = [_to_message(turn) for turn in turns]
        if tools:
            runnable = self._llm.bind_tools(
                [spec.as_openai_tool() for spec in tools],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        else:
            runnable = self._llm.bind(max_tokens=max_tokens, temperature=temperature)

        try:
            reply = runnable.invoke(messages)
        except Exception as exc:
            raise ModelCallError(f"chat completion failed: {exc}") from exc

        if not isinstance(reply, AIMessage):
            raise ModelCallError(f"unexpected completion type: {type(reply).__name__}")

        return ChatResponse(
            content=_text_content(reply.content),
            tool_calls=_tool_invocations(reply),
            finish_reason=reply.response_metadata.get("finish_reason"),
        )


class Translator:
    """Translates short notices and detects a text's language via a `ChatModel`.

    Both operations degrade instead of failing: a translation error keeps the
    original text and a detection error yields ``None``.
    """

    def __init__(self, chat_model: ChatModel) -> None:
        self.chat_model = chat_model

    def translate(self, text: str, target_language: str) -> str:
        prompt = (
            f"Translate the following message to {target_language}. "
            f"Only output the translation, nothing else:\n\n{text}"
        )
        try:
            response = self.chat_model.complete(
                [ConversationTurn.user(prompt)], [], max_tokens=500, temperature=0.3
            )
        except ModelCallError as exc:
            logger.warning("Failed to translate message to %s: %s", target_language, exc)
            return text
        return response.content.strip() or text

    def detect_language(self, text: str) -> str | None:
        prompt = (
            "What language is this text written in? Reply with ONLY the language code "
            "(e.g., 'en', 'fa', 'es', 'fr', 'de', 'ar', 'zh', 'ja', 'ko', 'ru', 'pt', "
            "'it', 'tr', 'nl', 'pl'). If it's English, reply 'en'. Text:\n\n"
            f"{text}"
        )
        try:
            response = self.chat_model.complete(
                [ConversationTurn.user(prompt)], [], max_tokens=10, temperature=0.1
            )
        except ModelCallError as exc:
            logger.warning("Failed to detect language: %s", exc)
            return None

        words = response.content.strip().lower().split()
        if not words:
            return None
        # Replies like "fa (Persian)" or "'es'" reduce to the bare code.
        return words[0].strip("\"'().") or None


def _to_message(turn: ConversationTurn) -> BaseMessage:
    if turn.role == "system":
        return SystemMessage(content=turn.content)
    if turn.role == "user":
        return HumanMessage(content=turn.content)
    if turn.role == "tool":
        return ToolMessage(content=turn.content, tool_call_id=turn.tool_call_id or "")

    valid: list[dict[str, Any]] = []
    invalid: list[dict[str, Any]] = []
    for call in turn.tool_calls:
        args = _parse_arguments(call.arguments_json)
        if args is None:
            invalid.append(
                {"name": call.name, "args": call.arguments_json, "id": call.id, "error": None}
            )
        else:
            valid.append({"name": call.name, "args": args, "id": call.id})
    return AIMessage(content=turn.content, tool_calls=valid, invalid_tool_calls=invalid)


def _tool_invocations(reply: AIMessage) -> list[ToolInvocation]:
    raw_calls = reply.additional_kwargs.get("tool_calls") or []
    if raw_calls:
        return [
            ToolInvocation(
                id=str(call.get("id", "")),
                name=str(call.get("function", {}).get("name", "")),
                arguments_json=call.get("function", {}).get("arguments") or "{}",
            )
            for call in raw_calls
        ]

    invocations = [
        ToolInvocation(id=call.get("id") or "", name=call["name"], arguments_json=json.dumps(call["args"]))
        for call in reply.tool_calls
    ]
    invocations.extend(
        ToolInvocation(
            id=call.get("id") or "",
            name=call.get("name") or "",
            arguments_json=call.get("args") or "{}",
        )
        for call in reply.invalid_tool_calls
    )
    return invocations


def _parse_arguments(raw: str) -> dict[str, Any] | None:
    try:
        value = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _text_content(content: str | list[Any]) -> str:
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for item in content:
        if isinstance(item, dict) and "text" in item:
            parts.append(str(item["text"]))
        elif isinstance(item, str):
            parts.append(item)
    return "".join(parts)
