"""Built-in support tools and per-agent tool assembly."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from helpdesk_agent.agent.context import AgentContext
from helpdesk_agent.agent.http_tools import HttpToolExecutor, build_http_tool_spec
from helpdesk_agent.agent.llm import Translator
from helpdesk_agent.agent.registry import BuiltinTool, HttpTool, ToolOutcome, ToolRegistry
from helpdesk_agent.errors import EmbeddingError, VectorIndexError
from helpdesk_agent.retrieval.retriever import KnowledgeRetriever
from helpdesk_agent.store.records import (
    PRIORITIES,
    STATUS_WAIT_FOR_AGENT,
    AgentProfile,
    HttpToolDefinition,
    Message,
    User,
    utc_now,
)
from helpdesk_agent.store.sqlite import SupportStore
from helpdesk_agent.types import ToolSpec

logger = logging.getLogger(__name__)

NO_QUERY = "No query provided"
SEARCH_UNAVAILABLE = "Knowledge base search is not available."
NO_RESULTS = "No relevant information found in the knowledge base."

_ONLINE_WINDOW = timedelta(minutes=5)
_SEARCH_LIMIT = 5


class HandoverInput(BaseModel):
    reason: str = ""


class SearchKnowledgeBaseInput(BaseModel):
    query: str = ""


class UserInfoInput(BaseModel):
    """Arbitrary collected fields; the advertised schema names the expected ones."""

    model_config = ConfigDict(extra="allow")


class SetPriorityInput(BaseModel):
    priority: str = ""


class SetTagInput(BaseModel):
    tags: list[str] = Field(default_factory=list)


@dataclass(slots=True)
class ToolDependencies:
    store: SupportStore
    retriever: KnowledgeRetriever | None = None
    translator: Translator | None = None
    http_executor: HttpToolExecutor | None = None


def build_tools_for_agent(
    profile: AgentProfile,
    http_tools: list[HttpToolDefinition],
    dependencies: ToolDependencies,
) -> ToolRegistry:
    """Assemble the registry for one agent.

    Built-in tools are enabled by profile flags and own their names; an HTTP
    tool reusing a taken name is skipped.
    """

    registry = ToolRegistry(http_executor=dependencies.http_executor)
    builtins = BuiltinTools(dependencies)

    if profile.handover_enabled:
        registry.register(
            ToolSpec(
                name="handover",
                description=(
                    "Transfer the conversation to a human agent. Use this when you cannot "
                    "help the customer or when they explicitly request to speak with a human."
                ),
                parameters=_object_schema(
                    {"reason": _string("The reason for handing over to a human agent")},
                    required=["reason"],
                ),
            ),
            BuiltinTool(args_schema=HandoverInput, handler=builtins.handover),
        )
    if profile.use_knowledge_base:
        registry.register(
            ToolSpec(
                name="searchKnowledgeBase",
                description=(
                    "Search the knowledge base for relevant information to answer customer "
                    "questions. Use this when you need factual information about products, "
                    "policies, or procedures."
                ),
                parameters=_object_schema(
                    {
                        "query": _string(
                            "The search query to find relevant information in the knowledge base"
                        )
                    },
                    required=["query"],
                ),
            ),
            BuiltinTool(args_schema=SearchKnowledgeBaseInput, handler=builtins.search_knowledge_base),
        )
    fields = profile.user_info_fields
    if fields:
        registry.register(
            ToolSpec(
                name="setUserInfo",
                description=(
                    "Store customer information that has been collected during the "
                    "conversation. Call this when you have gathered the required "
                    "information from the customer."
                ),
                parameters=_object_schema(
                    {field: _string(f"The customer's {field}") for field in fields},
                    required=list(fields),
                ),
            ),
            BuiltinTool(args_schema=UserInfoInput, handler=builtins.set_user_info),
        )
    if profile.priority_detection:
        registry.register(
            ToolSpec(
                name="setPriority",
                description=(
                    "Set the priority level of the conversation based on urgency. Use 'urgent' "
                    "for critical issues, 'high' for important matters, 'medium' for standard "
                    "requests, and 'low' for minor inquiries."
                ),
                parameters=_object_schema(
                    {
                        "priority": {
                            **_string("The priority level for this conversation"),
                            "enum": list(PRIORITIES),
                        }
                    },
                    required=["priority"],
                ),
            ),
            BuiltinTool(args_schema=SetPriorityInput, handler=builtins.set_priority),
        )
    if profile.auto_tagging:
        registry.register(
            ToolSpec(
                name="setTag",
                description=(
                    "Add tags to the conversation to categorize the topic or issue type. Use "
                    "descriptive tags that help with routing and reporting."
                ),
                parameters=_object_schema(
                    {
                        "tags": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "List of tags to add to the conversation for categorization",
                        }
                    },
                    required=["tags"],
                ),
            ),
            BuiltinTool(args_schema=SetTagInput, handler=builtins.set_tag),
        )

    for definition in http_tools:
        if definition.name in registry:
            logger.warning(
                "Skipping HTTP tool %r of agent %d: name already in use", definition.name, profile.id
            )
            continue
        registry.register(build_http_tool_spec(definition), HttpTool(definition=definition))

    return registry


class BuiltinTools:
    """Handlers of the built-in tools; each mutates the store and the context."""

    def __init__(self, dependencies: ToolDependencies) -> None:
        self.store = dependencies.store
        self.retriever = dependencies.retriever
        self.translator = dependencies.translator

    def handover(self, context: AgentContext, args: HandoverInput) -> ToolOutcome:
        conversation = context.conversation
        cutoff = utc_now() - _ONLINE_WINDOW
        names: list[str] = []
        any_online = False

        for user_id in context.profile.handover_user_ids:
            self.store.assign_user(conversation.id, user_id, conversation.department_id)
            user = self.store.get_user(user_id)
            if user is None:
                continue
            names.append(user.label)
            if _active_since(user, cutoff):
                any_online = True

        self.store.set_conversation_status(conversation.id, STATUS_WAIT_FOR_AGENT)
        conversation.status = STATUS_WAIT_FOR_AGENT

        self.store.add_message(
            Message(
                conversation_id=conversation.id,
                body=f"Conversation handed over to human agent(s). Reason: {args.reason}",
                is_system_message=True,
            )
        )
        notice = self._localize(context, handover_notice(names, any_online))
        self.store.add_message(
            Message(conversation_id=conversation.id, body=notice, user_id=context.bot.id)
        )

        logger.info(
            "Conversation %d handed over to %s (any online: %s). Reason: %s",
            conversation.id,
            names,
            any_online,
            args.reason,
        )
        return ToolOutcome(
            content=f"Handover initiated to [{', '.join(names)}]. User has been notified.",
            stop=True,
        )

    def search_knowledge_base(
        self, context: AgentContext, args: SearchKnowledgeBaseInput
    ) -> ToolOutcome:
        query = args.query.strip()
        if not query:
            return ToolOutcome(NO_QUERY)
        if self.retriever is None:
            logger.warning("Knowledge base search requested but no retriever is configured")
            return ToolOutcome(SEARCH_UNAVAILABLE)

        try:
            retrieved = self.retriever.search_with_context(query, _SEARCH_LIMIT)
        except (EmbeddingError, VectorIndexError) as exc:
            logger.warning(
                "Knowledge base search failed for conversation %d: %s", context.conversation.id, exc
            )
            return ToolOutcome(NO_RESULTS)

        if retrieved.is_empty:
            return ToolOutcome(NO_RESULTS)
        return ToolOutcome(retrieved.text)

    def set_user_info(self, context: AgentContext, args: UserInfoInput) -> ToolOutcome:
        info: dict[str, Any] = dict(args.model_extra or {})

        if context.client is not None:
            name = info.get("name")
            new_name = name if isinstance(name, str) and name else None
            context.client.data = self.store.merge_client_data(
                context.client.id, info, name=new_name
            )
            if new_name:
                context.client.name = new_name

        context.conversation.custom_fields = self.store.merge_user_info(
            context.conversation.id, info
        )
        logger.info(
            "Collected user info for conversation %d: %s", context.conversation.id, list(info)
        )
        return ToolOutcome(f"User information saved: {', '.join(info)}")

    def set_priority(self, context: AgentContext, args: SetPriorityInput) -> ToolOutcome:
        if args.priority not in PRIORITIES:
            return ToolOutcome(f"Invalid priority: {args.priority}")

        self.store.set_conversation_priority(context.conversation.id, args.priority)
        context.conversation.priority = args.priority
        logger.info(
            "Priority of conversation %d set to %s", context.conversation.id, args.priority
        )
        return ToolOutcome(f"Priority set to: {args.priority}")

    def set_tag(self, context: AgentContext, args: SetTagInput) -> ToolOutcome:
        if not args.tags:
            return ToolOutcome("No tags provided")

        added: list[str] = []
        for raw in args.tags:
            name = raw.strip()
            if not name:
                continue
            try:
                tag_id = self.store.get_or_create_tag(name)
                self.store.link_tag(context.conversation.id, tag_id)
            except sqlite3.Error as exc:
                logger.warning("Failed to add tag %s: %s", name, exc)
                continue
            added.append(name)

        if not added:
            return ToolOutcome("No tags were added")
        logger.info("Tagged conversation %d with %s", context.conversation.id, added)
        return ToolOutcome(f"Tags added: {', '.join(added)}")

    def _localize(self, context: AgentContext, text: str) -> str:
        if self.translator is None:
            return text

        target = ""
        if context.client is not None and context.client.language:
            target = context.client.language.strip().lower()
        if target in ("", "en"):
            target = self._detect_language(context.conversation.id) or ""

        if target and target not in ("en", "english"):
            return self.translator.translate(text, target)
        return text

    def _detect_language(self, conversation_id: int) -> str | None:
        messages = self.store.recent_client_messages(conversation_id, 3)
        texts = [message.body for message in messages if message.body]
        if not texts or self.translator is None:
            return None
        return self.translator.detect_language("\n".join(texts))


def handover_notice(names: list[str], any_online: bool) -> str:
    if not names:
        return (
            "I've transferred this conversation to our support team. "
            "Please wait and someone will assist you shortly."
        )
    team = ", ".join(names)
    if any_online:
        return (
            f"I've transferred this conversation to our support team ({team}). "
            "Someone is currently online and will assist you shortly."
        )
    return (
        f"I've transferred this conversation to our support team ({team}). "
        "They are currently offline, but will get back to you as soon as possible."
    )


def _active_since(user: User, cutoff: datetime) -> bool:
    if user.last_activity is None:
        return False
    last = user.last_activity
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return last > cutoff


def _object_schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


def _string(description: str) -> dict[str, Any]:
    return {"type": "string", "description": description}
