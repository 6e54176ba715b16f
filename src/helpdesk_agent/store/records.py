"""Persistent records shared by the store, the tools and the processor."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

Priority = Literal["low", "medium", "high", "urgent"]
PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "urgent")

STATUS_OPEN = "open"
STATUS_WAIT_FOR_AGENT = "wait_for_agent"

AGENT_ACTIVE = "active"
AGENT_INACTIVE = "inactive"

USER_TYPE_AGENT = "agent"
USER_TYPE_BOT = "bot"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(BaseModel):
    id: int
    client_id: int | None = None
    department_id: int | None = None
    channel_id: str = ""
    status: str = STATUS_OPEN
    priority: str = "medium"
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    handle_by_bot: bool = True


class Client(BaseModel):
    id: int
    name: str = ""
    language: str | None = None
    timezone: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class User(BaseModel):
    id: str
    name: str = ""
    display_name: str = ""
    type: str = USER_TYPE_AGENT
    last_activity: datetime | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.name

    @property
    def is_bot(self) -> bool:
        return self.type == USER_TYPE_BOT


class Message(BaseModel):
    id: int | None = None
    conversation_id: int
    body: str = ""
    user_id: str | None = None
    client_id: int | None = None
    is_system_message: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    user: User | None = None


class Department(BaseModel):
    id: int
    name: str = ""
    ai_agent_id: int | None = None


class ToolParam(BaseModel):
    """One request parameter of an HTTP tool."""

    key: str
    value: str = ""
    value_type: Literal["constant", "variable", "by_model"] = "constant"
    data_type: Literal["string", "int", "float", "bool"] = "string"
    example: str = ""
    required: bool = False


class HttpToolDefinition(BaseModel):
    """Operator-declared HTTP endpoint exposed to the model as a tool."""

    id: int | None = None
    name: str = Field(min_length=1)
    description: str = ""
    endpoint: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    query_params: list[ToolParam] = Field(default_factory=list)
    header_params: list[ToolParam] = Field(default_factory=list)
    body_type: Literal["json", "form"] | None = None
    body_params: list[ToolParam] = Field(default_factory=list)
    authorization_type: Literal["none", "bearer", "basic", "api_key"] = "none"
    authorization_header: str = ""
    authorization_value: str = ""
    response_instructions: str = ""


class AgentProfile(BaseModel):
    """Configuration of one AI agent; flags decide which built-in tools exist."""

    id: int
    name: str = ""
    bot_id: str
    status: str = AGENT_ACTIVE
    handover_enabled: bool = False
    handover_user_ids: list[str] = Field(default_factory=list)
    multi_language: bool = True
    internet_access: bool = False
    tone: str = "casual"
    use_knowledge_base: bool = True
    unit_conversion: bool = True
    instructions: str = ""
    greeting_message: str = ""
    max_response_length: int = 0
    context_window: int = 10
    blocked_topics: str = ""
    max_tool_calls: int = 5
    collect_user_info: bool = False
    collect_user_info_fields: str = ""
    humor_level: int = 50
    use_emojis: bool = False
    formality_level: int = 50
    priority_detection: bool = False
    auto_tagging: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == AGENT_ACTIVE

    @property
    def user_info_fields(self) -> list[str]:
        if not self.collect_user_info:
            return []
        return [field.strip() for field in self.collect_user_info_fields.split(",") if field.strip()]
