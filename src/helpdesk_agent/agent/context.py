"""Per-run side-effect target for built-in and HTTP tools."""

from __future__ import annotations

from dataclasses import dataclass, field

from helpdesk_agent.store.records import (
    AgentProfile,
    Client,
    Conversation,
    Department,
    HttpToolDefinition,
    User,
)


@dataclass(slots=True)
class AgentContext:
    """Records one orchestration run acts on.

    Tools update the store and mirror the change on these records, so a later
    tool in the same run sees the new values. The turn list is never reachable
    from here.
    """

    conversation: Conversation
    profile: AgentProfile
    bot: User
    client: Client | None = None
    department: Department | None = None
    http_tools: list[HttpToolDefinition] = field(default_factory=list)
