from datetime import timedelta

import pytest

from helpdesk_agent.agent.context import AgentContext
from helpdesk_agent.store.records import (
    USER_TYPE_BOT,
    AgentProfile,
    Client,
    Conversation,
    Department,
    User,
    utc_now,
)
from helpdesk_agent.store.sqlite import SupportStore


class ScriptedChatModel:
    """Replays canned responses in order and records every call."""

    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.calls = []

    def complete(self, turns, tools, *, max_tokens, temperature):
        self.calls.append(
            {
                "turns": list(turns),
                "tools": [spec.name for spec in tools],
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        if not self.responses:
            raise AssertionError("unexpected model call")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def scripted_model():
    return ScriptedChatModel


@pytest.fixture
def store(tmp_path) -> SupportStore:
    return SupportStore(tmp_path / "support.db")


@pytest.fixture
def profile() -> AgentProfile:
    return AgentProfile(
        id=1,
        name="Support bot",
        bot_id="bot-1",
        handover_enabled=True,
        handover_user_ids=["agent-1", "agent-2"],
        priority_detection=True,
        auto_tagging=True,
        collect_user_info=True,
        collect_user_info_fields="email, phone",
        max_tool_calls=3,
    )


@pytest.fixture
def support_context(store: SupportStore, profile: AgentProfile) -> AgentContext:
    """Seed one conversation handled by an active agent and return its run context."""
    bot = store.save_user(User(id="bot-1", name="Ava", type=USER_TYPE_BOT))
    store.save_user(User(id="agent-1", name="sam", display_name="Sam", last_activity=utc_now()))
    store.save_user(
        User(id="agent-2", name="Lee", last_activity=utc_now() - timedelta(hours=2))
    )
    client = store.save_client(Client(id=7, name="Dana", language="en", data={"plan": "pro"}))
    department = store.save_department(Department(id=3, name="Billing", ai_agent_id=profile.id))
    store.save_agent(profile)
    store.save_conversation(Conversation(id=42, client_id=client.id, department_id=department.id))

    return AgentContext(
        conversation=store.get_conversation(42),
        profile=profile,
        bot=bot,
        client=client,
        department=department,
    )
