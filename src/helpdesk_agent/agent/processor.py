"""Entry point that lets the department's AI agent answer a client message."""

from __future__ import annotations

import logging

from helpdesk_agent.agent.context import AgentContext
from helpdesk_agent.agent.orchestrator import Orchestrator, RunResult, RunState
from helpdesk_agent.agent.prompt import build_system_prompt, format_history
from helpdesk_agent.agent.tools import ToolDependencies, build_tools_for_agent
from helpdesk_agent.config import AgentConfig
from helpdesk_agent.store.records import Message
from helpdesk_agent.types import ConversationTurn

logger = logging.getLogger(__name__)


class AgentProcessor:
    """Decides whether the bot answers a stored message and runs the agent.

    The bot stays quiet for agent or system messages, without an active agent
    on the conversation's department, when bot handling is off, and once a
    human agent is assigned.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        dependencies: ToolDependencies,
        config: AgentConfig | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.dependencies = dependencies
        self.store = dependencies.store
        self.config = config or AgentConfig()

    def process_incoming_message(self, message: Message) -> RunResult | None:
        """Run the agent for a client message already saved to the store.

        Returns ``None`` when the bot does not answer; `ModelCallError` from
        the orchestrator propagates.
        """
        if message.user_id is not None or message.is_system_message:
            return None
        if message.client_id is None:
            return None

        context = self._load_context(message.conversation_id)
        if context is None:
            return None

        profile = context.profile
        conversation = context.conversation
        prompt = build_system_prompt(
            profile, context.http_tools, context.bot, context.client, conversation
        )
        window = profile.context_window if profile.context_window > 0 else self.config.context_window
        history = format_history(self.store.recent_messages(conversation.id, window), context.bot.id)
        tools = build_tools_for_agent(profile, context.http_tools, self.dependencies)

        logger.debug("Agent %d processing message for conversation %d", profile.id, conversation.id)
        result = self.orchestrator.run(context, [ConversationTurn.system(prompt), *history], tools)

        if result.state is RunState.COMPLETED and result.reply:
            self.store.add_message(
                Message(conversation_id=conversation.id, body=result.reply, user_id=context.bot.id)
            )
            logger.info("Agent replied in conversation %d", conversation.id)
        return result

    def _load_context(self, conversation_id: int) -> AgentContext | None:
        conversation = self.store.get_conversation(conversation_id)

        department = (
            self.store.get_department(conversation.department_id)
            if conversation.department_id is not None
            else None
        )
        if department is None or department.ai_agent_id is None:
            logger.debug("No AI agent configured for conversation %d", conversation.id)
            return None

        profile = self.store.get_agent(department.ai_agent_id)
        if profile is None:
            return None
        if not profile.is_active:
            logger.debug("AI agent %d is not active, skipping", profile.id)
            return None
        if not conversation.handle_by_bot:
            logger.debug("Bot handling disabled for conversation %d", conversation.id)
            return None

        bot = self.store.get_user(profile.bot_id)
        if bot is None:
            logger.warning("AI agent %d has no bot user configured", profile.id)
            return None

        for user in self.store.assigned_users(conversation.id):
            if user.id != bot.id and not user.is_bot:
                logger.debug(
                    "Human agent %s is assigned to conversation %d, bot stays silent",
                    user.label,
                    conversation.id,
                )
                return None

        client = (
            self.store.get_client(conversation.client_id)
            if conversation.client_id is not None
            else None
        )
        return AgentContext(
            conversation=conversation,
            profile=profile,
            bot=bot,
            client=client,
            department=department,
            http_tools=self.store.http_tools(profile.id),
        )
