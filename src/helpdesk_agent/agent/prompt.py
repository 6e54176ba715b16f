"""System prompt and history formatting for support agents."""

from __future__ import annotations

from helpdesk_agent.store.records import (
    AgentProfile,
    Client,
    Conversation,
    HttpToolDefinition,
    Message,
    ToolParam,
    User,
)
from helpdesk_agent.types import ConversationTurn

TONE_DESCRIPTIONS = {
    "formal": "professional, business-appropriate",
    "casual": "friendly, conversational",
    "detailed": "comprehensive with examples",
    "precise": "concise, to-the-point",
    "empathetic": "warm, understanding",
    "technical": "technical terminology preferred",
}

NO_INFORMATION = "I don't have information about that."


def build_system_prompt(
    profile: AgentProfile,
    http_tools: list[HttpToolDefinition],
    bot: User | None = None,
    client: Client | None = None,
    conversation: Conversation | None = None,
    *,
    project_name: str = "",
) -> str:
    """Render the agent's instructions followed by what is known about the customer."""
    bot_name = (bot.label if bot is not None else "") or "Assistant"
    project = project_name or "the company"

    sections = [
        _identity(profile, bot_name, project),
        "## Rules\n" + "\n".join(f"{i}. {rule}" for i, rule in enumerate(_rules(profile), start=1)),
    ]
    if profile.instructions.strip():
        sections.append(f"## Instructions\n{profile.instructions.strip()}")

    tool_lines = _tool_lines(profile, http_tools)
    if tool_lines:
        sections.append("\n".join(tool_lines))

    sections.append(
        "## Context\nUse conversation history: maintain context, don't re-ask known info, "
        "track multi-step issues."
    )

    prompt = "\n\n".join(sections)
    customer = customer_context(client, conversation)
    if customer:
        prompt += "\n\n" + customer
    return prompt


def customer_context(client: Client | None, conversation: Conversation | None) -> str:
    if client is None:
        return ""

    parts = ["## Customer Context"]
    if client.name:
        parts.append(f"- Customer name: {client.name}")
    if client.language:
        parts.append(f"- Preferred language: {client.language}")
    if client.timezone:
        parts.append(f"- Timezone: {client.timezone}")
    if client.data:
        parts.append("- Known information:")
        parts.extend(f"  - {key}: {value}" for key, value in client.data.items())
    if conversation is not None and conversation.priority not in ("", "medium"):
        parts.append(f"- Current priority: {conversation.priority}")

    return "\n".join(parts) if len(parts) > 1 else ""


def format_history(messages: list[Message], bot_user_id: str) -> list[ConversationTurn]:
    """Map stored messages to model turns.

    Messages from human agents become user turns prefixed with the agent's
    name so the model can tell them apart from the customer.
    """
    turns: list[ConversationTurn] = []
    for message in messages:
        if message.is_system_message:
            turns.append(ConversationTurn.system(message.body))
        elif message.user_id is not None and message.user_id == bot_user_id:
            turns.append(ConversationTurn.assistant(message.body))
        elif message.user_id is not None and message.user is not None and message.user.label:
            turns.append(ConversationTurn.user(f"[Agent {message.user.label}]: {message.body}"))
        else:
            turns.append(ConversationTurn.user(message.body))
    return turns


def _identity(profile: AgentProfile, bot_name: str, project: str) -> str:
    lines = [
        "# Identity",
        f"You are **{bot_name}**, an AI customer support assistant for **{project}**.",
        "Your role: Help users with questions, troubleshoot issues, and provide accurate information.",
        f'Always introduce yourself as "{bot_name}" when greeting users.',
    ]
    if profile.greeting_message.strip():
        lines.extend(
            [
                "",
                "**Greeting:** When starting a new conversation, greet with:",
                f'"{profile.greeting_message.strip()}"',
            ]
        )
    return "\n".join(lines)


def _rules(profile: AgentProfile) -> list[str]:
    rules = [
        "**ABSOLUTE RULE**: You can ONLY answer using information returned by your tools. No exceptions.",
        f'When you have NO information from tools, respond with EXACTLY: "{NO_INFORMATION}" - then STOP. Say nothing else.',
        "FORBIDDEN: Do NOT give tips, advice, troubleshooting steps, or recommendations unless they came from a tool result",
    ]
    if profile.handover_enabled:
        rules.append(
            "If user asks for more help after you said you don't have info → offer handover: "
            '"Would you like me to connect you with a human agent?"'
        )
    if profile.multi_language:
        rules.append("Your response should match user language exactly")

    rules.append(f"Tone: {TONE_DESCRIPTIONS.get(profile.tone, 'professional and helpful')}")

    personality = _personality(profile)
    if personality:
        rules.append(f"Personality: {', '.join(personality)}")

    if profile.use_knowledge_base:
        rules.append("Use searchKnowledgeBase tool for answers - no fabrication")
    rules.append(
        "Web search available" if profile.internet_access else "No internet - use provided context only"
    )
    if profile.unit_conversion:
        rules.append("Convert units: bytes→MB/GB, seconds→mins/hrs, timestamps→readable")
    if profile.handover_enabled:
        rules.append("Human handover available (warn: slower response)")
    if profile.blocked_topics.strip():
        rules.append(f"Refuse to discuss: {profile.blocked_topics.strip()}")

    fields = profile.user_info_fields
    if fields:
        rules.append(
            f"Proactively ask user for: {', '.join(fields)}. Once collected, call setUserInfo tool."
        )
    if profile.max_response_length > 0:
        words = int(profile.max_response_length * 0.75)
        rules.append(
            f"Keep responses under {profile.max_response_length} tokens (~{words} words)"
        )
    if profile.max_tool_calls > 0:
        rules.append(f"Max {profile.max_tool_calls} tool calls per message")
    if profile.context_window > 0:
        rules.append(f"Use last {profile.context_window} messages for context")
    return rules


def _personality(profile: AgentProfile) -> list[str]:
    traits: list[str] = []
    if profile.humor_level > 0:
        if profile.humor_level <= 30:
            traits.append("minimal humor")
        elif profile.humor_level <= 70:
            traits.append("moderate humor")
        else:
            traits.append("playful/witty")
    if profile.formality_level > 0:
        if profile.formality_level <= 30:
            traits.append("casual style")
        elif profile.formality_level <= 70:
            traits.append("balanced formality")
        else:
            traits.append("highly formal")
    if profile.use_emojis:
        traits.append("use emojis")
    return traits


def _tool_lines(profile: AgentProfile, http_tools: list[HttpToolDefinition]) -> list[str]:
    fields = profile.user_info_fields
    has_tools = bool(
        http_tools
        or profile.handover_enabled
        or profile.use_knowledge_base
        or fields
        or profile.priority_detection
        or profile.auto_tagging
    )
    if not has_tools:
        return []

    lines = ["## Tools", "Ask user for missing required params before calling.", ""]
    if profile.use_knowledge_base:
        lines.extend(
            [
                "`searchKnowledgeBase(query:string)` - Search the knowledge base for information.",
                "**CRITICAL: ALWAYS search FIRST before answering any question.**",
                "  - ONLY use information from search results - nothing else",
                f'  - If no results or not relevant → say ONLY "{NO_INFORMATION}" and STOP',
                "",
            ]
        )
    if fields:
        lines.extend(
            [
                "`setUserInfo(data:object)` - Save collected user information.",
                f"  Fields to collect: {', '.join(fields)}",
                "  Ask naturally during conversation, don't demand all at once",
                "",
            ]
        )
    if profile.priority_detection:
        lines.extend(
            [
                "`setPriority(priority:string)` - Set conversation priority based on urgency.",
                '  Options: "low", "medium", "high", "urgent"',
                "",
            ]
        )
    if profile.auto_tagging:
        lines.extend(
            [
                "`setTag(tags:string[])` - Tag the conversation based on topic.",
                "  Use early in conversation when topic becomes clear",
                "",
            ]
        )
    if profile.handover_enabled:
        lines.extend(
            [
                "`handover(reason:string)` - Transfer to human agent when: user requests, "
                "issue unresolvable, needs authorization",
                "",
            ]
        )

    for tool in http_tools:
        lines.append(f"`{tool.name}` [{tool.method} {tool.endpoint}]")
        if tool.description:
            lines.append(f"  Use: {tool.description}")
        for label, params in (
            ("Query", tool.query_params),
            ("Headers", tool.header_params),
            (f"Body({tool.body_type or 'none'})", tool.body_params),
        ):
            if params:
                lines.append(f"  {label}: {_describe_params(params)}")
        if tool.authorization_type != "none":
            lines.append(f"  Auth: {tool.authorization_type}")
        if tool.response_instructions:
            lines.append(f"  Response: {tool.response_instructions}")
        lines.append("")

    return lines


def _describe_params(params: list[ToolParam]) -> str:
    parts: list[str] = []
    for param in params:
        part = f"`{param.key}`"
        if param.required:
            part += " *req*"
        if param.value_type == "constant" and param.value:
            part += f' ="{param.value}"'
        elif param.value_type == "by_model":
            part += " (AI fills)"
        if param.data_type != "string":
            part += f" [{param.data_type}]"
        if param.example:
            part += f' ex:"{param.example}"'
        parts.append(part)
    return " | ".join(parts)
