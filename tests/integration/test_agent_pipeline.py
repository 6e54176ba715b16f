import json

from helpdesk_agent.agent.llm import ChatResponse
from helpdesk_agent.agent.orchestrator import Orchestrator, RunState
from helpdesk_agent.agent.processor import AgentProcessor
from helpdesk_agent.agent.tools import ToolDependencies
from helpdesk_agent.ingest.embedder import HashingEmbedder
from helpdesk_agent.obs.tracing import TraceStore
from helpdesk_agent.retrieval.retriever import KnowledgeRetriever
from helpdesk_agent.retrieval.vector_store import InMemoryVectorIndex
from helpdesk_agent.store.records import STATUS_WAIT_FOR_AGENT, Message
from helpdesk_agent.types import IndexedVector, ToolInvocation


def _processor(store, model, retriever=None, trace_store=None) -> AgentProcessor:
    dependencies = ToolDependencies(store=store, retriever=retriever)
    return AgentProcessor(Orchestrator(model, trace_store=trace_store), dependencies)


def _client_message(store, body: str) -> Message:
    return store.add_message(Message(conversation_id=42, body=body, client_id=7))


def test_handover_request_stops_after_one_model_call(store, support_context, scripted_model) -> None:
    model = scripted_model(
        [
            ChatResponse(
                tool_calls=[
                    ToolInvocation(
                        "call-1", "handover", json.dumps({"reason": "customer asked for a human"})
                    )
                ]
            )
        ]
    )
    trace_store = TraceStore()
    processor = _processor(store, model, trace_store=trace_store)

    result = processor.process_incoming_message(
        _client_message(store, "I want to talk to a human")
    )

    assert result.state is RunState.STOPPED
    assert result.model_calls == 1
    assert [user.id for user in store.assigned_users(42)] == ["agent-1", "agent-2"]
    assert store.get_conversation(42).status == STATUS_WAIT_FOR_AGENT

    bodies = [message.body for message in store.recent_messages(42, 10)]
    assert bodies[0] == "I want to talk to a human"
    assert bodies[1].startswith("Conversation handed over to human agent(s).")
    assert bodies[2].startswith("I've transferred this conversation")
    assert len(bodies) == 3

    record = trace_store.get(result.trace_id)
    assert record.state == "stopped"
    assert [trace.name for trace in record.tool_traces] == ["handover"]

    # A human is now assigned, so the bot stays quiet.
    assert processor.process_incoming_message(_client_message(store, "Hello?")) is None


def test_knowledge_answer_is_saved_as_bot_message(store, support_context, scripted_model) -> None:
    embedder = HashingEmbedder()
    index = InMemoryVectorIndex()
    content = "Refunds are issued within 14 days of purchase."
    index.upsert(
        [
            IndexedVector(
                id="p1",
                vector=embedder.embed_query(content),
                payload={
                    "document_id": "doc-1",
                    "document_title": "Refund policy",
                    "chunk_index": 0,
                    "chunk_content": content,
                },
            )
        ]
    )
    model = scripted_model(
        [
            ChatResponse(
                tool_calls=[
                    ToolInvocation("call-1", "searchKnowledgeBase", json.dumps({"query": content}))
                ]
            ),
            ChatResponse(content="Refunds take up to 14 days."),
        ]
    )
    processor = _processor(store, model, retriever=KnowledgeRetriever(index, embedder))

    result = processor.process_incoming_message(_client_message(store, "How long do refunds take?"))

    assert result.state is RunState.COMPLETED
    assert result.reply == "Refunds take up to 14 days."

    first_call = model.calls[0]["turns"]
    assert first_call[0].role == "system"
    assert first_call[0].content.startswith("# Identity")
    assert (first_call[-1].role, first_call[-1].content) == ("user", "How long do refunds take?")

    tool_turn = model.calls[1]["turns"][-1]
    assert tool_turn.role == "tool"
    assert "--- Source 1: Refund policy ---" in tool_turn.content

    latest = store.recent_messages(42, 1)[0]
    assert latest.user_id == "bot-1"
    assert latest.body == "Refunds take up to 14 days."


def test_bot_ignores_non_client_messages_and_disabled_conversations(
    store, support_context, scripted_model
) -> None:
    model = scripted_model([])
    processor = _processor(store, model)

    agent_message = store.add_message(
        Message(conversation_id=42, body="I'll take it from here", user_id="agent-1")
    )
    system_message = store.add_message(
        Message(conversation_id=42, body="Assigned", is_system_message=True)
    )
    assert processor.process_incoming_message(agent_message) is None
    assert processor.process_incoming_message(system_message) is None

    conversation = store.get_conversation(42)
    store.save_conversation(conversation.model_copy(update={"handle_by_bot": False}))
    assert processor.process_incoming_message(_client_message(store, "Hi")) is None

    store.save_conversation(conversation)
    store.save_agent(support_context.profile.model_copy(update={"status": "inactive"}))
    assert processor.process_incoming_message(_client_message(store, "Hi again")) is None

    assert model.calls == []


def test_exhausted_run_saves_no_reply(store, support_context, scripted_model) -> None:
    responses = [
        ChatResponse(
            tool_calls=[ToolInvocation(f"call-{i}", "setTag", json.dumps({"tags": ["loop"]}))]
        )
        for i in range(3)
    ]
    model = scripted_model(responses)
    processor = _processor(store, model)

    result = processor.process_incoming_message(_client_message(store, "Tag me"))

    assert result.state is RunState.EXHAUSTED
    assert result.model_calls == 3
    assert [message.user_id for message in store.recent_messages(42, 10)] == [None]
    assert store.conversation_tags(42) == ["loop"]
