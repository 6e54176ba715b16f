"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]

PUBLISHED = "published"


@dataclass(slots=True, frozen=True)
class ToolInvocation:
    """A tool call emitted by the model; ``id`` pairs it with one result."""

    id: str
    name: str
    arguments_json: str = "{}"


@dataclass(slots=True)
class ConversationTurn:
    """One message of the model input."""

    role: Role
    content: str = ""
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> "ConversationTurn":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ConversationTurn":
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls, content: str, tool_calls: list[ToolInvocation] | None = None
    ) -> "ConversationTurn":
        return cls(role="assistant", content=content, tool_calls=list(tool_calls or []))


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Function definition advertised to the model."""

    name: str
    description: str
    parameters: dict[str, Any]

    def as_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(slots=True, frozen=True)
class ToolResult:
    tool_call_id: str
    content: str

    def as_turn(self) -> ConversationTurn:
        return ConversationTurn(role="tool", content=self.content, tool_call_id=self.tool_call_id)


@dataclass(slots=True, frozen=True)
class Chunk:
    """A bounded segment of a knowledge-base document."""

    content: str
    index: int
    token_count: int


@dataclass(slots=True)
class IndexedVector:
    """A vector-index point built from one chunk."""

    id: str
    vector: list[float]
    payload: dict[str, Any]


@dataclass(slots=True)
class SearchResult:
    """A nearest-neighbour hit; higher score means more relevant."""

    id: str
    score: float
    payload: dict[str, Any]

    @property
    def document_id(self) -> str:
        return str(self.payload.get("document_id", ""))

    @property
    def document_title(self) -> str:
        return str(self.payload.get("document_title", ""))

    @property
    def chunk_content(self) -> str:
        return str(self.payload.get("chunk_content", ""))

    @property
    def chunk_index(self) -> int:
        value = self.payload.get("chunk_index", 0)
        return int(value) if isinstance(value, (int, float)) else 0


@dataclass(slots=True)
class KnowledgeDocument:
    """A knowledge-base article as exposed to the indexer."""

    id: str
    title: str
    excerpt: str = ""
    body: str = ""
    status: str = "draft"

    @property
    def is_published(self) -> bool:
        return self.status == PUBLISHED


@dataclass(slots=True, frozen=True)
class KnowledgeSource:
    document_id: str
    title: str
    score: float


@dataclass(slots=True)
class RetrievedContext:
    """Context string for the model plus the structured sources behind it."""

    text: str
    sources: list[KnowledgeSource]
    results: list[SearchResult]

    @property
    def is_empty(self) -> bool:
        return not self.results


@dataclass(slots=True)
class CollectionInfo:
    name: str
    exists: bool
    points_count: int = 0
    vector_size: int | None = None
    distance: str | None = None
    status: str | None = None


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    error: bool = False
    stop: bool = False
