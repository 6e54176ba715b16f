"""Exception hierarchy shared across the agent and retrieval layers."""

from __future__ import annotations


class HelpdeskAgentError(Exception):
    """Base class for all package errors."""


class ModelCallError(HelpdeskAgentError):
    """A chat-completion call failed; fatal for the current run."""


class EmbeddingError(HelpdeskAgentError):
    """An embedding call failed or returned misaligned vectors."""


class VectorIndexError(HelpdeskAgentError):
    """The vector index rejected a request or could not be reached."""


class IndexingError(HelpdeskAgentError):
    """A document could not be (re)indexed consistently."""


class ToolExecutionError(HelpdeskAgentError):
    """A tool failed; reported back to the model as the tool result."""


class NotFoundError(HelpdeskAgentError, KeyError):
    """A referenced record does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
