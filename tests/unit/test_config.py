import pytest
from pydantic import ValidationError

from helpdesk_agent.config import ChunkingConfig, Settings, vector_size_for_model


def test_chunking_overlap_must_stay_below_max() -> None:
    with pytest.raises(ValidationError):
        ChunkingConfig(max_tokens=100, overlap_tokens=100)

    config = ChunkingConfig()
    assert (config.max_tokens, config.overlap_tokens, config.min_chunk_size) == (500, 50, 25)


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("HELPDESK_QDRANT_URL", "http://qdrant:6333")
    monkeypatch.setenv("HELPDESK_EMBEDDING_MODEL", "text-embedding-3-large")
    monkeypatch.setenv("HELPDESK_INDEX_WORKERS", "4")

    settings = Settings()

    assert settings.qdrant_url == "http://qdrant:6333"
    assert settings.index_workers == 4
    assert settings.resolved_vector_size == 3072
    assert Settings(vector_size=64).resolved_vector_size == 64


def test_unknown_embedding_models_default_to_1536() -> None:
    assert vector_size_for_model("text-embedding-3-small") == 1536
    assert vector_size_for_model("custom-model") == 1536
