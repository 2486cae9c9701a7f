"""Tests for embedding generation (LiteLLM mocked)."""

from __future__ import annotations

import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from harvester.config import EmbeddingCfg
from harvester.db.models import Chunk, Source
from harvester.db.repository import Repository
from harvester.db.vectors import model_to_slug, vec_table_name
from harvester.errors import ProviderFailure
from harvester.ingest.compression import CompressionService
from harvester.ingest.embeddings import (
    EmbeddingGenerator,
    generate_embeddings,
    missing_provider_key,
)

MODEL = "openai/text-embedding-3-small"


def _response(vector=(0.1, 0.2, 0.3)):
    response = MagicMock()
    response.data = [{"embedding": list(vector)}]
    return response


@pytest.fixture(autouse=True)
def api_key(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")


@pytest.fixture
def chunk_ids(repo, make_source):
    make_source(pages=0)
    packed = CompressionService().pack("Compressed chunk about the crawler and the queue.")
    return repo.add_chunks([
        Chunk(source_id="src-1", chunk_index=0, content_hash="a",
              content="First chunk with enough text to embed."),
        Chunk(source_id="src-1", chunk_index=1, content_hash="b",
              content=None, content_compressed=packed.blob, compression=packed.tag),
    ])


def _generator(tmp_db, sleeps=None, **cfg):
    config = EmbeddingCfg(model=MODEL, request_delay=0.5, **cfg)
    return EmbeddingGenerator(
        tmp_db, config, sleep=(sleeps.append if sleeps is not None else lambda _: None)
    )


def test_embeds_and_stores_vectors(tmp_db, repo, chunk_ids):
    sleeps: list[float] = []
    with patch("harvester.ingest.embeddings.litellm.embedding", return_value=_response()) as mock_embed:
        result = _generator(tmp_db, sleeps).generate_for_chunks("src-1", chunk_ids)

    assert (result.processed_count, result.error_count, result.skipped_count) == (2, 0, 0)
    assert mock_embed.call_count == 2
    sent = [call.kwargs["input"][0] for call in mock_embed.call_args_list]
    assert sent[1] == "Compressed chunk about the crawler and the queue."
    assert sleeps == [0.5]
    assert repo.get_embedding(chunk_ids[0]).vector == pytest.approx([0.1, 0.2, 0.3])
    assert repo.get_embedding(chunk_ids[0]).model_name == MODEL

    table = vec_table_name(model_to_slug(MODEL))
    assert tmp_db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0] == 2


def test_second_run_is_idempotent(tmp_db, chunk_ids):
    with patch("harvester.ingest.embeddings.litellm.embedding", return_value=_response()) as mock_embed:
        _generator(tmp_db).generate_for_chunks("src-1", chunk_ids)
        again = _generator(tmp_db).generate_for_chunks("src-1", chunk_ids)
    assert again.processed_count == 2
    assert mock_embed.call_count == 2


def test_one_failure_does_not_abort_batch(tmp_db, repo, chunk_ids):
    with patch(
        "harvester.ingest.embeddings.litellm.embedding",
        side_effect=[RuntimeError("rate limited"), _response()],
    ):
        result = _generator(tmp_db).generate_for_chunks("src-1", chunk_ids)
    assert result.processed_count == 1
    assert result.error_count == 1
    assert "rate limited" in result.errors[0]
    assert repo.get_embedding(chunk_ids[0]) is None
    assert repo.get_embedding(chunk_ids[1]) is not None


def test_short_and_foreign_chunks_are_skipped(tmp_db, repo, chunk_ids):
    repo.add_source(Source(id="src-2", url="https://other.example"))
    [short, foreign] = repo.add_chunks([
        Chunk(source_id="src-1", chunk_index=2, content_hash="c", content="tiny"),
        Chunk(source_id="src-2", chunk_index=0, content_hash="d", content="Belongs to another source."),
    ])
    with patch("harvester.ingest.embeddings.litellm.embedding", return_value=_response()) as mock_embed:
        result = _generator(tmp_db).generate_for_chunks("src-1", [*chunk_ids, short, foreign, 999])
    assert result.total_chunks == 5
    assert result.processed_count == 2
    assert result.skipped_count == 3
    assert mock_embed.call_count == 2


def test_missing_api_key_raises_before_any_call(tmp_db, chunk_ids, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY")
    with patch("harvester.ingest.embeddings.litellm.embedding") as mock_embed:
        with pytest.raises(ProviderFailure, match="OPENAI_API_KEY"):
            _generator(tmp_db).generate_for_chunks("src-1", chunk_ids)
    mock_embed.assert_not_called()


def test_generate_embeddings_helper(tmp_db, chunk_ids):
    with patch("harvester.ingest.embeddings.litellm.embedding", return_value=_response()):
        result = generate_embeddings(tmp_db, "src-1", chunk_ids, EmbeddingCfg(model=MODEL, request_delay=0))
    assert result.processed_count == 2


def test_missing_provider_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY")
    monkeypatch.delenv("COHERE_API_KEY", raising=False)
    assert missing_provider_key("openai/text-embedding-3-small") == "openai"
    assert missing_provider_key("cohere/embed-english-v3.0") == "cohere"
    assert missing_provider_key("ollama/nomic-embed-text") is None
    assert missing_provider_key("text-embedding-ada-002") is None
    monkeypatch.setenv("OPENAI_API_KEY", "sk-x")
    assert missing_provider_key("openai/text-embedding-3-small") is None


def test_failed_bulk_insert_falls_back_to_single_rows(tmp_db, repo, chunk_ids):
    single = MagicMock(wraps=repo.upsert_embedding)
    with patch("harvester.ingest.embeddings.litellm.embedding", return_value=_response()), patch.object(
        Repository, "upsert_embeddings", side_effect=sqlite3.OperationalError("database is locked")
    ), patch.object(Repository, "upsert_embedding", single):
        result = _generator(tmp_db).generate_for_chunks("src-1", chunk_ids)

    assert result.processed_count == 2
    assert result.error_count == 0
    assert [c.args[0].chunk_id for c in single.call_args_list] == chunk_ids
    assert all(repo.get_embedding(i) is not None for i in chunk_ids)


def test_single_row_failure_is_counted(tmp_db, repo, chunk_ids):
    store_one = repo.upsert_embedding

    def flaky(embedding):
        if embedding.chunk_id == chunk_ids[0]:
            raise sqlite3.IntegrityError("constraint failed")
        store_one(embedding)

    with patch("harvester.ingest.embeddings.litellm.embedding", return_value=_response()), patch.object(
        Repository, "upsert_embeddings", side_effect=sqlite3.OperationalError("database is locked")
    ), patch.object(Repository, "upsert_embedding", side_effect=flaky):
        result = _generator(tmp_db).generate_for_chunks("src-1", chunk_ids)

    assert result.processed_count == 1
    assert result.error_count == 1
    assert f"chunk {chunk_ids[0]}" in result.errors[0]
    assert repo.get_embedding(chunk_ids[0]) is None
    assert repo.get_embedding(chunk_ids[1]) is not None
