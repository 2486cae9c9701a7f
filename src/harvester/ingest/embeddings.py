"""Embedding generation for stored chunks via LiteLLM.

Idempotent by chunk id: chunks that already have an embedding row are
counted as processed and never sent to the provider again. One failing
chunk never aborts the batch.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Callable

import litellm

from harvester.config import EmbeddingCfg
from harvester.db.models import Embedding
from harvester.db.repository import Repository
from harvester.db.vectors import ensure_vec_table, model_to_slug
from harvester.errors import CompressionError, ProviderFailure
from harvester.ingest.compression import CompressionService

logger = logging.getLogger("Harvester.Embeddings")

_PROVIDER_KEYS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "voyage": "VOYAGE_API_KEY",
}


@dataclass
class EmbeddingResult:
    """Counters for one ``generate_for_chunks`` call.

    ``processed_count`` includes chunks that were already embedded.
    """

    processed_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    total_chunks: int = 0
    errors: list[str] = field(default_factory=list)


class EmbeddingGenerator:
    """Embed chunks and store one vector per chunk.

    Args:
        conn: Open database connection.
        config: Model, minimum content length and request delay.
        compression: Used to read compressed chunk content.
        sleep: Sleep function between provider calls (injectable for tests).
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: EmbeddingCfg | None = None,
        *,
        compression: CompressionService | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._conn = conn
        self._repo = Repository(conn)
        self._config = config or EmbeddingCfg()
        self._compression = compression or CompressionService()
        self._sleep = sleep

    def generate_for_chunks(self, source_id: str, chunk_ids: list[int]) -> EmbeddingResult:
        """Embed the chunks of *source_id* listed in *chunk_ids*.

        Args:
            source_id: Owner of the chunks; ids belonging to other sources are skipped.
            chunk_ids: Chunk ids to embed.

        Returns:
            EmbeddingResult with processed/error/skipped counts.

        Raises:
            ProviderFailure: If the provider's API key is not configured.
        """
        ids = list(dict.fromkeys(chunk_ids))
        result = EmbeddingResult(total_chunks=len(ids))
        chunks = [c for c in self._repo.get_chunks(ids) if c.source_id == source_id]
        result.skipped_count += len(ids) - len(chunks)

        existing = self._repo.embedded_chunk_ids([c.id for c in chunks])
        result.processed_count += len(existing)

        pending: list[Embedding] = []
        calls = 0
        for chunk in chunks:
            if chunk.id in existing:
                continue
            try:
                text = self._compression.unpack(chunk.content, chunk.content_compressed, chunk.compression)
            except CompressionError as exc:
                result.error_count += 1
                result.errors.append(f"chunk {chunk.id}: {exc}")
                logger.warning("Cannot read chunk %s: %s", chunk.id, exc)
                continue
            if len(text.strip()) < self._config.min_content_length:
                result.skipped_count += 1
                continue

            if calls == 0:
                self._check_api_key()
            elif self._config.request_delay > 0:
                self._sleep(self._config.request_delay)
            calls += 1

            try:
                vector = self._embed(text)
            except Exception as exc:
                result.error_count += 1
                result.errors.append(f"chunk {chunk.id}: {exc}")
                logger.exception("Embedding failed for chunk %s", chunk.id)
                continue
            pending.append(Embedding(chunk_id=chunk.id, model_name=self._config.model, vector=vector))

        stored = self._store(pending, result)
        result.processed_count += len(stored)
        self._mirror(stored)

        logger.info(
            "Embedded %d/%d chunk(s) for source %s (%d error(s), %d skipped)",
            result.processed_count,
            result.total_chunks,
            source_id,
            result.error_count,
            result.skipped_count,
            extra={
                "source_id": source_id,
                "processed": result.processed_count,
                "errors": result.error_count,
                "skipped": result.skipped_count,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Provider
    # ------------------------------------------------------------------

    def _embed(self, text: str) -> list[float]:
        """Call litellm.embedding() and return the embedding vector."""
        response = litellm.embedding(
            model=self._config.model,
            input=[text],
            num_retries=self._config.num_retries,
        )
        return response.data[0]["embedding"]

    def _check_api_key(self) -> None:
        """Raise ProviderFailure if no API key is available for the embedding model."""
        provider = missing_provider_key(self._config.model)
        if provider is not None:
            raise ProviderFailure(
                f"No API key found for provider '{provider}'. "
                f"Set the {_PROVIDER_KEYS[provider]} environment variable."
            )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _store(self, embeddings: list[Embedding], result: EmbeddingResult) -> list[Embedding]:
        if not embeddings:
            return []
        try:
            self._repo.upsert_embeddings(embeddings)
            return embeddings
        except sqlite3.Error as exc:
            logger.warning("Bulk embedding insert failed (%s); retrying row by row", exc)

        stored: list[Embedding] = []
        for embedding in embeddings:
            try:
                self._repo.upsert_embedding(embedding)
            except sqlite3.Error as exc:
                self._conn.rollback()
                result.error_count += 1
                result.errors.append(f"chunk {embedding.chunk_id}: {exc}")
                logger.error("Could not store embedding for chunk %s: %s", embedding.chunk_id, exc)
                continue
            stored.append(embedding)
        return stored

    def _mirror(self, embeddings: list[Embedding]) -> None:
        """Copy vectors into the model's sqlite-vec table for similarity search."""
        if not embeddings:
            return
        slug = model_to_slug(self._config.model)
        try:
            table = ensure_vec_table(self._conn, slug, embeddings[0].dimensions)
            for embedding in embeddings:
                self._repo.add_vec_embedding(table, embedding.chunk_id, embedding.vector)
        except sqlite3.Error as exc:
            self._conn.rollback()
            logger.warning("Vector index update failed for %s: %s", slug, exc)


def generate_embeddings(
    conn: sqlite3.Connection,
    source_id: str,
    chunk_ids: list[int],
    config: EmbeddingCfg | None = None,
) -> EmbeddingResult:
    """Embed *chunk_ids* of *source_id* with a default-configured generator."""
    return EmbeddingGenerator(conn, config).generate_for_chunks(source_id, chunk_ids)


def missing_provider_key(model: str) -> str | None:
    """Return the provider of *model* when its API key env var is unset, else None."""
    provider = model.split("/")[0].lower() if "/" in model else ""
    required_env = _PROVIDER_KEYS.get(provider)
    if required_env and not os.environ.get(required_env):
        return provider
    return None
