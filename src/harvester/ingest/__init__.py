"""Harvester ingest stages: semantic chunking, compression and embeddings."""

from harvester.ingest.chunker import ChunkingOptions, ChunkingResult, SemanticChunker, chunk_text
from harvester.ingest.compression import CompressionService, StoredText, content_hash

__all__ = [
    "ChunkingOptions",
    "ChunkingResult",
    "CompressionService",
    "SemanticChunker",
    "StoredText",
    "chunk_text",
    "content_hash",
]
