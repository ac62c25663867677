"""Chunk-and-embed indexing with a process-wide job gate."""

import asyncio
import hashlib
from dataclasses import dataclass
from typing import Any

from docflow.core.chunking import chunk_text
from docflow.core.config import get_settings
from docflow.core.llm import LLMService
from docflow.core.logging import get_logger
from docflow.db.document_chunks import chunk_exists, insert_chunk

logger = get_logger(__name__)

# Raw text produced by the vision pipeline for images; nothing to index
IMAGE_PAYLOAD_PREFIX = "[VLM_IMAGE_DATA:"


@dataclass(frozen=True)
class EmbeddingScope:
    """The (provider, model) pair a vector was generated under."""

    provider: str
    model: str
    vector_dim: int | None = None

    @property
    def key(self) -> str:
        return f"{self.provider}::{self.model}"


class EmbeddingModelResolver:
    """Resolves which embedding model to use.

    Per-call settings (``embedding_provider`` / ``embedding_model``) win over
    the process-wide default, which is read once from configuration and
    cached until ``invalidate()``.
    """

    def __init__(self) -> None:
        self._default: EmbeddingScope | None = None

    def resolve(self, settings: dict[str, Any] | None = None) -> EmbeddingScope:
        settings = settings or {}
        default = self._get_default()
        provider = (settings.get("embedding_provider") or "").strip() or default.provider
        model = (settings.get("embedding_model") or "").strip() or default.model
        return EmbeddingScope(provider=provider, model=model)

    def invalidate(self) -> None:
        self._default = None

    def _get_default(self) -> EmbeddingScope:
        if self._default is None:
            config = get_settings()
            self._default = EmbeddingScope(
                provider=config.DEFAULT_EMBED_PROVIDER, model=config.DEFAULT_EMBED_MODEL
            )
            logger.debug(f"Default embedding model: {self._default.key}")
        return self._default


class EmbedJobGate:
    """Counting semaphore bounding concurrent chunk-and-embed jobs.

    ``asyncio.Semaphore`` wakes waiters in arrival order. Use as
    ``async with gate:``.
    """

    def __init__(self, capacity: int | None = None):
        if capacity is None:
            capacity = get_settings().RAG_MAX_CONCURRENT_EMBED_JOBS
        if capacity <= 0:
            capacity = 2
        self.capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self.active = 0
        self.waiting = 0

    async def __aenter__(self) -> "EmbedJobGate":
        self.waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.waiting -= 1
        self.active += 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.active = max(0, self.active - 1)
        self._semaphore.release()


def content_hash(content: str) -> str:
    """SHA-256 of the chunk text. Model identity lives in separate columns."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


async def chunk_and_embed(
    ingestion_id: str,
    user_id: str,
    text: str,
    *,
    llm: LLMService,
    resolver: EmbeddingModelResolver,
    gate: EmbedJobGate,
    settings: dict[str, Any] | None = None,
) -> int:
    """
    Chunk a document's text, embed each new chunk and store it.

    Chunks are processed one at a time inside a gate slot. A chunk already
    stored for the same (ingestion, provider, model) is skipped. A failing
    chunk is logged and the rest continue.

    Args:
        ingestion_id: Owning ingestion
        user_id: Owner
        text: Extracted document text
        llm: Embedding provider
        resolver: Embedding model resolver
        gate: Process-wide job gate
        settings: Optional per-user embedding overrides

    Returns:
        Number of chunks inserted
    """
    if text.startswith(IMAGE_PAYLOAD_PREFIX):
        logger.info(
            "Skipping chunk-and-embed for image payload",
            extra={"ingestion_id": ingestion_id},
        )
        return 0

    config = get_settings()
    chunks = chunk_text(text, config.RAG_MAX_CHUNK_LENGTH)
    if not chunks:
        logger.info("No text to chunk", extra={"ingestion_id": ingestion_id})
        return 0

    scope = resolver.resolve(settings)
    logger.info(
        f"Embedding {len(chunks)} chunks with {scope.provider}/{scope.model}",
        extra={"ingestion_id": ingestion_id, "user_id": user_id},
    )

    stored = 0
    async with gate:
        for index, content in enumerate(chunks, start=1):
            try:
                digest = content_hash(content)
                if chunk_exists(ingestion_id, digest, scope.provider, scope.model):
                    continue

                await asyncio.sleep(config.RAG_EMBED_PACING_SECONDS)

                embedding = await llm.embed(content, scope.provider, scope.model)
                insert_chunk(
                    user_id=user_id,
                    ingestion_id=ingestion_id,
                    content=content,
                    content_hash=digest,
                    embedding_provider=scope.provider,
                    embedding_model=scope.model,
                    embedding=embedding,
                )
                stored += 1
            except Exception as e:
                logger.error(
                    f"Failed to process chunk {index}/{len(chunks)}: {e}",
                    extra={"ingestion_id": ingestion_id},
                )

    logger.info(
        f"Stored {stored} new chunks",
        extra={"ingestion_id": ingestion_id, "user_id": user_id},
    )
    return stored


def schedule_chunk_and_embed(
    ingestion_id: str,
    user_id: str,
    text: str,
    *,
    llm: LLMService,
    resolver: EmbeddingModelResolver,
    gate: EmbedJobGate,
    settings: dict[str, Any] | None = None,
    pending: set[asyncio.Task] | None = None,
) -> asyncio.Task:
    """Run chunk_and_embed as a detached task. Failures are only logged."""

    async def _run() -> None:
        try:
            await chunk_and_embed(
                ingestion_id,
                user_id,
                text,
                llm=llm,
                resolver=resolver,
                gate=gate,
                settings=settings,
            )
        except Exception as e:
            logger.error(
                f"Background chunk-and-embed failed: {e}",
                extra={"ingestion_id": ingestion_id},
            )

    task = asyncio.get_running_loop().create_task(_run())
    if pending is not None:
        pending.add(task)
        task.add_done_callback(pending.discard)
    return task
