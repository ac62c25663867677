"""Semantic search over stored chunks, across embedding-model scopes.

Search tries the preferred scope first, at the requested threshold and then
at a relaxed one. When nothing comes back it walks every scope the user has
historically indexed under, most recent first, until enough hits are
collected.
"""

from typing import Any

from pydantic import BaseModel

from docflow.core.config import get_settings
from docflow.core.embeddings import EmbeddingModelResolver, EmbeddingScope
from docflow.core.llm import LLMService
from docflow.core.logging import get_logger
from docflow.db.document_chunks import list_user_scope_rows, search_documents_rpc

logger = get_logger(__name__)

MIN_RELAXED_THRESHOLD = 0.1
MAX_RELAXED_THRESHOLD = 0.4


class RetrievedChunk(BaseModel):
    id: str
    ingestion_id: str
    content: str
    similarity: float


def threshold_levels(threshold: float) -> list[float]:
    """The requested threshold followed by the relaxed one (deduplicated)."""
    relaxed = max(MIN_RELAXED_THRESHOLD, min(threshold, MAX_RELAXED_THRESHOLD))
    return [threshold] if relaxed == threshold else [threshold, relaxed]


def list_user_scopes(user_id: str) -> list[EmbeddingScope]:
    """Distinct scopes the user has chunks under, most recently used first."""
    try:
        rows = list_user_scope_rows(user_id)
    except Exception as e:
        logger.warning(f"Failed to list embedding scopes: {e}", extra={"user_id": user_id})
        return []

    scopes: dict[str, EmbeddingScope] = {}
    for row in rows:
        provider = str(row.get("embedding_provider") or "").strip()
        model = str(row.get("embedding_model") or "").strip()
        if not provider or not model:
            continue
        try:
            dim = int(row.get("vector_dim") or 0)
        except (TypeError, ValueError):
            dim = 0
        scope = EmbeddingScope(provider=provider, model=model, vector_dim=dim if dim > 0 else None)
        scopes.setdefault(scope.key, scope)
    return list(scopes.values())


class _ScopedSearch:
    """State for one search call: query-embedding cache and collected hits."""

    def __init__(self, query: str, user_id: str, llm: LLMService, top_k: int):
        self.query = query
        self.user_id = user_id
        self.llm = llm
        self.top_k = top_k
        self.collected: dict[str, RetrievedChunk] = {}
        self._embeddings: dict[str, list[float]] = {}

    async def run(self, scope: EmbeddingScope, threshold: float) -> int:
        """Search one scope at one threshold. Returns the raw hit count."""
        query_embedding = self._embeddings.get(scope.key)
        if query_embedding is None:
            query_embedding = await self.llm.embed(self.query, scope.provider, scope.model)
            self._embeddings[scope.key] = query_embedding

        query_dim = len(query_embedding)
        if scope.vector_dim and scope.vector_dim != query_dim:
            logger.warning(
                f"Skipping scope {scope.key}: vector_dim {scope.vector_dim} != query dim {query_dim}"
            )
            return 0

        logger.info(
            f"Searching {scope.provider}/{scope.model} (dim={query_dim}, top_k={self.top_k}, threshold={threshold})"
        )
        rows = search_documents_rpc(
            user_id=self.user_id,
            embedding_provider=scope.provider,
            embedding_model=scope.model,
            query_embedding=query_embedding,
            match_threshold=threshold,
            match_count=self.top_k,
        )

        for row in rows:
            hit = RetrievedChunk.model_validate(
                {
                    "id": str(row["id"]),
                    "ingestion_id": str(row["ingestion_id"]),
                    "content": row.get("content") or "",
                    "similarity": float(row.get("similarity") or 0.0),
                }
            )
            existing = self.collected.get(hit.id)
            if existing is None or hit.similarity > existing.similarity:
                self.collected[hit.id] = hit
        return len(rows)

    def results(self) -> list[RetrievedChunk]:
        ranked = sorted(self.collected.values(), key=lambda c: c.similarity, reverse=True)
        return ranked[: self.top_k]


async def search_documents(
    query: str,
    user_id: str,
    *,
    llm: LLMService,
    resolver: EmbeddingModelResolver,
    top_k: int | None = None,
    threshold: float | None = None,
    settings: dict[str, Any] | None = None,
) -> list[RetrievedChunk]:
    """
    Find the chunks most similar to a query.

    Args:
        query: Free-text query
        user_id: Owner whose chunks are searched
        llm: Embedding provider
        resolver: Resolves the preferred embedding scope
        top_k: Max results (default RAG_DEFAULT_TOP_K)
        threshold: Similarity threshold (default RAG_DEFAULT_THRESHOLD)
        settings: Optional per-user embedding overrides

    Returns:
        Up to top_k chunks sorted by similarity descending
    """
    config = get_settings()
    top_k = top_k if top_k is not None else config.RAG_DEFAULT_TOP_K
    threshold = threshold if threshold is not None else config.RAG_DEFAULT_THRESHOLD
    levels = threshold_levels(threshold)

    preferred = resolver.resolve(settings)
    search = _ScopedSearch(query, user_id, llm, top_k)

    try:
        for level in levels:
            if await search.run(preferred, level) > 0:
                break
    except Exception as e:
        logger.error(
            f"Search failed for preferred scope {preferred.key}: {e}", extra={"user_id": user_id}
        )

    if not search.collected:
        fallback = [
            s
            for s in list_user_scopes(user_id)
            if not (s.provider == preferred.provider and s.model == preferred.model)
        ]
        for scope in fallback:
            try:
                for level in levels:
                    await search.run(scope, level)
                    if len(search.collected) >= top_k:
                        break
            except Exception as e:
                logger.warning(f"Search failed for fallback scope {scope.key}: {e}")
            if len(search.collected) >= top_k:
                break

    return search.results()
