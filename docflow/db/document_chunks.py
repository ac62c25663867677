"""Database operations for semantic document chunks.

Chunks are unique per (ingestion_id, content_hash, embedding_provider,
embedding_model): the same text embedded under another model is a separate
row.
"""

from typing import Any

from docflow.core.logging import get_logger
from docflow.db.supabase_client import get_supabase

logger = get_logger(__name__)

# How many recent rows to scan when enumerating a user's embedding scopes
SCOPE_SCAN_LIMIT = 2000


def chunk_exists(
    ingestion_id: str,
    content_hash: str,
    embedding_provider: str,
    embedding_model: str,
) -> bool:
    """Check whether this content is already stored under the same model scope."""
    supabase = get_supabase()

    response = (
        supabase.table("document_chunks")
        .select("id")
        .eq("ingestion_id", ingestion_id)
        .eq("content_hash", content_hash)
        .eq("embedding_provider", embedding_provider)
        .eq("embedding_model", embedding_model)
        .limit(1)
        .execute()
    )
    return bool(response.data)


def insert_chunk(
    user_id: str,
    ingestion_id: str,
    content: str,
    content_hash: str,
    embedding_provider: str,
    embedding_model: str,
    embedding: list[float],
) -> dict[str, Any]:
    """Insert one embedded chunk.

    Raises:
        ValueError: If Supabase returns no row
    """
    supabase = get_supabase()

    response = (
        supabase.table("document_chunks")
        .insert(
            {
                "user_id": user_id,
                "ingestion_id": ingestion_id,
                "content": content,
                "content_hash": content_hash,
                "embedding_provider": embedding_provider,
                "embedding_model": embedding_model,
                "embedding": embedding,
                "vector_dim": len(embedding),
            }
        )
        .execute()
    )

    if not response.data:
        raise ValueError("Failed to insert document chunk")
    return response.data[0]


def list_user_scope_rows(user_id: str, limit: int = SCOPE_SCAN_LIMIT) -> list[dict[str, Any]]:
    """Recent (provider, model, vector_dim) rows for a user, newest first."""
    supabase = get_supabase()

    response = (
        supabase.table("document_chunks")
        .select("embedding_provider, embedding_model, vector_dim, created_at")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return response.data or []


def search_documents_rpc(
    user_id: str,
    embedding_provider: str,
    embedding_model: str,
    query_embedding: list[float],
    match_threshold: float,
    match_count: int,
) -> list[dict[str, Any]]:
    """Run the similarity-search stored procedure for one model scope."""
    supabase = get_supabase()

    response = supabase.rpc(
        "search_documents",
        {
            "p_user_id": user_id,
            "p_embedding_provider": embedding_provider,
            "p_embedding_model": embedding_model,
            "query_embedding": query_embedding,
            "match_threshold": match_threshold,
            "match_count": match_count,
            "query_dim": len(query_embedding),
        },
    ).execute()
    return response.data or []


def delete_chunks_for_ingestion(ingestion_id: str, user_id: str) -> int:
    """Remove every chunk of one ingestion. Returns rows removed."""
    supabase = get_supabase()

    response = (
        supabase.table("document_chunks")
        .delete()
        .eq("ingestion_id", ingestion_id)
        .eq("user_id", user_id)
        .execute()
    )
    return len(response.data or [])
