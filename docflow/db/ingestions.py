"""Database operations for ingestions."""

import hashlib
from typing import Any

from docflow.core.logging import get_logger
from docflow.db.supabase_client import get_supabase

logger = get_logger(__name__)


def compute_file_hash(file_bytes: bytes) -> str:
    """Compute SHA256 hash for duplicate detection.

    Args:
        file_bytes: Raw file content

    Returns:
        Hex-encoded SHA256 hash
    """
    return hashlib.sha256(file_bytes).hexdigest()


def find_by_file_hash(user_id: str, file_hash: str, exclude_id: str | None = None) -> dict[str, Any] | None:
    """Return the oldest non-duplicate ingestion with this hash, if any."""
    supabase = get_supabase()

    query = (
        supabase.table("ingestions")
        .select("id, filename, status, created_at")
        .eq("user_id", user_id)
        .eq("file_hash", file_hash)
        .neq("status", "duplicate")
    )
    if exclude_id:
        query = query.neq("id", exclude_id)
    response = query.order("created_at").limit(1).execute()

    if response.data:
        logger.info(f"Found duplicate ingestion with hash {file_hash[:16]}...")
        return response.data[0]
    return None


def create_ingestion(
    user_id: str,
    filename: str,
    source: str = "upload",
    mime_type: str | None = None,
    file_size: int | None = None,
    file_hash: str | None = None,
    storage_path: str | None = None,
    status: str = "processing",
) -> dict[str, Any]:
    """Create a new ingestion record.

    Returns:
        Created ingestion row

    Raises:
        ValueError: If Supabase returns no row
    """
    supabase = get_supabase()

    record = {
        "user_id": user_id,
        "filename": filename,
        "source": source,
        "mime_type": mime_type,
        "file_size": file_size,
        "file_hash": file_hash,
        "storage_path": storage_path,
        "status": status,
        "extracted": {},
        "actions_taken": [],
        "trace": [],
        "tags": [],
    }

    response = supabase.table("ingestions").insert(record).execute()

    if not response.data:
        raise ValueError("Failed to create ingestion record")

    row = response.data[0]
    logger.info(
        f"Created ingestion {row['id']}: {filename}",
        extra={"ingestion_id": row["id"], "user_id": user_id},
    )
    return row


def get_ingestion(ingestion_id: str, user_id: str) -> dict[str, Any] | None:
    """Get an ingestion row by id, scoped to its owner."""
    supabase = get_supabase()

    response = (
        supabase.table("ingestions")
        .select("*")
        .eq("id", ingestion_id)
        .eq("user_id", user_id)
        .execute()
    )
    return response.data[0] if response.data else None


def update_ingestion(ingestion_id: str, user_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
    """Apply a partial update and return the updated row."""
    supabase = get_supabase()

    response = (
        supabase.table("ingestions")
        .update(updates)
        .eq("id", ingestion_id)
        .eq("user_id", user_id)
        .execute()
    )
    return response.data[0] if response.data else None


def list_ingestions(user_id: str, limit: int = 50, status: str | None = None) -> list[dict[str, Any]]:
    """List ingestions for a user, newest first."""
    supabase = get_supabase()

    query = supabase.table("ingestions").select("*").eq("user_id", user_id)
    if status:
        query = query.eq("status", status)
    response = query.order("created_at", desc=True).limit(limit).execute()
    return response.data or []


def delete_ingestion(ingestion_id: str, user_id: str) -> bool:
    """Delete an ingestion. Returns True when a row was removed."""
    supabase = get_supabase()

    response = (
        supabase.table("ingestions")
        .delete()
        .eq("id", ingestion_id)
        .eq("user_id", user_id)
        .execute()
    )
    return bool(response.data)
