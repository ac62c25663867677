"""Database operations for chat messages."""

from typing import Any

from docflow.core.logging import get_logger
from docflow.db.supabase_client import get_supabase

logger = get_logger(__name__)


def insert_chat_message(
    session_id: str,
    user_id: str,
    role: str,
    content: str,
    context_sources: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """
    Store one chat message.

    Args:
        session_id: Chat session
        user_id: Owner
        role: user, assistant or system
        content: Message text
        context_sources: Retrieved chunks the reply was grounded on

    Returns:
        Inserted row

    Raises:
        ValueError: If Supabase returns no row
    """
    supabase = get_supabase()

    record: dict[str, Any] = {
        "session_id": session_id,
        "user_id": user_id,
        "role": role,
        "content": content,
    }
    if context_sources is not None:
        record["context_sources"] = context_sources

    response = supabase.table("chat_messages").insert(record).execute()

    if not response.data:
        raise ValueError(f"Failed to save {role} message")
    return response.data[0]


def list_recent_messages(session_id: str, limit: int = 20) -> list[dict[str, Any]]:
    """The latest ``limit`` messages of a session, oldest first."""
    supabase = get_supabase()

    response = (
        supabase.table("chat_messages")
        .select("role, content")
        .eq("session_id", session_id)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return list(reversed(response.data or []))
