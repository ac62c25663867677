"""Database operations for per-user settings."""

from typing import Any

from docflow.core.logging import get_logger
from docflow.db.supabase_client import get_supabase

logger = get_logger(__name__)


def get_user_settings(user_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()

    response = (
        supabase.table("user_settings")
        .select("*")
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None


def get_vision_capabilities(user_id: str) -> dict[str, Any]:
    """Return the stored capability map (empty when unset)."""
    supabase = get_supabase()

    response = (
        supabase.table("user_settings")
        .select("vision_model_capabilities")
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    if not response.data:
        return {}
    raw = response.data[0].get("vision_model_capabilities")
    return dict(raw) if isinstance(raw, dict) else {}


def upsert_vision_capabilities(user_id: str, capabilities: dict[str, Any]) -> None:
    """
    Persist the full capability map for a user.

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    (
        supabase.table("user_settings")
        .upsert(
            {"user_id": user_id, "vision_model_capabilities": capabilities},
            on_conflict="user_id",
        )
        .execute()
    )
