"""Database operations for versioned baseline extraction configs."""

from typing import Any

from docflow.core.logging import get_logger
from docflow.db.supabase_client import get_supabase

logger = get_logger(__name__)


def get_active_config(user_id: str) -> dict[str, Any] | None:
    """Return the user's active baseline config row, if any."""
    supabase = get_supabase()

    response = (
        supabase.table("baseline_configs")
        .select("*")
        .eq("user_id", user_id)
        .eq("is_active", True)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None


def list_configs(user_id: str) -> list[dict[str, Any]]:
    """All versions for a user, newest version first."""
    supabase = get_supabase()

    response = (
        supabase.table("baseline_configs")
        .select("*")
        .eq("user_id", user_id)
        .order("version", desc=True)
        .execute()
    )
    return response.data or []


def get_latest_version(user_id: str) -> int:
    """Highest stored version number, 0 when none exist."""
    supabase = get_supabase()

    response = (
        supabase.table("baseline_configs")
        .select("version")
        .eq("user_id", user_id)
        .order("version", desc=True)
        .limit(1)
        .execute()
    )
    if not response.data:
        return 0
    return int(response.data[0].get("version") or 0)


def deactivate_all(user_id: str) -> None:
    supabase = get_supabase()

    (
        supabase.table("baseline_configs")
        .update({"is_active": False})
        .eq("user_id", user_id)
        .eq("is_active", True)
        .execute()
    )


def insert_config(
    user_id: str,
    version: int,
    context: str | None,
    fields: list[dict[str, Any]],
    is_active: bool,
) -> dict[str, Any]:
    """
    Insert a new immutable config version.

    Raises:
        ValueError: If Supabase returns no row
    """
    supabase = get_supabase()

    response = (
        supabase.table("baseline_configs")
        .insert(
            {
                "user_id": user_id,
                "version": version,
                "context": context,
                "fields": fields,
                "is_active": is_active,
            }
        )
        .execute()
    )

    if not response.data:
        raise ValueError("Failed to insert baseline config")

    logger.info(f"Saved baseline config v{version}", extra={"user_id": user_id})
    return response.data[0]


def set_active(user_id: str, config_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()

    response = (
        supabase.table("baseline_configs")
        .update({"is_active": True})
        .eq("id", config_id)
        .eq("user_id", user_id)
        .execute()
    )
    return response.data[0] if response.data else None
