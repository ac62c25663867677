"""Database operations for user policies."""

from typing import Any

from docflow.core.logging import get_logger
from docflow.db.supabase_client import get_supabase

logger = get_logger(__name__)


def list_policy_rows(user_id: str, enabled_only: bool = False) -> list[dict[str, Any]]:
    """List a user's policy rows ordered by ascending priority."""
    supabase = get_supabase()

    query = supabase.table("policies").select("*").eq("user_id", user_id)
    if enabled_only:
        query = query.eq("enabled", True)
    response = query.order("priority").execute()
    return response.data or []


def get_policy_row(user_id: str, policy_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()

    response = (
        supabase.table("policies")
        .select("*")
        .eq("user_id", user_id)
        .eq("policy_id", policy_id)
        .execute()
    )
    return response.data[0] if response.data else None


def upsert_policy_row(
    user_id: str,
    policy_id: str,
    api_version: str,
    kind: str,
    metadata: dict[str, Any],
    spec: dict[str, Any],
    enabled: bool,
    priority: int,
) -> dict[str, Any]:
    """
    Insert or replace a policy, keyed by (user_id, policy_id).

    Returns:
        Stored row

    Raises:
        ValueError: If Supabase returns no row
    """
    supabase = get_supabase()

    response = (
        supabase.table("policies")
        .upsert(
            {
                "user_id": user_id,
                "policy_id": policy_id,
                "api_version": api_version,
                "kind": kind,
                "metadata": metadata,
                "spec": spec,
                "enabled": enabled,
                "priority": priority,
            },
            on_conflict="user_id,policy_id",
        )
        .execute()
    )

    if not response.data:
        raise ValueError(f"Failed to save policy {policy_id}")

    logger.info(f"Saved policy {policy_id}", extra={"user_id": user_id})
    return response.data[0]


def update_policy_row(user_id: str, policy_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
    supabase = get_supabase()

    response = (
        supabase.table("policies")
        .update(updates)
        .eq("user_id", user_id)
        .eq("policy_id", policy_id)
        .execute()
    )
    return response.data[0] if response.data else None


def delete_policy_row(user_id: str, policy_id: str) -> bool:
    supabase = get_supabase()

    response = (
        supabase.table("policies")
        .delete()
        .eq("user_id", user_id)
        .eq("policy_id", policy_id)
        .execute()
    )
    deleted = bool(response.data)
    if deleted:
        logger.info(f"Deleted policy {policy_id}", extra={"user_id": user_id})
    return deleted
