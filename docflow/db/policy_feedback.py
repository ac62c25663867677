"""Database operations for policy-match feedback samples."""

from typing import Any

from docflow.core.logging import get_logger
from docflow.db.supabase_client import get_supabase

logger = get_logger(__name__)

FEEDBACK_SAMPLE_LIMIT = 400
STATS_SAMPLE_LIMIT = 5000


def list_feedback_for_policies(
    user_id: str, policy_ids: list[str], limit: int = FEEDBACK_SAMPLE_LIMIT
) -> list[dict[str, Any]]:
    """Most recent feedback rows for the given policies."""
    supabase = get_supabase()

    response = (
        supabase.table("policy_match_feedback")
        .select("policy_id, policy_name, features")
        .eq("user_id", user_id)
        .in_("policy_id", policy_ids)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return response.data or []


def list_feedback_stats_rows(
    user_id: str, policy_ids: list[str] | None = None, limit: int = STATS_SAMPLE_LIMIT
) -> list[dict[str, Any]]:
    supabase = get_supabase()

    query = (
        supabase.table("policy_match_feedback")
        .select("policy_id, created_at")
        .eq("user_id", user_id)
    )
    if policy_ids:
        query = query.in_("policy_id", policy_ids)

    response = query.order("created_at", desc=True).limit(limit).execute()
    return response.data or []


def upsert_feedback(
    user_id: str,
    ingestion_id: str,
    policy_id: str,
    policy_name: str | None,
    features: dict[str, Any],
) -> dict[str, Any] | None:
    """Record a manual match, one row per (user, ingestion, policy)."""
    supabase = get_supabase()

    response = (
        supabase.table("policy_match_feedback")
        .upsert(
            {
                "user_id": user_id,
                "ingestion_id": ingestion_id,
                "policy_id": policy_id,
                "policy_name": policy_name,
                "feedback_type": "manual_match",
                "features": features,
            },
            on_conflict="user_id,ingestion_id,policy_id",
        )
        .execute()
    )
    return response.data[0] if response.data else None
