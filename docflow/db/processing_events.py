"""Database operations for processing events (live pipeline log)."""

from typing import Any

from docflow.core.logging import get_logger
from docflow.db.supabase_client import get_supabase

logger = get_logger(__name__)

EVENT_TYPES = {"info", "analysis", "action", "error"}


def insert_processing_event(
    ingestion_id: str | None,
    user_id: str | None,
    event_type: str,
    agent_state: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """
    Insert one processing event row.

    Args:
        ingestion_id: Ingestion the event belongs to (None for global events)
        user_id: Owner (None for system events)
        event_type: One of info, analysis, action, error
        agent_state: Pipeline stage, e.g. 'Triage', 'Policy Matching'
        details: Free-form JSON details

    Returns:
        Inserted row or None
    """
    if event_type not in EVENT_TYPES:
        event_type = "info"

    supabase = get_supabase()
    response = (
        supabase.table("processing_events")
        .insert(
            {
                "ingestion_id": ingestion_id,
                "user_id": user_id,
                "event_type": event_type,
                "agent_state": agent_state,
                "details": details or {},
            }
        )
        .execute()
    )
    return response.data[0] if response.data else None
