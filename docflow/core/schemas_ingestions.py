"""Pydantic schemas for ingestion records and their traces."""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

IngestionStatus = Literal["pending", "processing", "matched", "no_match", "error", "duplicate"]
IngestionSource = Literal["upload", "dropzone", "email", "url"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"matched", "no_match", "error", "duplicate"})


def utc_now_iso() -> str:
    """Get current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


class TraceStep(BaseModel):
    """One timestamped step of an ingestion's processing trace."""

    timestamp: str = Field(default_factory=utc_now_iso)
    step: str
    details: dict[str, Any] | None = None


class Trace:
    """Append-only list of trace steps shared by every pipeline stage."""

    def __init__(self, steps: list[TraceStep] | None = None):
        self.steps: list[TraceStep] = list(steps or [])

    def add(self, step: str, details: dict[str, Any] | None = None) -> TraceStep:
        entry = TraceStep(step=step, details=details)
        self.steps.append(entry)
        return entry

    def extend(self, steps: list[TraceStep]) -> None:
        self.steps.extend(steps)

    def to_json(self) -> list[dict[str, Any]]:
        return [s.model_dump(exclude_none=True) for s in self.steps]

    @classmethod
    def from_json(cls, raw: Any) -> "Trace":
        if not isinstance(raw, list):
            return cls()
        steps = []
        for item in raw:
            if isinstance(item, dict) and item.get("step"):
                steps.append(TraceStep.model_validate(item))
        return cls(steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)


class Ingestion(BaseModel):
    """One processed document."""

    id: str
    user_id: str
    source: IngestionSource = "upload"
    filename: str
    mime_type: str | None = None
    file_size: int | None = None
    file_hash: str | None = None
    status: IngestionStatus = "processing"
    policy_id: str | None = None
    policy_name: str | None = None
    extracted: dict[str, Any] = {}
    actions_taken: list[str] = []
    error_message: str | None = None
    trace: list[TraceStep] = []
    tags: list[str] = []
    summary: str | None = None
    raw_text: str | None = None
    storage_path: str | None = None
    baseline_config_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Ingestion":
        """Build from a Supabase row, tolerating nulls in json columns."""
        data = dict(row)
        data["extracted"] = data.get("extracted") or {}
        data["actions_taken"] = data.get("actions_taken") or []
        data["tags"] = data.get("tags") or []
        data["trace"] = Trace.from_json(data.get("trace")).steps
        data["id"] = str(data["id"])
        data["user_id"] = str(data["user_id"])
        return cls.model_validate(data)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
