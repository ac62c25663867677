"""Shared types for action handlers and their external collaborators."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol

from docflow.core.event_log import EventLog
from docflow.core.schemas_ingestions import TraceStep
from docflow.core.schemas_policies import PolicyAction


@dataclass
class FileState:
    """Where the document currently lives. Threads through rename/move."""

    path: str
    name: str


# =============================================================================
# Storage / spreadsheet collaborators
# =============================================================================


@dataclass
class UploadResult:
    success: bool
    file_id: str | None = None
    error: str | None = None


@dataclass
class SheetTemplate:
    """Header row of a target sheet, used when no explicit columns are set."""

    success: bool
    spreadsheet_id: str | None = None
    range: str | None = None
    headers: list[str] = field(default_factory=list)
    error: str | None = None
    error_details: dict[str, Any] | None = None


@dataclass
class AppendResult:
    success: bool
    spreadsheet_id: str | None = None
    range: str | None = None
    error: str | None = None
    error_details: dict[str, Any] | None = None


class StorageService(Protocol):
    """Remote file storage (e.g. Google Drive)."""

    async def upload_file(
        self,
        user_id: str,
        file_path: str,
        folder_id: str | None = None,
        file_name: str | None = None,
    ) -> UploadResult: ...


class SpreadsheetService(Protocol):
    """Remote spreadsheet (e.g. Google Sheets)."""

    async def resolve_template(
        self, user_id: str, spreadsheet_ref: str, range_: str | None = None
    ) -> SheetTemplate: ...

    async def append_row(
        self, user_id: str, spreadsheet_ref: str, range_: str | None, values: list[str]
    ) -> AppendResult: ...


# =============================================================================
# Handler contract
# =============================================================================


@dataclass
class ActionContext:
    """Everything a handler needs to run one action."""

    action: PolicyAction
    data: dict[str, Any]
    file: FileState
    variables: dict[str, str]
    user_id: str
    ingestion_id: str
    event_log: EventLog | None = None
    storage: StorageService | None = None
    spreadsheets: SpreadsheetService | None = None

    def emit(self, details: dict[str, Any]) -> None:
        """Fire-and-forget action event."""
        if self.event_log is not None:
            self.event_log.log_event(
                self.ingestion_id, self.user_id, "action", "Action Execution", details
            )


@dataclass
class ActionResult:
    success: bool
    logs: list[str] = field(default_factory=list)
    trace: list[TraceStep] = field(default_factory=list)
    new_file_state: FileState | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_details: dict[str, Any] | None = None

    @classmethod
    def failed(cls, step: str, error: str, details: dict[str, Any] | None = None) -> "ActionResult":
        return cls(success=False, trace=[TraceStep(step=step, details=details)], error=error)


class ActionHandler(ABC):
    """One action type. Handlers report failures in the result; raising is
    also tolerated and recorded by the actuator."""

    @abstractmethod
    async def execute(self, context: ActionContext) -> ActionResult:
        pass
