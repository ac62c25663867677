"""Runs a policy's action list against one document."""

import os
from dataclasses import dataclass, field
from typing import Any

from docflow.core.actions import ACTION_HANDLERS, ActionContext, FileState
from docflow.core.actions.base import ActionHandler, SpreadsheetService, StorageService
from docflow.core.actions.utils import derive_variables
from docflow.core.event_log import EventLog
from docflow.core.logging import get_logger
from docflow.core.schemas_ingestions import Trace
from docflow.core.schemas_policies import ExtractField, PolicyAction

logger = get_logger(__name__)


@dataclass
class ActuatorResult:
    success: bool
    actions_executed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    file_state: FileState | None = None


class Actuator:
    """Executes actions in order; each one is independent of the others' failures."""

    def __init__(
        self,
        event_log: EventLog | None = None,
        storage: StorageService | None = None,
        spreadsheets: SpreadsheetService | None = None,
        handlers: dict[str, ActionHandler] | None = None,
    ):
        self.event_log = event_log
        self.storage = storage
        self.spreadsheets = spreadsheets
        self.handlers = handlers if handlers is not None else ACTION_HANDLERS

    async def execute(
        self,
        ingestion_id: str,
        user_id: str,
        file_path: str,
        actions: list[PolicyAction],
        data: dict[str, Any],
        fields: list[ExtractField],
        trace: Trace,
    ) -> ActuatorResult:
        """
        Run every action and collect outcomes.

        Args:
            ingestion_id: Ingestion being actioned
            user_id: Owner
            file_path: Current location of the document
            actions: Ordered action list
            data: Extracted values
            fields: Extract fields (for transformers)
            trace: Trace to append to

        Returns:
            ActuatorResult; ``success`` is False if any action failed
        """
        result = ActuatorResult(success=True)
        trace.add("Initializing Actuator", {"actions_count": len(actions)})

        variables = derive_variables(data, fields)
        file_state = FileState(path=file_path, name=os.path.basename(file_path))

        for action in actions:
            handler = self.handlers.get(action.type)
            if handler is None:
                self._record_failure(
                    result, trace, ingestion_id, user_id, action.type,
                    f"Unknown action type '{action.type}'",
                )
                continue

            self._emit(ingestion_id, user_id, {"action": action.type, "status": "started"})
            context = ActionContext(
                action=action,
                data=data,
                file=file_state,
                variables=variables,
                user_id=user_id,
                ingestion_id=ingestion_id,
                event_log=self.event_log,
                storage=self.storage,
                spreadsheets=self.spreadsheets,
            )

            try:
                outcome = await handler.execute(context)
            except Exception as e:
                logger.error(f"Action '{action.type}' failed: {e}", extra={"ingestion_id": ingestion_id})
                self._record_failure(result, trace, ingestion_id, user_id, action.type, str(e))
                continue

            trace.extend(outcome.trace)
            if not outcome.success:
                self._record_failure(
                    result, trace, ingestion_id, user_id, action.type,
                    outcome.error or "Action failed", outcome.error_details,
                )
                continue

            result.actions_executed.extend(outcome.logs)
            if outcome.new_file_state is not None:
                file_state = outcome.new_file_state
            self._emit(ingestion_id, user_id, {"action": action.type, "status": "succeeded"})

        result.file_state = file_state
        return result

    def _record_failure(
        self,
        result: ActuatorResult,
        trace: Trace,
        ingestion_id: str,
        user_id: str,
        action_type: str,
        error: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        result.success = False
        result.errors.append(f"{action_type}: {error}")
        trace.add("Action failed", {"type": action_type, "error": error, **(details or {})})
        self._emit(ingestion_id, user_id, {"action": action_type, "status": "failed", "error": error}, kind="error")

    def _emit(self, ingestion_id: str, user_id: str, details: dict[str, Any], kind: str = "action") -> None:
        if self.event_log is not None:
            self.event_log.log_event(ingestion_id, user_id, kind, "Action Execution", details)
