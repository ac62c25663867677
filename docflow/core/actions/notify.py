"""notify action: structured log emission."""

import logging

from docflow.core.actions.base import ActionContext, ActionHandler, ActionResult
from docflow.core.actions.utils import interpolate, pick_string
from docflow.core.logging import get_logger, log_with_context
from docflow.core.schemas_ingestions import TraceStep

logger = get_logger(__name__)


class NotifyAction(ActionHandler):
    async def execute(self, context: ActionContext) -> ActionResult:
        template = pick_string(context.action, "message")
        if not template:
            return ActionResult.failed(
                "Notify failed: missing message", "Notify action requires a 'message' config"
            )

        message = interpolate(template, context.variables, context.data)
        log_with_context(
            logger,
            logging.INFO,
            f"[NOTIFY] {message}",
            ingestion_id=context.ingestion_id,
            user_id=context.user_id,
        )
        context.emit({"action": "notify", "message": message})

        return ActionResult(
            success=True,
            logs=[f"Notified: {message}"],
            trace=[TraceStep(step="Executed notify action", details={"message": message})],
        )
