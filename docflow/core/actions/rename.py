"""rename and auto_rename actions."""

import asyncio
import os

from docflow.core.actions.base import ActionContext, ActionHandler, ActionResult, FileState
from docflow.core.actions.utils import interpolate, pick_string, resolve_filename, split_name
from docflow.core.logging import get_logger
from docflow.core.schemas_ingestions import TraceStep

logger = get_logger(__name__)


async def _rename_on_disk(context: ActionContext, new_name: str) -> FileState:
    new_path = os.path.join(os.path.dirname(context.file.path), new_name)
    await asyncio.to_thread(os.rename, context.file.path, new_path)
    return FileState(path=new_path, name=new_name)


class RenameAction(ActionHandler):
    async def execute(self, context: ActionContext) -> ActionResult:
        pattern = pick_string(context.action, "pattern")
        if not pattern:
            return ActionResult.failed(
                "Rename failed: missing pattern", "Rename action requires a 'pattern' config"
            )

        _, ext = split_name(context.file.name)
        new_name = interpolate(pattern, context.variables, context.data)
        if not new_name.endswith(ext):
            new_name += ext

        new_state = await _rename_on_disk(context, new_name)
        context.emit({"action": "rename", "original": context.file.name, "new": new_name})

        return ActionResult(
            success=True,
            new_file_state=new_state,
            logs=[f"Renamed to '{new_name}'"],
            trace=[
                TraceStep(
                    step=f"Renamed file to {new_name}",
                    details={"original": context.file.name, "new": new_name},
                )
            ],
        )


class AutoRenameAction(ActionHandler):
    """Rename from extracted metadata (date, issuer, document type, amount)."""

    async def execute(self, context: ActionContext) -> ActionResult:
        stem, ext = split_name(context.file.name)
        logger.debug(
            "Auto-rename variables: "
            f"suggested_filename={context.variables.get('suggested_filename', '(missing)')} "
            f"date={context.variables.get('date', '(missing)')} "
            f"issuer={context.variables.get('issuer', '(missing)')}",
            extra={"ingestion_id": context.ingestion_id},
        )

        new_name = resolve_filename("auto", context.variables, stem, ext, context.data)
        new_state = await _rename_on_disk(context, new_name)

        logger.info(f"Auto-renamed '{context.file.name}' -> '{new_name}'")
        context.emit({"action": "auto_rename", "original": context.file.name, "new": new_name})

        return ActionResult(
            success=True,
            new_file_state=new_state,
            logs=[f"Auto-Renamed to '{new_name}'"],
            trace=[
                TraceStep(
                    step=f"Auto-Renamed file to {new_name}",
                    details={"original": context.file.name, "new": new_name},
                )
            ],
        )
