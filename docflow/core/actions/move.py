"""move and copy actions (local filesystem)."""

import asyncio
import os
import shutil

from docflow.core.actions.base import ActionContext, ActionHandler, ActionResult, FileState
from docflow.core.actions.google import upload_to_drive
from docflow.core.actions.utils import interpolate, pick_string, resolve_filename, split_name
from docflow.core.schemas_ingestions import TraceStep

GDRIVE_PREFIX = "gdrive://"


def _copy_into(src: str, dest_dir: str, new_name: str) -> str:
    os.makedirs(dest_dir, exist_ok=True)
    new_path = os.path.join(dest_dir, new_name)
    shutil.copy2(src, new_path)
    return new_path


def _move_into(src: str, dest_dir: str) -> str:
    os.makedirs(dest_dir, exist_ok=True)
    new_path = os.path.join(dest_dir, os.path.basename(src))
    shutil.move(src, new_path)
    return new_path


class MoveAction(ActionHandler):
    async def execute(self, context: ActionContext) -> ActionResult:
        destination = pick_string(context.action, "destination")
        if not destination:
            return ActionResult.failed(
                "Move failed: missing destination", "Move action requires a 'destination' config"
            )

        dest_dir = interpolate(destination, context.variables, context.data)
        new_path = await asyncio.to_thread(_move_into, context.file.path, dest_dir)
        context.emit({"action": "move", "destination": dest_dir})

        return ActionResult(
            success=True,
            new_file_state=FileState(path=new_path, name=context.file.name),
            logs=[f"Moved to '{dest_dir}'"],
            trace=[
                TraceStep(
                    step=f"Moved file to {dest_dir}",
                    details={"from": context.file.path, "to": new_path},
                )
            ],
        )


class CopyAction(ActionHandler):
    """Copy to a local directory. ``gdrive://<folder>`` destinations go to storage."""

    async def execute(self, context: ActionContext) -> ActionResult:
        destination = pick_string(context.action, "destination")
        if not destination:
            return ActionResult.failed(
                "Copy failed: missing destination", "Copy action requires a 'destination' config"
            )

        filename_config = pick_string(context.action, "filename")
        pattern = pick_string(context.action, "pattern")
        dest_dir = interpolate(destination, context.variables, context.data)
        stem, ext = split_name(context.file.name)

        if dest_dir.startswith(GDRIVE_PREFIX):
            folder_id = dest_dir[len(GDRIVE_PREFIX) :] or None
            file_name = (
                resolve_filename(filename_config, context.variables, stem, ext, context.data)
                if filename_config
                else None
            )
            return await upload_to_drive(context, folder_id, file_name)

        if filename_config:
            new_name = resolve_filename(filename_config, context.variables, stem, ext, context.data)
        elif pattern:
            new_name = interpolate(pattern, context.variables, context.data)
            if not new_name.endswith(ext):
                new_name += ext
        else:
            new_name = context.file.name

        new_path = await asyncio.to_thread(_copy_into, context.file.path, dest_dir, new_name)
        context.emit({"action": "copy", "destination": dest_dir, "new_name": new_name})

        return ActionResult(
            success=True,
            logs=[f"Copied to '{new_path}'"],
            outputs={"copy_path": new_path},
            trace=[
                TraceStep(
                    step=f"Copied file to {new_path}",
                    details={"original": context.file.path, "copy": new_path},
                )
            ],
        )
