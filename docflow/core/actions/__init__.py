"""Policy action handlers.

Each action ``type`` maps to one handler in ``ACTION_HANDLERS``. Handlers
receive an ``ActionContext`` and return an ``ActionResult``; the actuator
runs them in order and records failures without stopping.

Usage:
    from docflow.core.actions import ACTION_HANDLERS, ActionContext, FileState
"""

from docflow.core.actions.base import (
    ActionContext,
    ActionHandler,
    ActionResult,
    AppendResult,
    FileState,
    SheetTemplate,
    SpreadsheetService,
    StorageService,
    UploadResult,
)
from docflow.core.actions.google import AppendToGoogleSheetAction, CopyToGDriveAction
from docflow.core.actions.log_csv import LogCsvAction
from docflow.core.actions.move import CopyAction, MoveAction
from docflow.core.actions.notify import NotifyAction
from docflow.core.actions.rename import AutoRenameAction, RenameAction
from docflow.core.actions.webhook import WebhookAction

ACTION_HANDLERS: dict[str, ActionHandler] = {
    "rename": RenameAction(),
    "auto_rename": AutoRenameAction(),
    "move": MoveAction(),
    "copy": CopyAction(),
    "copy_to_gdrive": CopyToGDriveAction(),
    "append_to_google_sheet": AppendToGoogleSheetAction(),
    "log_csv": LogCsvAction(),
    "notify": NotifyAction(),
    "webhook": WebhookAction(),
}

__all__ = [
    "ACTION_HANDLERS",
    "ActionContext",
    "ActionHandler",
    "ActionResult",
    "AppendResult",
    "FileState",
    "SheetTemplate",
    "SpreadsheetService",
    "StorageService",
    "UploadResult",
]
