"""log_csv action: append one row per document to a CSV file."""

import asyncio
import csv
import os

from docflow.core.actions.base import ActionContext, ActionHandler, ActionResult
from docflow.core.actions.utils import interpolate, pick_columns, pick_string
from docflow.core.schemas_ingestions import TraceStep


def append_csv_row(csv_path: str, columns: list[str], values: list[str]) -> bool:
    """Append a row, writing the header first when the file is new.

    Returns:
        True if the file was created
    """
    created = not os.path.exists(csv_path)
    if created:
        parent = os.path.dirname(csv_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
    with open(csv_path, "a", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        if created:
            writer.writerow(columns)
        writer.writerow(values)
    return created


class LogCsvAction(ActionHandler):
    async def execute(self, context: ActionContext) -> ActionResult:
        path_template = pick_string(context.action, "path")
        if not path_template:
            return ActionResult.failed(
                "Log CSV failed: missing path", "Log CSV action requires a 'path' config"
            )

        csv_path = interpolate(path_template, context.variables, context.data)
        columns = pick_columns(context.action, list(context.data.keys()))
        values = [context.variables.get(c, "") for c in columns]

        created = await asyncio.to_thread(append_csv_row, csv_path, columns, values)
        context.emit({"action": "log_csv", "csv_path": csv_path, "columns": columns})

        return ActionResult(
            success=True,
            logs=[f"Logged CSV → {csv_path}"],
            trace=[
                TraceStep(
                    step="Executed log_csv action",
                    details={"csv_path": csv_path, "columns": columns, "created": created},
                )
            ],
        )
