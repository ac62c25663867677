"""copy_to_gdrive and append_to_google_sheet actions.

Both delegate to injected collaborators; a missing collaborator is an action
failure, not a crash.
"""

import re

from docflow.core.actions.base import ActionContext, ActionHandler, ActionResult
from docflow.core.actions.utils import (
    interpolate,
    pick_columns,
    pick_string,
    resolve_filename,
    split_name,
)
from docflow.core.schemas_ingestions import TraceStep

DEFAULT_SHEET_RANGE = "Sheet1"

# Sheet header -> extracted keys to try, in order
HEADER_ALIASES: dict[str, list[str]] = {
    "amount": ["total_amount", "amount", "amount_due"],
    "total": ["total_amount", "amount", "amount_due"],
    "total_amount": ["amount", "amount_due"],
    "vendor": ["issuer", "merchant", "store_name", "seller"],
    "merchant": ["issuer", "vendor", "store_name", "seller"],
    "supplier": ["issuer", "vendor", "merchant"],
    "store": ["issuer", "vendor", "merchant", "store_name"],
    "document": ["document_type"],
    "type": ["document_type"],
    "category": ["document_type"],
    "issued_on": ["date"],
    "invoice_date": ["date"],
    "receipt_date": ["date"],
}


def normalize_key(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")


def resolve_header_value(header: str, variables: dict[str, str]) -> str:
    """Value for a sheet column: exact key, normalized key, then aliases."""
    trimmed = header.strip()
    if not trimmed:
        return ""
    if trimmed in variables:
        return variables[trimmed]

    normalized: dict[str, str] = {}
    for key, value in variables.items():
        nk = normalize_key(key)
        if nk and nk not in normalized:
            normalized[nk] = value

    header_key = normalize_key(trimmed)
    if not header_key:
        return ""
    if header_key in normalized:
        return normalized[header_key]
    for alias in HEADER_ALIASES.get(header_key, []):
        if alias in normalized:
            return normalized[alias]
    return ""


async def upload_to_drive(
    context: ActionContext, folder_id: str | None, file_name: str | None
) -> ActionResult:
    if context.storage is None:
        return ActionResult.failed(
            "Copy to Google Drive failed", "Google Drive storage is not configured"
        )

    upload = await context.storage.upload_file(
        context.user_id, context.file.path, folder_id, file_name
    )
    if not upload.success:
        return ActionResult.failed(
            "Copy to Google Drive failed",
            upload.error or "Failed to upload to Google Drive",
            {"error": upload.error},
        )

    context.emit({"action": "copy_to_gdrive", "destination_folder_id": folder_id, "file_id": upload.file_id})
    return ActionResult(
        success=True,
        logs=[f"Copied to Google Drive (ID: {upload.file_id})"],
        outputs={"drive_file_id": upload.file_id},
        trace=[
            TraceStep(
                step="Copied file to Google Drive",
                details={
                    "original": context.file.path,
                    "drive_file_id": upload.file_id,
                    "destination_folder_id": folder_id,
                },
            )
        ],
    )


class CopyToGDriveAction(ActionHandler):
    async def execute(self, context: ActionContext) -> ActionResult:
        destination = pick_string(context.action, "destination")
        filename_config = pick_string(context.action, "filename")

        folder_id = interpolate(destination, context.variables, context.data) if destination else None
        file_name = None
        if filename_config:
            stem, ext = split_name(context.file.name)
            file_name = resolve_filename(filename_config, context.variables, stem, ext, context.data)

        return await upload_to_drive(context, folder_id, file_name)


class AppendToGoogleSheetAction(ActionHandler):
    """Append one row. Without explicit columns, map the sheet's header row."""

    async def execute(self, context: ActionContext) -> ActionResult:
        spreadsheet_ref = pick_string(context.action, "spreadsheet_id") or pick_string(
            context.action, "spreadsheet_url"
        )
        if not spreadsheet_ref:
            return ActionResult.failed(
                "Append to Google Sheet failed: missing spreadsheet",
                "Missing required Action configuration: 'spreadsheet_id'",
            )
        if context.spreadsheets is None:
            return ActionResult.failed(
                "Append to Google Sheet failed", "Google Sheets service is not configured"
            )

        result = ActionResult(success=True)
        range_ = pick_string(context.action, "range")
        column_templates = pick_columns(context.action, [])
        dynamic_mapping = False

        if column_templates:
            values = [interpolate(t, context.variables, context.data) for t in column_templates]
        else:
            template = await context.spreadsheets.resolve_template(
                context.user_id, spreadsheet_ref, range_
            )
            if not template.success:
                failed = ActionResult.failed(
                    "Append to Google Sheet failed: template",
                    template.error or "Failed to read Google Sheet template headers",
                )
                failed.error_details = template.error_details
                return failed
            if not template.headers:
                return ActionResult.failed(
                    "Append to Google Sheet failed: template",
                    "Google Sheet template has no header row. Add column names in row 1.",
                )

            range_ = template.range
            values = [resolve_header_value(h, context.variables) for h in template.headers]
            dynamic_mapping = True
            result.trace.append(
                TraceStep(
                    step="Resolved Google Sheet template",
                    details={
                        "spreadsheet_id": template.spreadsheet_id,
                        "range": template.range,
                        "headers_count": len(template.headers),
                    },
                )
            )
            if all(not v.strip() for v in values):
                return ActionResult.failed(
                    "Append to Google Sheet failed: no mapped values",
                    "Unable to map extracted fields to Google Sheet headers. Provide explicit "
                    "columns mapping or align header names with extracted keys.",
                )

        result.trace.append(
            TraceStep(
                step="Appending to Google Sheet",
                details={
                    "spreadsheet_ref": spreadsheet_ref,
                    "range": range_ or DEFAULT_SHEET_RANGE,
                    "columns_count": len(values),
                    "dynamic_mapping": dynamic_mapping,
                },
            )
        )

        appended = await context.spreadsheets.append_row(
            context.user_id, spreadsheet_ref, range_, values
        )
        if not appended.success:
            result.success = False
            result.error = appended.error or "Failed to append to Google Sheet"
            result.error_details = appended.error_details
            return result

        sheet_id = appended.spreadsheet_id or spreadsheet_ref
        sheet_range = appended.range or range_ or DEFAULT_SHEET_RANGE
        context.emit(
            {
                "action": "append_to_google_sheet",
                "spreadsheet_id": sheet_id,
                "range": sheet_range,
                "columns_count": len(values),
                "dynamic_mapping": dynamic_mapping,
            }
        )
        result.logs.append(f"Appended {len(values)} columns to Google Sheet {sheet_id} at {sheet_range}")
        return result
