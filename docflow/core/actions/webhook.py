"""webhook action: POST an interpolated JSON payload."""

import json

import httpx

from docflow.core.actions.base import ActionContext, ActionHandler, ActionResult
from docflow.core.actions.utils import interpolate, pick_string
from docflow.core.config import get_settings
from docflow.core.schemas_ingestions import TraceStep


class WebhookAction(ActionHandler):
    async def execute(self, context: ActionContext) -> ActionResult:
        url_template = pick_string(context.action, "url")
        payload_template = pick_string(context.action, "payload")
        if not url_template or not payload_template:
            return ActionResult.failed(
                "Webhook failed: missing url or payload",
                "Webhook action requires 'url' and 'payload' configs",
            )

        url = interpolate(url_template, context.variables, context.data)
        payload_str = interpolate(payload_template, context.variables, context.data)
        try:
            payload = json.loads(payload_str)
        except json.JSONDecodeError:
            return ActionResult.failed(
                "Webhook failed: invalid JSON payload", "Webhook payload must be valid JSON"
            )

        settings = get_settings()
        async with httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, json=payload)

        if not resp.is_success:
            return ActionResult.failed(
                "Webhook failed: non-2xx response",
                f"Webhook returned HTTP {resp.status_code}",
                {"url": url, "status_code": resp.status_code},
            )

        context.emit({"action": "webhook", "url": url, "status_code": resp.status_code})

        return ActionResult(
            success=True,
            logs=["Logged via webhook"],
            trace=[TraceStep(step=f"Webhook payload sent to {url}", details={"url": url, "payload": payload})],
        )
