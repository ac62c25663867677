"""Versioned baseline extraction schema per user.

Every save creates a new immutable version. At most one version is active;
users without one fall back to ``DEFAULT_BASELINE_FIELDS``.
"""

from typing import Any

from pydantic import BaseModel, Field

from docflow.core.errors import NotFoundError, PolicyValidationError
from docflow.core.logging import get_logger
from docflow.core.schemas_policies import FieldType
from docflow.db.baseline_configs import (
    deactivate_all,
    get_active_config,
    get_latest_version,
    insert_config,
    list_configs,
    set_active,
)

logger = get_logger(__name__)


class BaselineField(BaseModel):
    key: str
    type: FieldType = "string"
    description: str = ""
    enabled: bool = True
    is_default: bool = False


class BaselineConfig(BaseModel):
    id: str
    user_id: str
    version: int
    context: str | None = None
    fields: list[BaselineField] = Field(default_factory=list)
    is_active: bool = False
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "BaselineConfig":
        data = dict(row)
        data["id"] = str(data["id"])
        data["user_id"] = str(data["user_id"])
        data["fields"] = data.get("fields") or []
        return cls.model_validate(data)


def _default(key: str, type_: str, description: str) -> BaselineField:
    return BaselineField(key=key, type=type_, description=description, enabled=True, is_default=True)


DEFAULT_BASELINE_FIELDS: list[BaselineField] = [
    _default(
        "document_type",
        "string",
        'Type of document (e.g. "invoice", "contract", "receipt", "report", "statement")',
    ),
    _default("issuer", "string", "Person or organisation that sent or issued the document"),
    _default("recipient", "string", "Person or organisation the document is addressed to"),
    _default("date", "date", "Primary date on the document in ISO 8601 format (YYYY-MM-DD)"),
    _default("amount", "currency", "Primary monetary value if present (numeric, no currency symbol)"),
    _default("currency", "string", 'Three-letter currency code if present (e.g. "USD", "EUR", "GBP")'),
    _default("subject", "string", "One-sentence description of what this document is about"),
    _default(
        "tags",
        "string[]",
        'Semantic labels that describe this document (e.g. ["subscription", "renewal", "tax", "refund"])',
    ),
    _default(
        "suggested_filename",
        "string",
        "A highly descriptive, concise filename for this document using the format: "
        "YYYY-MM-DD_Issuer_DocType. Do not include file extensions. If date is missing, omit it.",
    ),
]


def get_active(user_id: str) -> BaselineConfig | None:
    """Active config, or None (callers fall back to the defaults)."""
    try:
        row = get_active_config(user_id)
    except Exception as e:
        logger.warning(f"Failed to fetch active baseline config: {e}", extra={"user_id": user_id})
        return None
    return BaselineConfig.from_row(row) if row else None


def enabled_fields(config: BaselineConfig | None) -> list[BaselineField]:
    """Fields to extract: the config's enabled ones, or the defaults."""
    fields = config.fields if config else DEFAULT_BASELINE_FIELDS
    return [f for f in fields if f.enabled]


def list_versions(user_id: str) -> list[BaselineConfig]:
    return [BaselineConfig.from_row(row) for row in list_configs(user_id)]


def save(user_id: str, payload: dict[str, Any], activate: bool) -> BaselineConfig:
    """
    Store a new config version.

    Args:
        user_id: Owner
        payload: {"context": str | None, "fields": [BaselineField-like dicts]}
        activate: Make the new version the active one

    Returns:
        The stored config

    Raises:
        PolicyValidationError: If the field list is malformed
    """
    raw_fields = payload.get("fields")
    if not isinstance(raw_fields, list):
        raise PolicyValidationError("Baseline config requires a 'fields' list")

    try:
        fields = [BaselineField.model_validate(f) for f in raw_fields]
    except ValueError as e:
        raise PolicyValidationError(f"Invalid baseline field: {e}") from e

    keys = [f.key for f in fields]
    duplicates = sorted({k for k in keys if keys.count(k) > 1})
    if duplicates:
        raise PolicyValidationError(
            f"Duplicate baseline field keys: {', '.join(duplicates)}", problems=duplicates
        )

    next_version = get_latest_version(user_id) + 1
    if activate:
        deactivate_all(user_id)

    row = insert_config(
        user_id=user_id,
        version=next_version,
        context=payload.get("context"),
        fields=[f.model_dump() for f in fields],
        is_active=activate,
    )
    logger.info(
        f"Saved baseline config v{next_version} (active: {activate})", extra={"user_id": user_id}
    )
    return BaselineConfig.from_row(row)


def activate(user_id: str, config_id: str) -> BaselineConfig:
    """
    Make a stored version the active one.

    Raises:
        NotFoundError: If the version does not belong to the user
    """
    known = {c.id for c in list_versions(user_id)}
    if config_id not in known:
        raise NotFoundError(f"Baseline config {config_id} not found")

    deactivate_all(user_id)
    row = set_active(user_id, config_id)
    if not row:
        raise NotFoundError(f"Baseline config {config_id} not found")

    config = BaselineConfig.from_row(row)
    logger.info(f"Activated baseline config v{config.version}", extra={"user_id": user_id})
    return config
