"""Pydantic schemas for user-authored policies."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

ConditionType = Literal["keyword", "filename", "file_type", "mime_type", "llm_verify", "semantic"]
FieldType = Literal["string", "currency", "date", "number", "string[]"]
MatchStrategy = Literal["ALL", "ANY"]

DEFAULT_CONFIDENCE_THRESHOLD = 0.8

# Keys that older policies put directly on the action instead of under `config`
LEGACY_ACTION_KEYS = (
    "pattern",
    "destination",
    "filename",
    "path",
    "columns",
    "message",
    "url",
    "payload",
    "spreadsheet_id",
    "spreadsheet_url",
    "range",
)


class MatchCondition(BaseModel):
    """One match condition. `type` selects which other attributes apply."""

    type: ConditionType
    value: str | list[str] | None = None
    prompt: str | None = None
    confidence_threshold: float | None = None
    case_sensitive: bool = False

    def values(self) -> list[str]:
        """Candidate values as a list (a bare string becomes a single item)."""
        if self.value is None:
            return []
        if isinstance(self.value, str):
            return [self.value]
        return [str(v) for v in self.value]

    @property
    def threshold(self) -> float:
        if self.confidence_threshold is None:
            return DEFAULT_CONFIDENCE_THRESHOLD
        return self.confidence_threshold


class FieldTransformer(BaseModel):
    """Derives a synthetic variable from an extracted field."""

    model_config = ConfigDict(populate_by_name=True)

    name: Literal["get_year", "get_month", "get_month_name"]
    as_: str = Field(alias="as")


class ExtractField(BaseModel):
    """A field the policy asks the extractor to fill."""

    key: str
    type: FieldType = "string"
    description: str = ""
    required: bool = False
    format: str | None = None
    transformers: list[FieldTransformer] = []


class PolicyAction(BaseModel):
    """An action with free-form configuration.

    Legacy top-level keys (``pattern``, ``destination`` ...) are folded into
    ``config`` on load so handlers only ever read ``config``.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    config: dict[str, Any] = {}

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        folded = dict(data)
        config = dict(folded.get("config") or {})
        for key in LEGACY_ACTION_KEYS:
            if key in folded and key not in config:
                config[key] = folded.pop(key)
        folded["config"] = config
        return folded


class MatchSpec(BaseModel):
    strategy: MatchStrategy = "ALL"
    conditions: list[MatchCondition] = []


class PolicySpec(BaseModel):
    match: MatchSpec
    extract: list[ExtractField] = []
    actions: list[PolicyAction] = []


class PolicyMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    version: str = "1.0.0"
    description: str = ""
    priority: int = 100
    tags: list[str] = []
    enabled: bool = True


class Policy(BaseModel):
    """A versioned user rule: match conditions, extraction fields, actions."""

    model_config = ConfigDict(populate_by_name=True)

    api_version: Literal["folio/v1"] = Field(default="folio/v1", alias="apiVersion")
    kind: Literal["Policy", "Splitter"] = "Policy"
    metadata: PolicyMetadata
    spec: PolicySpec

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def name(self) -> str:
        return self.metadata.name or self.metadata.id

    @property
    def priority(self) -> int:
        return self.metadata.priority

    @property
    def enabled(self) -> bool:
        return self.metadata.enabled


def sort_by_priority(policies: list[Policy]) -> list[Policy]:
    """Ascending priority; ties keep their original order."""
    return sorted(policies, key=lambda p: p.priority)
