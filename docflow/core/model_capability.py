"""Learned vision capability per (provider, model).

A model is only marked ``unsupported`` after two capability failures inside
the confirmation window. Transient, auth and document-specific failures never
change the stored state. Records expire back to ``unknown`` so models are
re-probed periodically.

Records live in ``user_settings.vision_model_capabilities`` keyed by
``provider:model`` (``provider:model:pdf`` for the PDF modality).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from dateutil import parser as date_parser

from docflow.core.config import get_settings
from docflow.core.logging import get_logger
from docflow.db.user_settings import get_vision_capabilities, upsert_vision_capabilities

logger = get_logger(__name__)

VisionState = Literal["supported", "unsupported", "unknown"]
Modality = Literal["image", "pdf"]

SUPPORTED_TTL = timedelta(days=180)
UNSUPPORTED_TTL = timedelta(days=30)
PENDING_TTL = timedelta(hours=24)
MANUAL_OVERRIDE_TTL = timedelta(days=365)

CONFIRMATIONS_REQUIRED = 2
CAPABILITY_SCORE_THRESHOLD = 3
MAX_SIGNAL_DEPTH = 2

MANUAL_OVERRIDE_REASON = "manual_override"
SUCCESS_REASON = "vision_request_succeeded"

_NESTED_KEYS = ("error", "response", "data", "cause", "body")
_MESSAGE_KEYS = ("message", "detail", "error_description", "msg")
_STATUS_KEYS = ("status", "status_code", "statusCode")
_CODE_KEYS = ("code", "type", "error_code")

TRANSIENT_STATUSES = {401, 403, 408, 429, 500, 502, 503, 504}
CLIENT_VALIDATION_STATUSES = {400, 415, 422}

TRANSIENT_HINTS = (
    "timeout",
    "timed out",
    "rate limit",
    "rate_limit",
    "too many requests",
    "unauthorized",
    "forbidden",
    "invalid api key",
    "invalid_api_key",
    "authentication",
    "permission denied",
    "econnreset",
    "etimedout",
    "connection reset",
    "service unavailable",
    "temporarily unavailable",
    "overloaded",
)

TRANSIENT_CODES = {
    "timeout",
    "etimedout",
    "econnreset",
    "rate_limit_exceeded",
    "rate_limit_error",
    "authentication_error",
    "permission_error",
    "invalid_api_key",
    "overloaded_error",
    "insufficient_quota",
}

DOCUMENT_HINTS = (
    "invalid base64",
    "image payload",
    "failed to parse pdf",
    "could not decode",
    "unable to decode",
    "corrupt",
    "malformed image",
    "invalid image data",
    "image too large",
    "file too large",
    "payload too large",
)

DOCUMENT_CODES = {
    "invalid_base64",
    "invalid_image",
    "image_parse_error",
    "payload_too_large",
    "file_too_large",
}

CAPABILITY_CODES = {
    "vision_not_supported",
    "image_not_supported",
    "image_input_not_supported",
    "pdf_not_supported",
    "unsupported_modality",
    "model_not_multimodal",
}

CAPABILITY_PHRASES = (
    "does not support images",
    "does not support image inputs",
    "does not support image input",
    "does not support vision",
    "vision is not supported",
    "image input is not supported",
    "images are not supported",
    "pdf is not supported",
    "does not support pdf",
    "does not support file input",
)

PROVIDER_PHRASES: dict[str, tuple[str, ...]] = {
    "openai": (
        "image_url is only supported by certain models",
        "invalid content type. image_url",
        "does not support multimodal",
    ),
    "anthropic": (
        "image content is not supported",
        "pdf content is not supported",
        "document content blocks are not supported",
    ),
    "google": (
        "unsupported mime type",
        "multimodal input is not supported",
        "image input modality is not enabled",
    ),
    "realtimexai": (
        "unsupported file input",
        "model does not accept images",
        "no vision capability",
    ),
}

PROVIDER_ALIASES = {"gemini": "google", "realtimex": "realtimexai"}

WEAK_HINTS = ("vision", "multimodal", "image_url", "image input", "input_image", "modality", "pdf")


@dataclass
class VisionResolution:
    provider: str
    model: str
    state: VisionState
    should_attempt: bool


@dataclass
class VisionFailureClassification:
    is_capability_error: bool
    reason: str
    score: int = 0
    evidence: list[str] = field(default_factory=list)


@dataclass
class _FailureSignal:
    messages: list[str] = field(default_factory=list)
    statuses: set[int] = field(default_factory=set)
    codes: set[str] = field(default_factory=set)

    @property
    def text(self) -> str:
        return " | ".join(self.messages)


def capability_key(provider: str, model: str, modality: Modality = "image") -> str:
    base = f"{provider}:{model}".strip().lower()
    return f"{base}:pdf" if modality == "pdf" else base


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_expired(record: dict[str, Any], now: datetime) -> bool:
    expires_at = _parse_time(record.get("expires_at"))
    return expires_at is not None and expires_at <= now


def _record_state(record: Any, now: datetime) -> VisionState:
    """Observable state of a stored record. Pending and expired read as unknown."""
    if not isinstance(record, dict) or _is_expired(record, now):
        return "unknown"
    state = record.get("state")
    if state in ("supported", "unsupported"):
        return state
    return "unknown"


def _is_active_override(record: Any, now: datetime) -> bool:
    return (
        isinstance(record, dict)
        and record.get("reason") == MANUAL_OVERRIDE_REASON
        and not _is_expired(record, now)
    )


def resolve_vision_support(
    settings_row: dict[str, Any] | None,
    modality: Modality = "image",
    now: datetime | None = None,
) -> VisionResolution:
    """
    Decide whether to attempt vision input for the user's configured model.

    Args:
        settings_row: user_settings row (llm_provider, llm_model, vision_model_capabilities)
        modality: "image" or "pdf"
        now: Clock override for tests

    Returns:
        VisionResolution; ``should_attempt`` is False only for ``unsupported``
    """
    row = settings_row or {}
    config = get_settings()
    provider = (row.get("llm_provider") or "").strip() or config.DEFAULT_LLM_PROVIDER
    model = (row.get("llm_model") or "").strip() or config.DEFAULT_LLM_MODEL

    capabilities = row.get("vision_model_capabilities")
    record = capabilities.get(capability_key(provider, model, modality)) if isinstance(capabilities, dict) else None
    state = _record_state(record, now or _utc_now())

    return VisionResolution(
        provider=provider,
        model=model,
        state=state,
        should_attempt=state != "unsupported",
    )


# =============================================================================
# Failure classification
# =============================================================================


def _get(value: Any, key: str) -> Any:
    if isinstance(value, dict):
        return value.get(key)
    return getattr(value, key, None)


def _add_status(signal: _FailureSignal, raw: Any) -> None:
    if isinstance(raw, bool):
        return
    if isinstance(raw, int):
        signal.statuses.add(raw)
    elif isinstance(raw, str) and raw.strip().isdigit():
        signal.statuses.add(int(raw.strip()))


def _collect(value: Any, signal: _FailureSignal, depth: int) -> None:
    if value is None or depth > MAX_SIGNAL_DEPTH:
        return

    if isinstance(value, str):
        if value.strip():
            signal.messages.append(value.strip().lower())
        return

    if isinstance(value, BaseException):
        message = str(value)
        if message:
            signal.messages.append(message.lower())
    elif not isinstance(value, dict) and not hasattr(value, "__dict__"):
        return

    for key in _MESSAGE_KEYS:
        message = _get(value, key)
        if isinstance(message, str) and message.strip():
            signal.messages.append(message.strip().lower())

    for key in _STATUS_KEYS:
        _add_status(signal, _get(value, key))

    for key in _CODE_KEYS:
        code = _get(value, key)
        if isinstance(code, str) and code.strip():
            if code.strip().isdigit():
                _add_status(signal, code)
            else:
                signal.codes.add(code.strip().lower())
        elif isinstance(code, int):
            _add_status(signal, code)

    for key in _NESTED_KEYS:
        nested = _get(value, key)
        if nested is not None and nested is not value:
            _collect(nested, signal, depth + 1)

    if isinstance(value, BaseException) and value.__cause__ is not None:
        _collect(value.__cause__, signal, depth + 1)


def extract_failure_signal(error: Any) -> _FailureSignal:
    signal = _FailureSignal()
    _collect(error, signal, 0)
    return signal


def _matches(text: str, phrases: tuple[str, ...]) -> list[str]:
    return [p for p in phrases if p in text]


def _provider_phrases(provider: str | None) -> tuple[str, ...]:
    if not provider:
        return tuple(p for phrases in PROVIDER_PHRASES.values() for p in phrases)
    name = provider.strip().lower()
    return PROVIDER_PHRASES.get(PROVIDER_ALIASES.get(name, name), ())


def classify_vision_failure(error: Any, provider: str | None = None) -> VisionFailureClassification:
    """
    Classify a failed vision request.

    Transient/auth failures win over document-specific ones, which win over
    capability scoring. Only a score of 3 or more is a capability error.
    """
    signal = extract_failure_signal(error)
    text = signal.text

    transient = [f"status:{s}" for s in sorted(signal.statuses & TRANSIENT_STATUSES)]
    transient += [f"code:{c}" for c in sorted(signal.codes & TRANSIENT_CODES)]
    transient += [f"msg:{h}" for h in _matches(text, TRANSIENT_HINTS)]
    if transient:
        return VisionFailureClassification(False, "transient_or_auth", evidence=transient)

    document = [f"code:{c}" for c in sorted(signal.codes & DOCUMENT_CODES)]
    document += [f"msg:{h}" for h in _matches(text, DOCUMENT_HINTS)]
    if 413 in signal.statuses:
        return VisionFailureClassification(
            False, "document_specific_failure", evidence=["status:413", *document]
        )
    if document and signal.statuses & {415, 422}:
        return VisionFailureClassification(False, "document_specific_failure", evidence=document)

    score = 0
    evidence: list[str] = []
    client_validation = bool(signal.statuses & CLIENT_VALIDATION_STATUSES)

    codes = sorted(signal.codes & CAPABILITY_CODES)
    if codes:
        score += 3
        evidence += [f"code:{c}" for c in codes]

    phrases = _matches(text, CAPABILITY_PHRASES)
    if phrases:
        score += 3
        evidence += [f"msg:{p}" for p in phrases]

    provider_hits = _matches(text, _provider_phrases(provider))
    if provider_hits:
        score += 2
        evidence += [f"provider:{p}" for p in provider_hits]

    if client_validation:
        weak = [h for h in WEAK_HINTS if h in text or any(h in c for c in signal.codes)]
        if weak:
            score += 1
            evidence += [f"hint:{h}" for h in weak]

    if signal.statuses & {400, 422}:
        score += 1
        evidence.append("status:client_validation")

    if score >= CAPABILITY_SCORE_THRESHOLD:
        return VisionFailureClassification(True, "capability_mismatch", score, evidence)
    return VisionFailureClassification(False, "insufficient_capability_evidence", score, evidence)


# =============================================================================
# Learning
# =============================================================================


def _write_record(user_id: str, capabilities: dict[str, Any], key: str, record: dict[str, Any]) -> bool:
    updated = dict(capabilities)
    updated[key] = record
    try:
        upsert_vision_capabilities(user_id, updated)
    except Exception as e:
        logger.error(f"Failed to persist vision capability {key}: {e}", extra={"user_id": user_id})
        return False
    return True


def _read_capabilities(user_id: str) -> dict[str, Any] | None:
    try:
        return get_vision_capabilities(user_id)
    except Exception as e:
        logger.warning(f"Failed to read vision capabilities: {e}", extra={"user_id": user_id})
        return None


def learn_vision_failure(
    user_id: str,
    provider: str,
    model: str,
    error: Any,
    modality: Modality = "image",
    now: datetime | None = None,
) -> VisionState:
    """
    Record a failed vision attempt.

    Returns:
        "unsupported" once confirmed, otherwise "unknown"
    """
    now = now or _utc_now()
    key = capability_key(provider, model, modality)
    classification = classify_vision_failure(error, provider)

    if not classification.is_capability_error:
        logger.info(
            f"Vision failure for {key} not treated as capability: {classification.reason}",
            extra={"user_id": user_id},
        )
        return "unknown"

    capabilities = _read_capabilities(user_id)
    if capabilities is None:
        return "unknown"

    existing = capabilities.get(key)
    if _is_active_override(existing, now):
        logger.info(f"Keeping manual override for {key}", extra={"user_id": user_id})
        return "unknown"

    window = timedelta(hours=get_settings().VISION_CONFIRMATION_WINDOW_HOURS)
    failure_count = 1
    if isinstance(existing, dict) and existing.get("state") == "pending_unsupported":
        last_failure = _parse_time(existing.get("last_failure_at"))
        if last_failure is not None and now - last_failure <= window:
            failure_count = int(existing.get("failure_count") or 1) + 1

    confirmed = failure_count >= CONFIRMATIONS_REQUIRED
    record = {
        "state": "unsupported" if confirmed else "pending_unsupported",
        "learned_at": now.isoformat(),
        "expires_at": (now + (UNSUPPORTED_TTL if confirmed else PENDING_TTL)).isoformat(),
        "reason": classification.reason,
        "evidence": classification.evidence,
        "failure_count": failure_count,
        "last_failure_at": now.isoformat(),
    }
    if not _write_record(user_id, capabilities, key, record):
        return "unknown"

    logger.info(
        f"Vision capability {key}: {record['state']} (failures: {failure_count})",
        extra={"user_id": user_id},
    )
    return "unsupported" if confirmed else "unknown"


def learn_vision_success(
    user_id: str,
    provider: str,
    model: str,
    modality: Modality = "image",
    now: datetime | None = None,
) -> None:
    """Mark the model supported and clear any pending failures."""
    now = now or _utc_now()
    key = capability_key(provider, model, modality)

    capabilities = _read_capabilities(user_id)
    if capabilities is None:
        return
    if _is_active_override(capabilities.get(key), now):
        logger.info(f"Keeping manual override for {key}", extra={"user_id": user_id})
        return

    record = {
        "state": "supported",
        "learned_at": now.isoformat(),
        "expires_at": (now + SUPPORTED_TTL).isoformat(),
        "reason": SUCCESS_REASON,
    }
    if _write_record(user_id, capabilities, key, record):
        logger.info(f"Vision capability {key}: supported", extra={"user_id": user_id})


def set_manual_override(
    user_id: str,
    provider: str,
    model: str,
    state: Literal["supported", "unsupported"],
    modality: Modality = "image",
    ttl: timedelta = MANUAL_OVERRIDE_TTL,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Pin a capability state that automatic learning will not overwrite until it expires.

    Raises:
        Exception: If the settings row cannot be read or written
    """
    now = now or _utc_now()
    key = capability_key(provider, model, modality)
    capabilities = get_vision_capabilities(user_id)

    record = {
        "state": state,
        "learned_at": now.isoformat(),
        "expires_at": (now + ttl).isoformat(),
        "reason": MANUAL_OVERRIDE_REASON,
    }
    updated = dict(capabilities)
    updated[key] = record
    upsert_vision_capabilities(user_id, updated)

    logger.info(f"Manual vision override {key}: {state}", extra={"user_id": user_id})
    return record
