"""LLM field extraction: baseline entities and policy-scoped fields."""

import json
from dataclasses import dataclass, field
from typing import Any

from docflow.core.baseline_config import BaselineField
from docflow.core.llm import LLMService, parse_llm_json_dict, preview_llm_text
from docflow.core.logging import get_logger
from docflow.core.schemas_policies import ExtractField

logger = get_logger(__name__)

BASELINE_TEXT_LIMIT = 6000
POLICY_TEXT_LIMIT = 3000
EXTRACTED_SECTION_HEADER = "[Extracted fields]"

BASELINE_SYSTEM_PROMPT = (
    "You are a document analysis engine. Identify the requested fields in the "
    "document and return only valid JSON."
)

EXTRACTION_SYSTEM_PROMPT = "You are a precise data extraction engine. Return only valid JSON."


@dataclass
class BaselineResult:
    entities: dict[str, Any] = field(default_factory=dict)
    uncertain_fields: list[str] = field(default_factory=list)


# =============================================================================
# Baseline extraction
# =============================================================================


def build_baseline_prompt(text: str, fields: list[BaselineField], context: str | None = None) -> str:
    lines = [f'- "{f.key}" ({f.type}): {f.description}' for f in fields]
    parts = [
        "Extract the following fields from the document. Return ONLY a JSON object "
        'of the form {"entities": {<field key>: <value or null>}, "uncertain_fields": [<keys>]}. '
        "Use null when a field cannot be found. List in uncertain_fields any key whose "
        "value you are not confident about.",
    ]
    if context:
        parts.append(f"Context about these documents:\n{context}")
    parts.append("Fields:\n" + "\n".join(lines))
    parts.append(f"Document text:\n{text[:BASELINE_TEXT_LIMIT]}")
    return "\n\n".join(parts)


async def extract_baseline(
    text: str,
    fields: list[BaselineField],
    llm: LLMService,
    provider: str,
    model: str,
    context: str | None = None,
) -> BaselineResult:
    """
    Extract the baseline entity schema from document text.

    Never raises: any failure (model unavailable, empty or unparsable
    response) yields an empty result.

    Args:
        text: Document text
        fields: Enabled baseline fields
        llm: Chat provider
        provider: Chat provider name
        model: Chat model name
        context: Optional free-text hint about the user's documents

    Returns:
        BaselineResult with entities restricted to the requested keys
    """
    if not fields or not text.strip():
        return BaselineResult()

    try:
        raw = await llm.chat_complete(
            [
                {"role": "system", "content": BASELINE_SYSTEM_PROMPT},
                {"role": "user", "content": build_baseline_prompt(text, fields, context)},
            ],
            provider=provider,
            model=model,
            temperature=0,
        )
        if not raw.strip():
            logger.warning("Baseline extraction returned an empty response")
            return BaselineResult()
        parsed = parse_llm_json_dict(raw)
    except Exception as e:
        logger.warning(f"Baseline extraction failed: {e}")
        return BaselineResult()

    allowed = {f.key for f in fields}
    entities_raw = parsed.get("entities")
    if not isinstance(entities_raw, dict):
        logger.warning(f"Baseline response had no entities object: {preview_llm_text(raw)}")
        return BaselineResult()

    entities = {k: v for k, v in entities_raw.items() if k in allowed}
    uncertain_raw = parsed.get("uncertain_fields")
    uncertain = (
        [str(k) for k in uncertain_raw if str(k) in allowed] if isinstance(uncertain_raw, list) else []
    )
    return BaselineResult(entities=entities, uncertain_fields=uncertain)


def _format_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, list):
        items = [str(v) for v in value if v is not None and str(v).strip()]
        return ", ".join(items) if items else None
    if isinstance(value, dict):
        return json.dumps(value)
    text = str(value).strip()
    return text or None


def append_extracted_section(text: str, entities: dict[str, Any]) -> str:
    """Append an ``[Extracted fields]`` block so conditions can see normalized values."""
    lines = []
    for key, value in entities.items():
        formatted = _format_value(value)
        if formatted is not None:
            lines.append(f"{key}: {formatted}")
    if not lines:
        return text
    return f"{text}\n\n{EXTRACTED_SECTION_HEADER}\n" + "\n".join(lines)


# =============================================================================
# Policy-scoped extraction
# =============================================================================


def build_extraction_prompt(fields: list[ExtractField], text: str) -> str:
    descriptions = "\n".join(
        f'- "{f.key}" ({f.type}): {f.description}{" [REQUIRED]" if f.required else ""}'
        for f in fields
    )
    return (
        "Extract the following fields from the document text. Return ONLY a valid JSON "
        "object with the field keys and their extracted values. Use null for fields that "
        "cannot be found.\n\n"
        f"Fields to extract:\n{descriptions}\n\n"
        f"Document text:\n{text[:POLICY_TEXT_LIMIT]}"
    )


async def extract_fields(
    fields: list[ExtractField],
    text: str,
    llm: LLMService,
    provider: str,
    model: str,
) -> dict[str, Any]:
    """Extract a policy's fields. Returns {} on any failure."""
    if not fields:
        return {}

    try:
        raw = await llm.chat_complete(
            [
                {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                {"role": "user", "content": build_extraction_prompt(fields, text)},
            ],
            provider=provider,
            model=model,
        )
        return parse_llm_json_dict(raw)
    except Exception as e:
        logger.error(f"Data extraction failed: {e}")
        return {}


def missing_required_fields(fields: list[ExtractField], extracted: dict[str, Any]) -> list[str]:
    """Keys of required fields whose value is missing, null, or blank."""
    missing = []
    for f in fields:
        if not f.required:
            continue
        value = extracted.get(f.key)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(f.key)
    return missing
