"""Variable derivation, template interpolation and filename helpers."""

import json
import os
import re
from typing import Any

from dateutil import parser as dateutil_parser

from docflow.core.logging import get_logger
from docflow.core.schemas_policies import ExtractField, PolicyAction

logger = get_logger(__name__)

_TOKEN = re.compile(r"\{([^{}]+)\}")

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ", ".join(_stringify(v) for v in value if v is not None)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def derive_variables(data: dict[str, Any], fields: list[ExtractField]) -> dict[str, str]:
    """
    Build the interpolation variables for a set of extracted values.

    Every non-null value is stringified, then each field's transformers add
    derived keys (``get_year`` -> ``YYYY``, ``get_month`` -> ``MM``,
    ``get_month_name`` -> English month name). A transformer whose input is
    not a parseable date is skipped.
    """
    variables = {k: _stringify(v) for k, v in data.items() if v is not None}

    for f in fields:
        raw = variables.get(f.key)
        if not f.transformers or not raw:
            continue
        for t in f.transformers:
            try:
                parsed = dateutil_parser.parse(raw)
            except (ValueError, OverflowError) as e:
                logger.warning(f"Transformer '{t.name}' failed for key '{f.key}': {e}")
                continue
            if t.name == "get_year":
                variables[t.as_] = f"{parsed.year:04d}"
            elif t.name == "get_month":
                variables[t.as_] = f"{parsed.month:02d}"
            elif t.name == "get_month_name":
                variables[t.as_] = MONTH_NAMES[parsed.month - 1]

    return variables


def _maybe_parse_json(value: Any) -> Any:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not (
        (trimmed.startswith("{") and trimmed.endswith("}"))
        or (trimmed.startswith("[") and trimmed.endswith("]"))
    ):
        return None
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        return None


def _tokenize_path(path: str) -> list[str | int]:
    """``vendor.items[0].name`` -> ['vendor', 'items', 0, 'name']."""
    tokens: list[str | int] = []
    i = 0
    while i < len(path):
        ch = path[i]
        if ch == ".":
            i += 1
            continue
        if ch == "[":
            end = path.find("]", i + 1)
            if end < 0:
                break
            raw = path[i + 1 : end].strip()
            if raw.isdigit():
                tokens.append(int(raw))
            else:
                unquoted = raw.strip("\"'")
                if unquoted:
                    tokens.append(unquoted)
            i = end + 1
            continue
        j = i
        while j < len(path) and path[j] not in ".[":
            j += 1
        token = path[i:j].strip()
        if token:
            tokens.append(token)
        i = j
    return tokens


def get_nested_variable(
    key_path: str, variables: dict[str, str], data: dict[str, Any] | None = None
) -> str | None:
    """Resolve ``key`` or a dotted/indexed path. Returns None when unresolved."""
    key = key_path.strip()
    if not key:
        return None
    if key in variables:
        return variables[key]

    tokens = _tokenize_path(key)
    if not tokens:
        return None

    current: Any = {**(data or {}), **variables}
    for token in tokens:
        if isinstance(current, str):
            parsed = _maybe_parse_json(current)
            if parsed is not None:
                current = parsed

        if isinstance(current, list):
            if not isinstance(token, int) or token >= len(current):
                return None
            current = current[token]
        elif isinstance(current, dict):
            current = current.get(str(token))
        else:
            return None

    if current is None:
        return None
    if isinstance(current, (dict, list)):
        return json.dumps(current)
    return _stringify(current)


def interpolate(template: str, variables: dict[str, str], data: dict[str, Any] | None = None) -> str:
    """Replace ``{token}`` placeholders. Unresolved tokens stay literal."""

    def _replace(match: re.Match) -> str:
        resolved = get_nested_variable(match.group(1), variables, data)
        return match.group(0) if resolved is None else resolved

    return _TOKEN.sub(_replace, template)


def pick_string(action: PolicyAction, key: str) -> str | None:
    """Non-blank string config value (legacy keys are already folded into config)."""
    value = action.config.get(key)
    if isinstance(value, str) and value.strip():
        return value
    extra = (action.model_extra or {}).get(key)
    if isinstance(extra, str) and extra.strip():
        return extra
    return None


def pick_columns(action: PolicyAction, fallback: list[str]) -> list[str]:
    """Columns as a list or comma-separated string, else the fallback."""
    value = action.config.get("columns")
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return fallback


def split_name(name: str) -> tuple[str, str]:
    """``report.final.pdf`` -> ('report.final', '.pdf')."""
    stem, ext = os.path.splitext(name)
    return stem, ext


def derive_name_from_variables(variables: dict[str, str]) -> str | None:
    """``YYYY-MM-DD_Issuer_DocType[_amount]`` from whatever parts are present."""
    parts: list[str] = []

    if variables.get("date"):
        try:
            parts.append(dateutil_parser.parse(variables["date"]).strftime("%Y-%m-%d"))
        except (ValueError, OverflowError):
            pass

    if variables.get("issuer"):
        issuer = re.sub(r"[^a-zA-Z0-9]+", "-", variables["issuer"]).strip("-")
        if issuer:
            parts.append(issuer)

    if variables.get("document_type"):
        doc_type = re.sub(r"[^a-zA-Z0-9-]+", "", re.sub(r"\s+", "-", variables["document_type"]))
        if doc_type:
            parts.append(doc_type)

    amount = variables.get("amount") or variables.get("total_amount")
    if amount:
        cleaned = re.sub(r"[^0-9.$€£]", "", amount)
        if cleaned:
            parts.append(cleaned)

    return "_".join(parts) if parts else None


def resolve_filename(
    filename_config: str | None,
    variables: dict[str, str],
    original_stem: str,
    ext: str,
    data: dict[str, Any] | None = None,
) -> str:
    """
    Final filename for rename/copy.

    Modes:
        None / "" / "original": keep the original name
        "auto": derived name, else suggested_filename, else original stem
        anything else: interpolation pattern
    The original extension is always kept.
    """
    if not filename_config or filename_config == "original":
        return original_stem + ext

    if filename_config == "auto":
        name = (
            derive_name_from_variables(variables)
            or (variables.get("suggested_filename") or "").strip()
            or original_stem
        )
    else:
        name = interpolate(filename_config, variables, data)

    return name if name.endswith(ext) else name + ext
