"""Policy match conditions and strategies.

Deterministic conditions (keyword, filename, file_type, mime_type) are plain
string tests. ``llm_verify`` and ``semantic`` ask the chat model a yes/no
question and fail closed on any model or parse error.
"""

import os
from dataclasses import dataclass
from typing import Any

from docflow.core.llm import (
    ChatProviderResolver,
    LLMService,
    find_json_object,
    parse_llm_json_dict,
    preview_llm_text,
)
from docflow.core.logging import get_logger
from docflow.core.schemas_ingestions import Trace
from docflow.core.schemas_policies import MatchCondition, Policy

logger = get_logger(__name__)

VERIFY_TEXT_LIMIT = 2000

VERIFY_SYSTEM_PROMPT = (
    'You are a document classifier. Answer with a single JSON object: '
    '{ "result": true/false, "confidence": 0.0-1.0 }'
)

# MIME subtypes whose canonical extension differs from the subtype itself
MIME_SUBTYPE_EXTENSIONS = {
    "plain": "txt",
    "markdown": "md",
    "x-markdown": "md",
    "jpeg": "jpg",
    "svg+xml": "svg",
    "vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "msword": "doc",
    "vnd.ms-excel": "xls",
    "tab-separated-values": "tsv",
    "comma-separated-values": "csv",
}


@dataclass
class DocumentObject:
    """What conditions are evaluated against."""

    file_path: str
    text: str
    mime_type: str | None = None

    @property
    def basename(self) -> str:
        return os.path.basename(self.file_path)

    @property
    def extension(self) -> str:
        _, ext = os.path.splitext(self.basename)
        return ext.lower().lstrip(".")


def mime_to_extension(mime_type: str | None) -> str | None:
    """Map ``type/subtype`` to an extension (``application/pdf`` -> ``pdf``)."""
    if not mime_type or "/" not in mime_type:
        return None
    subtype = mime_type.split("/", 1)[1].split(";", 1)[0].strip().lower()
    if not subtype:
        return None
    return MIME_SUBTYPE_EXTENSIONS.get(subtype, subtype)


def _normalize_ext(value: str) -> str:
    return value.strip().lower().lstrip(".")


def _substring_match(haystack: str, condition: MatchCondition) -> tuple[bool, str | None]:
    needles = condition.values()
    if not condition.case_sensitive:
        haystack = haystack.lower()
    for needle in needles:
        candidate = needle if condition.case_sensitive else needle.lower()
        if candidate and candidate in haystack:
            return True, needle
    return False, None


def _match_file_type(condition: MatchCondition, document: DocumentObject) -> tuple[bool, str | None]:
    candidates = {document.extension}
    mime_ext = mime_to_extension(document.mime_type)
    if mime_ext:
        candidates.add(mime_ext)
    candidates.discard("")
    for value in condition.values():
        if _normalize_ext(value) in candidates:
            return True, value
    return False, None


def _match_mime_type(condition: MatchCondition, document: DocumentObject) -> tuple[bool, str | None]:
    doc_mime = (document.mime_type or "").split(";", 1)[0].strip().lower()
    candidates = {document.extension}
    mime_ext = mime_to_extension(doc_mime)
    if mime_ext:
        candidates.add(mime_ext)
    candidates.discard("")

    for value in condition.values():
        wanted = value.strip().lower()
        if "/" in wanted:
            if wanted.endswith("/*"):
                if doc_mime and doc_mime.split("/", 1)[0] == wanted[:-2]:
                    return True, value
                continue
            if wanted == doc_mime or mime_to_extension(wanted) in candidates:
                return True, value
        elif _normalize_ext(wanted) in candidates:
            return True, value
    return False, None


class RuleEvaluator:
    """Evaluates conditions and policies, recording every outcome on the trace."""

    def __init__(self, llm: LLMService, resolver: ChatProviderResolver):
        self.llm = llm
        self.resolver = resolver

    async def evaluate_condition(
        self,
        condition: MatchCondition,
        document: DocumentObject,
        trace: Trace,
        policy_id: str | None = None,
    ) -> bool:
        """
        Evaluate one condition.

        Args:
            condition: Condition to test
            document: Document under evaluation
            trace: Trace to append the outcome to
            policy_id: Owning policy, for the trace

        Returns:
            True if the condition holds
        """
        details: dict[str, Any] = {"policy_id": policy_id, "condition": condition.type}

        if condition.type == "keyword":
            passed, hit = _substring_match(document.text, condition)
            details["matched_value"] = hit
        elif condition.type == "filename":
            passed, hit = _substring_match(document.basename, condition)
            details["matched_value"] = hit
        elif condition.type == "file_type":
            passed, hit = _match_file_type(condition, document)
            details["matched_value"] = hit
        elif condition.type == "mime_type":
            passed, hit = _match_mime_type(condition, document)
            details["matched_value"] = hit
        else:
            passed = await self._verify_with_llm(condition, document, details)

        details["result"] = passed
        trace.add(f"Condition {condition.type} {'passed' if passed else 'failed'}", details)
        return passed

    async def evaluate_policy(self, policy: Policy, document: DocumentObject, trace: Trace) -> bool:
        """ALL stops at the first failing condition, ANY at the first passing one."""
        conditions = policy.spec.match.conditions
        strategy = policy.spec.match.strategy
        if not conditions:
            # Vacuous: ALL matches everything, ANY matches nothing.
            trace.add("Policy has no conditions", {"policy_id": policy.id, "strategy": strategy})

        if strategy == "ALL":
            for condition in conditions:
                if not await self.evaluate_condition(condition, document, trace, policy.id):
                    return False
            return True

        for condition in conditions:
            if await self.evaluate_condition(condition, document, trace, policy.id):
                return True
        return False

    async def _verify_with_llm(
        self, condition: MatchCondition, document: DocumentObject, details: dict[str, Any]
    ) -> bool:
        question = condition.prompt
        if not question and condition.type == "semantic" and condition.values():
            question = f"Is this document about: {', '.join(condition.values())}?"
        if not question:
            details["reason"] = "missing_prompt"
            return False

        threshold = condition.threshold
        details["threshold"] = threshold
        try:
            choice = await self.resolver.resolve()
            raw = await self.llm.chat_complete(
                [
                    {"role": "system", "content": VERIFY_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": (
                            f"Document text:\n\n{document.text[:VERIFY_TEXT_LIMIT]}"
                            f"\n\nQuestion: {question}"
                        ),
                    },
                ],
                provider=choice.provider,
                model=choice.model,
            )
            block = find_json_object(raw)
            if block is None:
                details["reason"] = "no_json"
                details["raw"] = preview_llm_text(raw)
                return False
            parsed = parse_llm_json_dict(block)
        except Exception as e:
            logger.warning(f"{condition.type} condition failed: {e}")
            details["reason"] = "model_error"
            details["error"] = str(e)
            return False

        confidence = parsed.get("confidence", 1)
        try:
            confidence = float(confidence if confidence is not None else 1)
        except (TypeError, ValueError):
            details["reason"] = "bad_confidence"
            return False

        details["llm_result"] = parsed.get("result")
        details["confidence"] = confidence
        return parsed.get("result") is True and confidence >= threshold
