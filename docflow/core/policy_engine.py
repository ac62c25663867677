"""Policy engine: first matching policy wins.

Per document: evaluate policies in ascending priority; on the first match
extract fields, gate on required fields, then run the actuator. When nothing
matches the result is ``fallback``.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Literal

from docflow.core.actuator import Actuator
from docflow.core.errors import PolicyValidationError
from docflow.core.extractor import extract_fields, missing_required_fields
from docflow.core.llm import ChatProviderResolver, LLMService, parse_llm_json_dict, preview_llm_text
from docflow.core.logging import get_logger
from docflow.core.policy_loader import validate_policy
from docflow.core.rule_evaluator import DocumentObject, RuleEvaluator
from docflow.core.schemas_ingestions import Trace
from docflow.core.schemas_policies import Policy, sort_by_priority

logger = get_logger(__name__)

FALLBACK_ACTION = "Moved to /_Needs_Review"

SYNTHESIS_SYSTEM_PROMPT = """You are a Folio Policy Engine expert. Convert natural language descriptions into a valid FolioPolicy JSON object.

Return ONLY a valid JSON object with this exact shape (no markdown, no backticks):
{
  "apiVersion": "folio/v1",
  "kind": "Policy",
  "metadata": { "id": "kebab-case-id", "name": "Human Name", "version": "1.0.0", "description": "Brief description", "priority": 100, "tags": ["tag1"], "enabled": true },
  "spec": {
    "match": { "strategy": "ALL", "conditions": [{ "type": "keyword", "value": ["keyword1", "keyword2"], "case_sensitive": false }] },
    "extract": [{ "key": "field_name", "type": "string", "description": "what to extract", "required": true }],
    "actions": [{ "type": "move", "config": { "destination": "/path/to/folder" } }]
  }
}"""


@dataclass
class ProcessingResult:
    status: Literal["matched", "error", "fallback"]
    file_path: str
    matched_policy_id: str | None = None
    matched_policy_name: str | None = None
    extracted: dict[str, Any] = field(default_factory=dict)
    actions_executed: list[str] = field(default_factory=list)
    error: str | None = None
    final_file_path: str | None = None


@dataclass
class SynthesisResult:
    policy: dict[str, Any] | None
    error: str | None = None
    raw: str | None = None


def merge_extracted(baseline: dict[str, Any] | None, extracted: dict[str, Any]) -> dict[str, Any]:
    """Baseline entities underneath; non-null policy values win on collision."""
    merged = dict(baseline or {})
    for key, value in extracted.items():
        if value is not None or key not in merged:
            merged[key] = value
    return merged


class PolicyEngine:
    def __init__(self, llm: LLMService, resolver: ChatProviderResolver, actuator: Actuator):
        self.llm = llm
        self.resolver = resolver
        self.actuator = actuator
        self.evaluator = RuleEvaluator(llm, resolver)

    async def process(
        self,
        document: DocumentObject,
        policies: list[Policy],
        trace: Trace,
        ingestion_id: str,
        user_id: str,
        baseline_entities: dict[str, Any] | None = None,
    ) -> ProcessingResult:
        """
        Match a document against policies and act on the first match.

        Args:
            document: Document (text already carries the extracted-fields section)
            policies: Candidate policies, any order
            trace: Ingestion trace
            ingestion_id: Ingestion being processed
            user_id: Owner
            baseline_entities: Entities merged beneath policy fields

        Returns:
            ProcessingResult with status matched, error or fallback
        """
        logger.info(f"Processing document: {document.file_path}", extra={"ingestion_id": ingestion_id})
        trace.add("Policy Matching", {"policies": len(policies)})

        for policy in sort_by_priority(policies):
            try:
                matched = await self.evaluator.evaluate_policy(policy, document, trace)
            except Exception as e:
                logger.error(f"Error evaluating policy {policy.id}: {e}", extra={"ingestion_id": ingestion_id})
                trace.add("Policy evaluation error", {"policy_id": policy.id, "error": str(e)})
                continue

            if not matched:
                trace.add("Policy did not match", {"policy_id": policy.id})
                continue

            logger.info(
                f"Matched policy: {policy.id} (priority: {policy.priority})",
                extra={"ingestion_id": ingestion_id},
            )
            trace.add("Policy matched", {"policy_id": policy.id, "priority": policy.priority})
            return await self.run_policy(
                policy, document, trace, ingestion_id, user_id, baseline_entities
            )

        logger.info("No policy matched, routing to fallback", extra={"ingestion_id": ingestion_id})
        trace.add("No policy matched", {"fallback": FALLBACK_ACTION})
        return ProcessingResult(
            status="fallback",
            file_path=document.file_path,
            actions_executed=[FALLBACK_ACTION],
        )

    async def run_policy(
        self,
        policy: Policy,
        document: DocumentObject,
        trace: Trace,
        ingestion_id: str,
        user_id: str,
        baseline_entities: dict[str, Any] | None = None,
    ) -> ProcessingResult:
        """Extraction, required-field gate and actions for an already chosen policy."""
        fields = policy.spec.extract
        choice = await self.resolver.resolve()
        extracted = await extract_fields(fields, document.text, self.llm, choice.provider, choice.model)
        trace.add("Extracted fields", {"policy_id": policy.id, "keys": sorted(extracted.keys())})

        # Baseline entities never satisfy a required policy field.
        missing = missing_required_fields(fields, extracted)
        merged = merge_extracted(baseline_entities, extracted)
        if missing:
            message = f"Missing required fields: {', '.join(missing)}"
            logger.warning(f"{message}, routing to human review", extra={"ingestion_id": ingestion_id})
            trace.add("Required fields missing", {"policy_id": policy.id, "missing": missing})
            return ProcessingResult(
                status="error",
                file_path=document.file_path,
                matched_policy_id=policy.id,
                matched_policy_name=policy.name,
                extracted=merged,
                error=message,
            )

        actuated = await self.actuator.execute(
            ingestion_id=ingestion_id,
            user_id=user_id,
            file_path=document.file_path,
            actions=policy.spec.actions,
            data=merged,
            fields=fields,
            trace=trace,
        )

        return ProcessingResult(
            status="matched",
            file_path=document.file_path,
            matched_policy_id=policy.id,
            matched_policy_name=policy.name,
            extracted=merged,
            actions_executed=actuated.actions_executed,
            error=actuated.errors[0] if actuated.errors else None,
            final_file_path=actuated.file_state.path if actuated.file_state else None,
        )

    async def synthesize_policy(
        self, description: str, provider: str | None = None, model: str | None = None
    ) -> SynthesisResult:
        """
        Draft a policy from a natural-language description.

        Never raises. A draft that fails validation is still returned, with
        a warning in ``error``.
        """
        try:
            choice = await self.resolver.resolve(provider, model)
            logger.info(f"Synthesizing policy via {choice.provider}/{choice.model}")
            raw = await self.llm.chat_complete(
                [
                    {"role": "system", "content": SYNTHESIS_SYSTEM_PROMPT},
                    {"role": "user", "content": f"Create a policy for: {description}"},
                ],
                provider=choice.provider,
                model=choice.model,
            )
        except Exception as e:
            logger.error(f"Policy synthesis failed: {e}")
            return SynthesisResult(policy=None, error=str(e))

        if not raw.strip():
            return SynthesisResult(policy=None, error="LLM returned empty response", raw=raw)

        try:
            parsed = parse_llm_json_dict(raw)
        except (json.JSONDecodeError, ValueError):
            logger.error(f"Synthesis response was not valid JSON: {preview_llm_text(raw)}")
            return SynthesisResult(policy=None, error="LLM response was not valid JSON", raw=raw)

        try:
            validate_policy(parsed)
        except PolicyValidationError as e:
            logger.warning(f"Synthesized policy failed validation, returning as draft: {e}")
            return SynthesisResult(
                policy=parsed,
                error="Policy schema may be incomplete, please review before saving",
                raw=raw,
            )
        return SynthesisResult(policy=parsed, raw=raw)
