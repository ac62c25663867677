"""Policy-match learning from manual confirmations.

When a user manually assigns a policy to an ingestion, the document's
features are stored as a feedback sample. When no policy matches a new
document, samples are scored against it and the best policy is suggested if
it clears an adaptive bar.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from docflow.core.logging import get_logger
from docflow.db.policy_feedback import (
    list_feedback_for_policies,
    list_feedback_stats_rows,
    upsert_feedback,
)

logger = get_logger(__name__)

MAX_TOKENS = 120
TEXT_SAMPLE_CHARS = 1200
MAX_FLATTEN_DEPTH = 2
TOP_SCORES = 3

JACCARD_WEIGHT = 0.72
EXTENSION_MATCH, EXTENSION_MISMATCH = 0.16, -0.04
MIME_MATCH, MIME_MISMATCH = 0.08, -0.02
DOCTYPE_MATCH, DOCTYPE_MISMATCH = 0.17, -0.03
ISSUER_MATCH, ISSUER_MISMATCH = 0.14, -0.02

DOCUMENT_TYPE_KEYS = ("document_type", "doc_type", "type", "category")
ISSUER_KEYS = ("issuer", "vendor", "merchant", "store_name", "sender")

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

DecisionReason = Literal[
    "accepted",
    "no_policy_ids",
    "no_document_features",
    "no_feedback_samples",
    "no_valid_samples",
    "score_below_threshold",
    "read_error",
]


class PolicyLearningFeatures(BaseModel):
    tokens: list[str] = Field(default_factory=list)
    extension: str | None = None
    mime_type: str | None = None
    document_type: str | None = None
    issuer: str | None = None


@dataclass
class CandidateScore:
    policy_id: str
    score: float
    support: int
    required_score: float
    accepted: bool


@dataclass
class LearningDiagnostics:
    reason: DecisionReason
    evaluated_policies: int = 0
    evaluated_samples: int = 0
    best_candidate: CandidateScore | None = None
    top_candidates: list[CandidateScore] = field(default_factory=list)


@dataclass
class LearnedCandidate:
    """Result of ``resolve_learned_candidate``; ``candidate`` is None below the bar."""

    candidate: CandidateScore | None
    diagnostics: LearningDiagnostics


# =============================================================================
# Feature extraction
# =============================================================================


def _normalize(value: Any) -> str:
    if value is None:
        return ""
    return str(value).lower().strip()


def tokenize(value: Any) -> list[str]:
    normalized = _NON_ALNUM.sub(" ", _normalize(value)).strip()
    return [t for t in normalized.split() if len(t) >= 2]


def dedupe_tokens(tokens: list[str], limit: int = MAX_TOKENS) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for token in tokens:
        if token in seen:
            continue
        seen.add(token)
        out.append(token)
        if len(out) >= limit:
            break
    return out


def flatten_values(value: Any, depth: int = 0) -> list[str]:
    """Scalar values of a nested structure, at most two levels down."""
    if value is None or depth > MAX_FLATTEN_DEPTH:
        return []
    if isinstance(value, (str, int, float, bool)):
        return [str(value)]
    if isinstance(value, list):
        return [v for item in value for v in flatten_values(item, depth + 1)]
    if isinstance(value, dict):
        return [v for item in value.values() for v in flatten_values(item, depth + 1)]
    return []


def extract_extension(filename: str | None) -> str | None:
    name = _normalize(filename)
    dot = name.rfind(".")
    if dot < 0 or dot == len(name) - 1:
        return None
    return re.sub(r"[^a-z0-9]", "", name[dot + 1 :]) or None


def _first_alias(values: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        if values.get(key) is not None:
            return _normalize(values[key]) or None
    return None


def build_document_features(
    file_path: str,
    baseline_entities: dict[str, Any] | None,
    document_text: str | None = None,
) -> PolicyLearningFeatures:
    """Features of a document being processed."""
    baseline = baseline_entities or {}
    document_type = _first_alias(baseline, DOCUMENT_TYPE_KEYS)
    issuer = _first_alias(baseline, ISSUER_KEYS)

    tokens = [
        *tokenize(file_path.rsplit("/", 1)[-1]),
        *(t for value in flatten_values(baseline) for t in tokenize(value)),
        *tokenize((document_text or "")[:TEXT_SAMPLE_CHARS]),
        *(tokenize(document_type) if document_type else []),
        *(tokenize(issuer) if issuer else []),
    ]
    return PolicyLearningFeatures(
        tokens=dedupe_tokens(tokens),
        extension=extract_extension(file_path),
        document_type=document_type,
        issuer=issuer,
    )


def build_ingestion_features(ingestion: dict[str, Any]) -> PolicyLearningFeatures:
    """Features of a stored ingestion row, used when recording feedback."""
    extracted = ingestion.get("extracted") if isinstance(ingestion.get("extracted"), dict) else {}
    tags = ingestion.get("tags") if isinstance(ingestion.get("tags"), list) else []
    document_type = _first_alias(extracted, DOCUMENT_TYPE_KEYS)
    issuer = _first_alias(extracted, ISSUER_KEYS)

    without_enrichment = {k: v for k, v in extracted.items() if k != "_enrichment"}
    tokens = [
        *tokenize(ingestion.get("filename")),
        *(t for tag in tags for t in tokenize(tag)),
        *(t for value in flatten_values(without_enrichment) for t in tokenize(value)),
        *(tokenize(document_type) if document_type else []),
        *(tokenize(issuer) if issuer else []),
    ]
    return PolicyLearningFeatures(
        tokens=dedupe_tokens(tokens),
        extension=extract_extension(ingestion.get("filename")),
        mime_type=_normalize(ingestion.get("mime_type")) or None,
        document_type=document_type,
        issuer=issuer,
    )


def normalize_features(raw: Any) -> PolicyLearningFeatures | None:
    """Parse a stored feature blob. None when it carries no tokens."""
    if not isinstance(raw, dict):
        return None
    raw_tokens = raw.get("tokens") if isinstance(raw.get("tokens"), list) else []
    tokens = dedupe_tokens([t for t in (_normalize(v) for v in raw_tokens) if t])
    if not tokens:
        return None
    return PolicyLearningFeatures(
        tokens=tokens,
        extension=_normalize(raw.get("extension")) or None,
        mime_type=_normalize(raw.get("mime_type")) or None,
        document_type=_normalize(raw.get("document_type")) or None,
        issuer=_normalize(raw.get("issuer")) or None,
    )


# =============================================================================
# Scoring
# =============================================================================


def jaccard(tokens_a: list[str], tokens_b: list[str]) -> float:
    set_a, set_b = set(tokens_a), set(tokens_b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def soft_match(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a == b or a in b or b in a


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def required_score(support: int) -> float:
    return 0.72 if support >= 2 else 0.82


def score_pair(doc: PolicyLearningFeatures, sample: PolicyLearningFeatures) -> float:
    score = jaccard(doc.tokens, sample.tokens) * JACCARD_WEIGHT

    if doc.extension and sample.extension:
        score += EXTENSION_MATCH if doc.extension == sample.extension else EXTENSION_MISMATCH
    if doc.mime_type and sample.mime_type:
        score += MIME_MATCH if doc.mime_type == sample.mime_type else MIME_MISMATCH
    if doc.document_type and sample.document_type:
        score += DOCTYPE_MATCH if soft_match(doc.document_type, sample.document_type) else DOCTYPE_MISMATCH
    if doc.issuer and sample.issuer:
        score += ISSUER_MATCH if soft_match(doc.issuer, sample.issuer) else ISSUER_MISMATCH

    return _clamp(score)


def score_candidate(policy_id: str, scores: list[float]) -> CandidateScore:
    """Average of the best three samples plus a small boost for sample count."""
    ranked = sorted(scores, reverse=True)
    top = ranked[:TOP_SCORES]
    support = len(ranked)
    score = _clamp(sum(top) / len(top) + min(0.08, (support - 1) * 0.02))
    needed = required_score(support)
    return CandidateScore(
        policy_id=policy_id,
        score=score,
        support=support,
        required_score=needed,
        accepted=score >= needed,
    )


def resolve_learned_candidate(
    user_id: str,
    policy_ids: list[str],
    file_path: str,
    baseline_entities: dict[str, Any] | None,
    document_text: str | None = None,
) -> LearnedCandidate:
    """
    Suggest a policy for a document no policy matched.

    Args:
        user_id: Owner
        policy_ids: Policies eligible for suggestion
        file_path: Document path (base name and extension are features)
        baseline_entities: Baseline extraction output
        document_text: Raw text (first characters only)

    Returns:
        LearnedCandidate with diagnostics explaining the decision
    """
    if not policy_ids:
        return LearnedCandidate(None, LearningDiagnostics(reason="no_policy_ids"))

    doc = build_document_features(file_path, baseline_entities, document_text)
    if not doc.tokens:
        return LearnedCandidate(
            None, LearningDiagnostics(reason="no_document_features", evaluated_policies=len(policy_ids))
        )

    try:
        rows = list_feedback_for_policies(user_id, policy_ids)
    except Exception as e:
        logger.warning(f"Failed to read policy learning feedback: {e}", extra={"user_id": user_id})
        return LearnedCandidate(
            None, LearningDiagnostics(reason="read_error", evaluated_policies=len(policy_ids))
        )

    if not rows:
        return LearnedCandidate(
            None, LearningDiagnostics(reason="no_feedback_samples", evaluated_policies=len(policy_ids))
        )

    by_policy: dict[str, list[float]] = {}
    valid_samples = 0
    for row in rows:
        sample = normalize_features(row.get("features"))
        if sample is None or not row.get("policy_id"):
            continue
        by_policy.setdefault(row["policy_id"], []).append(score_pair(doc, sample))
        valid_samples += 1

    if not by_policy:
        return LearnedCandidate(
            None,
            LearningDiagnostics(
                reason="no_valid_samples",
                evaluated_policies=len(policy_ids),
                evaluated_samples=valid_samples,
            ),
        )

    candidates = sorted(
        (score_candidate(policy_id, scores) for policy_id, scores in by_policy.items()),
        key=lambda c: c.score,
        reverse=True,
    )
    best = candidates[0]
    diagnostics = LearningDiagnostics(
        reason="accepted" if best.accepted else "score_below_threshold",
        evaluated_policies=len(by_policy),
        evaluated_samples=valid_samples,
        best_candidate=best,
        top_candidates=candidates[:3],
    )

    if not best.accepted:
        return LearnedCandidate(None, diagnostics)

    logger.info(
        f"Resolved learned policy candidate {best.policy_id} "
        f"(score: {best.score:.3f}, support: {best.support})",
        extra={"user_id": user_id},
    )
    return LearnedCandidate(best, diagnostics)


# =============================================================================
# Feedback
# =============================================================================


def record_manual_match(
    user_id: str, ingestion: dict[str, Any], policy_id: str, policy_name: str | None = None
) -> bool:
    """Store a manual match as a learning sample. Returns False when nothing was saved."""
    features = build_ingestion_features(ingestion)
    if not features.tokens:
        logger.warning(
            f"Skipping policy learning feedback for {policy_id}: no usable tokens",
            extra={"ingestion_id": ingestion.get("id")},
        )
        return False

    try:
        upsert_feedback(
            user_id=user_id,
            ingestion_id=ingestion["id"],
            policy_id=policy_id,
            policy_name=policy_name,
            features=features.model_dump(),
        )
    except Exception as e:
        logger.error(
            f"Failed to save policy match feedback: {e}", extra={"ingestion_id": ingestion.get("id")}
        )
        return False

    logger.info(
        f"Saved policy learning feedback for {policy_id} ({len(features.tokens)} tokens)",
        extra={"ingestion_id": ingestion.get("id")},
    )
    return True


def get_policy_learning_stats(
    user_id: str, policy_ids: list[str] | None = None
) -> dict[str, dict[str, Any]]:
    """Per-policy sample count and most recent sample time."""
    normalized = [p.strip() for p in (policy_ids or []) if p and p.strip()]
    try:
        rows = list_feedback_stats_rows(user_id, normalized or None)
    except Exception as e:
        logger.warning(f"Failed to read policy learning stats: {e}", extra={"user_id": user_id})
        return {}

    stats: dict[str, dict[str, Any]] = {}
    for row in rows:
        policy_id = row.get("policy_id")
        if not isinstance(policy_id, str) or not policy_id:
            continue
        created_at = row.get("created_at") if isinstance(row.get("created_at"), str) else None
        entry = stats.setdefault(policy_id, {"samples": 0, "last_sample_at": None})
        entry["samples"] += 1
        if entry["last_sample_at"] is None and created_at:
            entry["last_sample_at"] = created_at
    return stats
