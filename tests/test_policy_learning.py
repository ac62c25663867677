"""Tests for learning policy matches from manual confirmations."""

from unittest.mock import patch

from docflow.core.policy_learning import (
    PolicyLearningFeatures,
    build_document_features,
    build_ingestion_features,
    get_policy_learning_stats,
    normalize_features,
    record_manual_match,
    resolve_learned_candidate,
    score_candidate,
    score_pair,
)

ACME_FEATURES = {
    "tokens": ["acme", "invoice", "pdf"],
    "extension": "pdf",
    "document_type": "invoice",
    "issuer": "acme",
}
ACME_BASELINE = {"issuer": "Acme", "document_type": "Invoice"}


def _feedback(policy_id: str, features: dict) -> dict:
    return {"policy_id": policy_id, "features": features}


# =============================================================================
# Features
# =============================================================================


class TestFeatures:
    def test_document_features(self):
        features = build_document_features("/inbox/ACME_invoice.pdf", ACME_BASELINE, "Total due: 42")

        assert features.extension == "pdf"
        assert features.document_type == "invoice"
        assert features.issuer == "acme"
        assert features.tokens[:3] == ["acme", "invoice", "pdf"]
        assert "total" in features.tokens
        assert "42" in features.tokens

    def test_single_character_tokens_dropped(self):
        features = build_document_features("/x/a.b", {}, None)
        assert features.tokens == []

    def test_ingestion_features_skip_enrichment(self):
        ingestion = {
            "id": "ing-1",
            "filename": "acme.pdf",
            "mime_type": "Application/PDF",
            "tags": ["Bills"],
            "extracted": {"vendor": "Acme", "_enrichment": {"summary": "hidden words"}},
        }

        features = build_ingestion_features(ingestion)

        assert features.tokens == ["acme", "pdf", "bills"]
        assert features.mime_type == "application/pdf"
        assert features.issuer == "acme"

    def test_normalize_rejects_tokenless_blobs(self):
        assert normalize_features({"tokens": []}) is None
        assert normalize_features("nope") is None
        assert normalize_features({"tokens": ["A", "a", " "]}).tokens == ["a"]


class TestScoring:
    def test_identical_features_score_one(self):
        features = PolicyLearningFeatures(**ACME_FEATURES)
        assert score_pair(features, features) == 1.0

    def test_mismatches_penalize(self):
        doc = PolicyLearningFeatures(tokens=["a1"], extension="pdf", document_type="invoice")
        sample = PolicyLearningFeatures(tokens=["b2"], extension="png", document_type="receipt")
        assert score_pair(doc, sample) == 0.0

    def test_support_lowers_bar(self):
        single = score_candidate("p", [0.75])
        assert single.required_score == 0.82
        assert not single.accepted

        double = score_candidate("p", [0.75, 0.7])
        assert double.required_score == 0.72
        assert double.accepted


# =============================================================================
# Resolution
# =============================================================================


class TestResolveLearnedCandidate:
    def test_accepts_strong_candidate(self):
        rows = [_feedback("invoices", ACME_FEATURES), _feedback("invoices", ACME_FEATURES)]

        with patch("docflow.core.policy_learning.list_feedback_for_policies", return_value=rows):
            result = resolve_learned_candidate("user-1", ["invoices"], "/inbox/acme_invoice.pdf", ACME_BASELINE)

        assert result.candidate.policy_id == "invoices"
        assert result.diagnostics.reason == "accepted"
        assert result.diagnostics.evaluated_samples == 2

    def test_weak_candidate_rejected(self):
        rows = [_feedback("payroll", {"tokens": ["payslip", "salary"], "extension": "pdf"})]

        with patch("docflow.core.policy_learning.list_feedback_for_policies", return_value=rows):
            result = resolve_learned_candidate("user-1", ["payroll"], "/inbox/acme_invoice.pdf", ACME_BASELINE)

        assert result.candidate is None
        assert result.diagnostics.reason == "score_below_threshold"
        assert result.diagnostics.best_candidate.policy_id == "payroll"

    def test_best_policy_wins(self):
        rows = [
            _feedback("payroll", {"tokens": ["payslip", "salary"]}),
            _feedback("invoices", ACME_FEATURES),
        ]

        with patch("docflow.core.policy_learning.list_feedback_for_policies", return_value=rows):
            result = resolve_learned_candidate("user-1", ["payroll", "invoices"], "/inbox/acme_invoice.pdf", ACME_BASELINE)

        assert [c.policy_id for c in result.diagnostics.top_candidates] == ["invoices", "payroll"]

    def test_no_policy_ids(self):
        assert resolve_learned_candidate("user-1", [], "/a.pdf", {}).diagnostics.reason == "no_policy_ids"

    def test_no_document_features(self):
        result = resolve_learned_candidate("user-1", ["p"], "/x/a", {})
        assert result.diagnostics.reason == "no_document_features"

    def test_read_error(self):
        with patch("docflow.core.policy_learning.list_feedback_for_policies", side_effect=Exception("db down")):
            result = resolve_learned_candidate("user-1", ["p"], "/inbox/acme.pdf", ACME_BASELINE)
        assert result.diagnostics.reason == "read_error"

    def test_no_samples_and_invalid_samples(self):
        with patch("docflow.core.policy_learning.list_feedback_for_policies", return_value=[]):
            empty = resolve_learned_candidate("user-1", ["p"], "/inbox/acme.pdf", ACME_BASELINE)
        with patch(
            "docflow.core.policy_learning.list_feedback_for_policies",
            return_value=[_feedback("p", {"tokens": []}), {"features": ACME_FEATURES}],
        ):
            invalid = resolve_learned_candidate("user-1", ["p"], "/inbox/acme.pdf", ACME_BASELINE)

        assert empty.diagnostics.reason == "no_feedback_samples"
        assert invalid.diagnostics.reason == "no_valid_samples"


# =============================================================================
# Feedback
# =============================================================================


class TestFeedback:
    def test_record_manual_match(self):
        ingestion = {"id": "ing-1", "filename": "acme.pdf", "extracted": {"issuer": "Acme"}}

        with patch("docflow.core.policy_learning.upsert_feedback") as mock_upsert:
            assert record_manual_match("user-1", ingestion, "invoices", "Invoices") is True

        kwargs = mock_upsert.call_args.kwargs
        assert kwargs["ingestion_id"] == "ing-1"
        assert kwargs["policy_id"] == "invoices"
        assert kwargs["features"]["tokens"] == ["acme", "pdf"]

    def test_record_without_tokens_skipped(self):
        with patch("docflow.core.policy_learning.upsert_feedback") as mock_upsert:
            assert record_manual_match("user-1", {"id": "ing-1", "filename": "x"}, "p") is False
        mock_upsert.assert_not_called()

    def test_record_store_failure(self):
        with patch("docflow.core.policy_learning.upsert_feedback", side_effect=Exception("db down")):
            assert record_manual_match("user-1", {"id": "ing-1", "filename": "acme.pdf"}, "p") is False

    def test_stats(self):
        rows = [
            {"policy_id": "a", "created_at": "2025-02-01T00:00:00Z"},
            {"policy_id": "a", "created_at": "2025-01-01T00:00:00Z"},
            {"policy_id": "b"},
            {"policy_id": None},
        ]

        with patch("docflow.core.policy_learning.list_feedback_stats_rows", return_value=rows) as mock_rows:
            stats = get_policy_learning_stats("user-1", [" a ", "b", ""])

        mock_rows.assert_called_once_with("user-1", ["a", "b"])
        assert stats == {
            "a": {"samples": 2, "last_sample_at": "2025-02-01T00:00:00Z"},
            "b": {"samples": 1, "last_sample_at": None},
        }
