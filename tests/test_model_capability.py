"""Tests for learned vision capability."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from docflow.core.model_capability import (
    capability_key,
    classify_vision_failure,
    learn_vision_failure,
    learn_vision_success,
    resolve_vision_support,
    set_manual_override,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class _APIError(Exception):
    def __init__(self, message: str, status_code: int | None = None, body: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class _Store:
    """In-memory vision_model_capabilities column."""

    def __init__(self, initial: dict | None = None):
        self.capabilities: dict = dict(initial or {})
        self.writes = 0

    def get(self, user_id):
        return dict(self.capabilities)

    def upsert(self, user_id, capabilities):
        self.writes += 1
        self.capabilities = dict(capabilities)


@pytest.fixture
def store():
    store = _Store()
    with (
        patch("docflow.core.model_capability.get_vision_capabilities", side_effect=store.get),
        patch("docflow.core.model_capability.upsert_vision_capabilities", side_effect=store.upsert),
    ):
        yield store


def _row(store: _Store, provider: str = "openai", model: str = "gpt-4o-mini") -> dict:
    return {"llm_provider": provider, "llm_model": model, "vision_model_capabilities": store.capabilities}


CAPABILITY_ERROR = {"status": 400, "message": "This model does not support image inputs"}


# =============================================================================
# Resolution
# =============================================================================


class TestResolveVisionSupport:
    def test_unknown_without_record(self):
        resolution = resolve_vision_support({"llm_provider": "openai", "llm_model": "gpt-4o"})
        assert resolution.state == "unknown"
        assert resolution.should_attempt is True

    def test_defaults_from_config(self):
        resolution = resolve_vision_support(None)
        assert (resolution.provider, resolution.model) == ("openai", "gpt-4o-mini")

    def test_expired_record_reads_unknown(self):
        row = {
            "llm_provider": "openai",
            "llm_model": "gpt-4o",
            "vision_model_capabilities": {
                "openai:gpt-4o": {"state": "unsupported", "expires_at": (NOW - timedelta(seconds=1)).isoformat()}
            },
        }
        assert resolve_vision_support(row, now=NOW).should_attempt is True

    def test_pdf_modality_uses_separate_key(self):
        assert capability_key(" OpenAI", "GPT-4o ", "pdf") == "openai:gpt-4o:pdf"
        row = {
            "llm_provider": "openai",
            "llm_model": "gpt-4o",
            "vision_model_capabilities": {"openai:gpt-4o": {"state": "unsupported"}},
        }
        assert resolve_vision_support(row, modality="pdf").state == "unknown"
        assert resolve_vision_support(row, modality="image").state == "unsupported"


# =============================================================================
# Classification
# =============================================================================


class TestClassifyVisionFailure:
    def test_capability_phrase_with_client_status(self):
        result = classify_vision_failure(CAPABILITY_ERROR)
        assert result.is_capability_error
        assert result.reason == "capability_mismatch"
        assert "msg:does not support image inputs" in result.evidence

    def test_rate_limit_is_transient(self):
        result = classify_vision_failure({"status": 429, "message": "does not support images"})
        assert not result.is_capability_error
        assert result.reason == "transient_or_auth"

    def test_payload_too_large_is_document_specific(self):
        result = classify_vision_failure({"status": 413, "message": "vision not supported"})
        assert result.reason == "document_specific_failure"

    def test_invalid_base64_with_422(self):
        result = classify_vision_failure({"status": 422, "message": "Invalid base64 image data"})
        assert result.reason == "document_specific_failure"

    def test_nested_capability_code(self):
        result = classify_vision_failure({"error": {"code": "image_not_supported", "message": "nope"}})
        assert result.is_capability_error
        assert "code:image_not_supported" in result.evidence

    def test_exception_attributes_are_read(self):
        error = _APIError("Bad request", status_code=400, body={"error": {"message": "Vision is not supported"}})
        assert classify_vision_failure(error).is_capability_error

    def test_chained_cause_is_read(self):
        try:
            try:
                raise _APIError("upstream", status_code=400, body={"code": "vision_not_supported"})
            except _APIError as inner:
                raise RuntimeError("request failed") from inner
        except RuntimeError as outer:
            assert classify_vision_failure(outer).is_capability_error

    def test_code_two_levels_down_is_read(self):
        result = classify_vision_failure({"error": {"error": {"code": "vision_not_supported"}}})
        assert "code:vision_not_supported" in result.evidence

    def test_code_three_levels_down_ignored(self):
        result = classify_vision_failure({"error": {"error": {"error": {"code": "vision_not_supported"}}}})
        assert not result.is_capability_error
        assert "code:vision_not_supported" not in result.evidence

    def test_weak_hints_alone_insufficient(self):
        result = classify_vision_failure({"status": 400, "message": "vision request rejected"})
        assert result.reason == "insufficient_capability_evidence"
        assert result.score == 2

    def test_provider_phrase_scoped_to_provider(self):
        error = {"status": 400, "message": "image_url is only supported by certain models"}
        assert classify_vision_failure(error, "openai").is_capability_error
        assert not classify_vision_failure(error, "anthropic").is_capability_error


# =============================================================================
# Learning
# =============================================================================


class TestLearnVision:
    def test_two_failures_inside_window_confirm(self, store):
        assert learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=NOW) == "unknown"
        assert store.capabilities["openai:gpt-4o-mini"]["state"] == "pending_unsupported"
        assert resolve_vision_support(_row(store), now=NOW).should_attempt is True

        later = NOW + timedelta(hours=1)
        assert learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=later) == "unsupported"
        record = store.capabilities["openai:gpt-4o-mini"]
        assert record["failure_count"] == 2
        assert resolve_vision_support(_row(store), now=later).should_attempt is False

    def test_failure_outside_window_restarts_count(self, store):
        learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=NOW)

        later = NOW + timedelta(hours=25)
        assert learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=later) == "unknown"
        assert store.capabilities["openai:gpt-4o-mini"]["failure_count"] == 1

    def test_transient_failure_never_writes(self, store):
        learn_vision_failure("user-1", "openai", "gpt-4o-mini", {"status": 503, "message": "overloaded"}, now=NOW)
        assert store.writes == 0

    def test_success_clears_pending(self, store):
        learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=NOW)
        learn_vision_success("user-1", "openai", "gpt-4o-mini", now=NOW)

        record = store.capabilities["openai:gpt-4o-mini"]
        assert record["state"] == "supported"
        assert "failure_count" not in record
        assert resolve_vision_support(_row(store), now=NOW).state == "supported"

    def test_unsupported_expires_after_thirty_days(self, store):
        learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=NOW)
        learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=NOW)

        assert resolve_vision_support(_row(store), now=NOW + timedelta(days=29)).state == "unsupported"
        assert resolve_vision_support(_row(store), now=NOW + timedelta(days=31)).state == "unknown"

    def test_manual_override_is_not_overwritten(self, store):
        set_manual_override("user-1", "openai", "gpt-4o-mini", "supported", now=NOW)

        learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=NOW)
        learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=NOW)

        assert store.capabilities["openai:gpt-4o-mini"]["reason"] == "manual_override"
        assert resolve_vision_support(_row(store), now=NOW).state == "supported"

    def test_other_keys_preserved(self, store):
        store.capabilities["anthropic:claude"] = {"state": "supported"}
        learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, modality="pdf", now=NOW)

        assert "anthropic:claude" in store.capabilities
        assert "openai:gpt-4o-mini:pdf" in store.capabilities

    def test_read_failure_returns_unknown(self):
        with (
            patch("docflow.core.model_capability.get_vision_capabilities", side_effect=Exception("db down")),
            patch("docflow.core.model_capability.upsert_vision_capabilities") as mock_upsert,
        ):
            assert learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR) == "unknown"
        mock_upsert.assert_not_called()

    def test_write_failure_returns_unknown(self, store):
        learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=NOW)
        with patch("docflow.core.model_capability.upsert_vision_capabilities", side_effect=Exception("db down")):
            result = learn_vision_failure("user-1", "openai", "gpt-4o-mini", CAPABILITY_ERROR, now=NOW)
        assert result == "unknown"
