"""Tests for the ingestion orchestrator.

The ingestions table is replaced by an in-memory store; the LLM is scripted.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from docflow.core.errors import NotFoundError
from docflow.core.ingestion import IngestionOrchestrator
from docflow.core.policy_learning import CandidateScore, LearnedCandidate, LearningDiagnostics
from docflow.db.ingestions import compute_file_hash
from docflow.db.jobs import HeavyPathJob
from tests.fakes.fake_llm import FakeLLM
from tests.fixtures_policies import make_policy

INVOICE_TEXT = b"Invoice from Acme Corp. Total due: 42.00 EUR"
BASELINE_REPLY = json.dumps(
    {"entities": {"issuer": "Acme Corp", "document_type": "invoice", "amount": 42}, "uncertain_fields": []}
)
NO_CANDIDATE = LearnedCandidate(None, LearningDiagnostics(reason="no_feedback_samples"))


class _IngestionStore:
    """In-memory stand-in for the ingestions table."""

    def __init__(self):
        self.rows: dict[str, dict] = {}

    def create(self, **kwargs):
        row = {
            "id": f"ing-{len(self.rows) + 1}",
            "status": "processing",
            "extracted": {},
            "actions_taken": [],
            "trace": [],
            "tags": [],
            **kwargs,
        }
        self.rows[row["id"]] = row
        return dict(row)

    def seed(self, **kwargs):
        return self.create(user_id="user-1", **kwargs)

    def get(self, ingestion_id, user_id):
        row = self.rows.get(ingestion_id)
        return dict(row) if row and row["user_id"] == user_id else None

    def update(self, ingestion_id, user_id, updates):
        row = self.rows.get(ingestion_id)
        if row is None:
            return None
        row.update(updates)
        return dict(row)

    def find_by_hash(self, user_id, file_hash):
        return next(
            (dict(r) for r in self.rows.values() if r["user_id"] == user_id and r.get("file_hash") == file_hash),
            None,
        )


class _Env:
    def __init__(self, store, schedule, learned, record):
        self.store = store
        self.schedule = schedule
        self.learned = learned
        self.record = record


@pytest.fixture
def env():
    store = _IngestionStore()
    with (
        patch("docflow.core.ingestion.create_ingestion", side_effect=store.create),
        patch("docflow.core.ingestion.get_ingestion", side_effect=store.get),
        patch("docflow.core.ingestion.update_ingestion", side_effect=store.update),
        patch("docflow.core.ingestion.find_by_file_hash", side_effect=store.find_by_hash),
        patch("docflow.core.ingestion.get_active", return_value=None),
        patch("docflow.core.ingestion.get_user_settings", return_value=None),
        patch("docflow.core.ingestion.schedule_chunk_and_embed") as schedule,
        patch("docflow.core.ingestion.resolve_learned_candidate", return_value=NO_CANDIDATE) as learned,
        patch("docflow.core.ingestion.record_manual_match", return_value=True) as record,
    ):
        yield _Env(store, schedule, learned, record)


def _orchestrator(llm: FakeLLM | None = None, policies=None, work_queue=None) -> IngestionOrchestrator:
    cache = MagicMock()
    cache.load.return_value = policies or []
    return IngestionOrchestrator(
        llm=llm or FakeLLM(chat=[BASELINE_REPLY]),
        policy_cache=cache,
        work_queue=work_queue or MagicMock(),
        event_log=MagicMock(),
    )


def _notify_policy(**kwargs):
    return make_policy(actions=[{"type": "notify", "config": {"message": "Got {issuer}"}}], **kwargs)


def _steps(ingestion) -> list[str]:
    return [s.step for s in ingestion.trace]


# =============================================================================
# ingest
# =============================================================================


class TestIngest:
    @pytest.mark.asyncio
    async def test_fast_path_match(self, env):
        orchestrator = _orchestrator(policies=[_notify_policy()])

        ingestion = await orchestrator.ingest("user-1", "invoice.txt", INVOICE_TEXT, "text/plain")

        assert ingestion.status == "matched"
        assert ingestion.policy_id == "invoices"
        assert ingestion.actions_taken == ["Notified: Got Acme Corp"]
        assert ingestion.extracted["issuer"] == "Acme Corp"
        assert ingestion.raw_text == INVOICE_TEXT.decode()
        assert _steps(ingestion)[0] == "Ingestion started"
        for step in ("Triage", "Baseline extraction", "Policy Matching", "Processing complete"):
            assert step in _steps(ingestion)
        env.schedule.assert_called_once()
        assert env.schedule.call_args.args[:3] == (ingestion.id, "user-1", INVOICE_TEXT.decode())

    @pytest.mark.asyncio
    async def test_duplicate_short_circuits(self, env):
        env.store.seed(filename="first.txt", file_hash=compute_file_hash(INVOICE_TEXT), status="matched")
        llm = FakeLLM(chat=[BASELINE_REPLY])

        ingestion = await _orchestrator(llm).ingest("user-1", "again.txt", INVOICE_TEXT)

        assert ingestion.status == "duplicate"
        assert ingestion.error_message == "Duplicate of first.txt"
        assert _steps(ingestion) == ["Duplicate detected"]
        assert llm.chat_calls == []
        env.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_check_is_per_user(self, env):
        env.store.create(user_id="user-2", filename="theirs.txt", file_hash=compute_file_hash(INVOICE_TEXT))

        ingestion = await _orchestrator(policies=[_notify_policy()]).ingest("user-1", "mine.txt", INVOICE_TEXT)

        assert ingestion.status == "matched"

    @pytest.mark.asyncio
    async def test_unsupported_type_goes_to_heavy_path(self, env):
        queue = MagicMock()
        queue.enqueue.return_value = "job-1"
        llm = FakeLLM(chat=[BASELINE_REPLY])

        ingestion = await _orchestrator(llm, work_queue=queue).ingest("user-1", "scan.png", b"\x89PNG", "image/png")

        assert ingestion.status == "pending"
        job = queue.enqueue.call_args.args[0]
        assert isinstance(job, HeavyPathJob)
        assert job.reason == "unsupported_for_fast_path:png"
        assert job.file_size == 4
        assert job.mime_type == "image/png"
        assert "Queued for heavy path" in _steps(ingestion)
        assert llm.chat_calls == []

    @pytest.mark.asyncio
    async def test_no_match_falls_back(self, env):
        policy = make_policy(conditions=[{"type": "keyword", "value": "payslip"}])

        ingestion = await _orchestrator(policies=[policy]).ingest("user-1", "invoice.txt", INVOICE_TEXT)

        assert ingestion.status == "no_match"
        assert ingestion.policy_id is None
        assert ingestion.actions_taken == ["Moved to /_Needs_Review"]
        assert ingestion.extracted["document_type"] == "invoice"
        assert "Policy learning" in _steps(ingestion)
        env.learned.assert_called_once()

    @pytest.mark.asyncio
    async def test_learned_candidate_applied(self, env):
        policy = _notify_policy(conditions=[{"type": "keyword", "value": "payslip"}])
        best = CandidateScore("invoices", score=0.91, support=3, required_score=0.72, accepted=True)
        env.learned.return_value = LearnedCandidate(best, LearningDiagnostics(reason="accepted", best_candidate=best))

        ingestion = await _orchestrator(policies=[policy]).ingest("user-1", "invoice.txt", INVOICE_TEXT)

        assert ingestion.status == "matched"
        assert ingestion.policy_id == "invoices"
        assert ingestion.actions_taken == ["Notified: Got Acme Corp"]

    @pytest.mark.asyncio
    async def test_no_policies_skips_learning(self, env):
        ingestion = await _orchestrator(policies=[]).ingest("user-1", "invoice.txt", INVOICE_TEXT)

        assert ingestion.status == "no_match"
        env.learned.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_required_field_is_error(self, env):
        llm = FakeLLM(chat=[BASELINE_REPLY, json.dumps({"po_number": None})])
        policy = _notify_policy(extract=[{"key": "po_number", "required": True}])

        ingestion = await _orchestrator(llm, policies=[policy]).ingest("user-1", "invoice.txt", INVOICE_TEXT)

        assert ingestion.status == "error"
        assert ingestion.error_message == "Missing required fields: po_number"
        assert ingestion.policy_id == "invoices"
        assert ingestion.actions_taken == []

    @pytest.mark.asyncio
    async def test_pipeline_exception_becomes_error_row(self, env):
        orchestrator = _orchestrator()
        orchestrator.policy_cache.load.side_effect = RuntimeError("cache exploded")

        ingestion = await orchestrator.ingest("user-1", "invoice.txt", INVOICE_TEXT)

        assert ingestion.status == "error"
        assert ingestion.error_message == "cache exploded"
        assert _steps(ingestion)[-1] == "Processing failed"
        assert env.store.rows[ingestion.id]["status"] == "error"

    @pytest.mark.asyncio
    async def test_create_failure_returns_unsaved_error(self, env):
        llm = FakeLLM(chat=[BASELINE_REPLY])

        with patch("docflow.core.ingestion.create_ingestion", side_effect=ValueError("insert failed")):
            ingestion = await _orchestrator(llm).ingest("user-1", "invoice.txt", INVOICE_TEXT)

        assert ingestion.id == ""
        assert ingestion.status == "error"
        assert ingestion.error_message == "insert failed"
        assert ingestion.file_hash == compute_file_hash(INVOICE_TEXT)
        assert _steps(ingestion) == ["Processing failed"]
        assert llm.chat_calls == []
        env.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_create_failure_returns_unsaved_error(self, env):
        env.store.seed(filename="first.txt", file_hash=compute_file_hash(INVOICE_TEXT), status="matched")

        with patch("docflow.core.ingestion.create_ingestion", side_effect=ValueError("insert failed")):
            ingestion = await _orchestrator().ingest("user-1", "again.txt", INVOICE_TEXT)

        assert ingestion.status == "error"
        assert _steps(ingestion) == ["Duplicate detected", "Processing failed"]

    @pytest.mark.asyncio
    async def test_queue_failure_becomes_error_row(self, env):
        queue = MagicMock()
        queue.enqueue.side_effect = ValueError("No data returned from enqueue")

        ingestion = await _orchestrator(work_queue=queue).ingest("user-1", "scan.png", b"\x89PNG", "image/png")

        assert ingestion.status == "error"
        assert env.store.rows[ingestion.id]["status"] == "error"

    @pytest.mark.asyncio
    async def test_rename_updates_stored_location(self, env, tmp_path):
        path = tmp_path / "invoice.txt"
        path.write_bytes(INVOICE_TEXT)
        policy = make_policy(actions=[{"type": "rename", "config": {"pattern": "{document_type}_{amount}"}}])

        ingestion = await _orchestrator(policies=[policy]).ingest(
            "user-1", "invoice.txt", INVOICE_TEXT, file_path=str(path)
        )

        assert ingestion.filename == "invoice_42.txt"
        assert ingestion.storage_path == str(tmp_path / "invoice_42.txt")
        assert (tmp_path / "invoice_42.txt").exists()

    @pytest.mark.asyncio
    async def test_user_model_choice_used(self, env):
        llm = FakeLLM(chat=[BASELINE_REPLY])

        await _orchestrator(llm).ingest(
            "user-1", "invoice.txt", INVOICE_TEXT, settings={"llm_provider": "anthropic", "llm_model": "claude-x"}
        )

        assert (llm.chat_calls[0]["provider"], llm.chat_calls[0]["model"]) == ("anthropic", "claude-x")

    @pytest.mark.asyncio
    async def test_stored_user_settings_used_when_omitted(self, env):
        llm = FakeLLM(chat=[BASELINE_REPLY])

        with patch(
            "docflow.core.ingestion.get_user_settings",
            return_value={"llm_provider": "anthropic", "llm_model": "claude-y"},
        ) as mock_settings:
            await _orchestrator(llm).ingest("user-1", "invoice.txt", INVOICE_TEXT)

        mock_settings.assert_called_once_with("user-1")
        assert llm.chat_calls[0]["model"] == "claude-y"


# =============================================================================
# rerun / match_to_policy
# =============================================================================


class TestRerunAndManualMatch:
    @pytest.mark.asyncio
    async def test_rerun_uses_stored_text_and_keeps_tags(self, env):
        row = env.store.seed(
            filename="invoice.txt",
            status="no_match",
            raw_text=INVOICE_TEXT.decode(),
            tags=["keep-me"],
            actions_taken=["Moved to /_Needs_Review"],
            trace=[{"timestamp": "2025-01-01T00:00:00+00:00", "step": "Ingestion started"}],
        )

        ingestion = await _orchestrator(policies=[_notify_policy()]).rerun(row["id"], "user-1")

        assert ingestion.status == "matched"
        assert ingestion.tags == ["keep-me"]
        assert ingestion.actions_taken == ["Notified: Got Acme Corp"]
        assert _steps(ingestion)[:2] == ["Ingestion started", "Re-run requested"]

    @pytest.mark.asyncio
    async def test_rerun_unknown_ingestion(self, env):
        assert await _orchestrator().rerun("ing-404", "user-1") is None

    @pytest.mark.asyncio
    async def test_rerun_without_text_or_file_is_error(self, env):
        row = env.store.seed(filename="gone.txt", storage_path="/nowhere/gone.txt")

        ingestion = await _orchestrator().rerun(row["id"], "user-1")

        assert ingestion.status == "error"
        assert "No stored text or file" in ingestion.error_message

    @pytest.mark.asyncio
    async def test_rerun_reads_stored_file(self, env, tmp_path):
        path = tmp_path / "invoice.txt"
        path.write_bytes(INVOICE_TEXT)
        row = env.store.seed(filename="invoice.txt", storage_path=str(path))

        ingestion = await _orchestrator(policies=[_notify_policy()]).rerun(row["id"], "user-1")

        assert ingestion.status == "matched"
        assert ingestion.raw_text == INVOICE_TEXT.decode()

    @pytest.mark.asyncio
    async def test_match_to_policy_records_feedback(self, env):
        row = env.store.seed(
            filename="invoice.txt",
            status="no_match",
            raw_text=INVOICE_TEXT.decode(),
            extracted={"issuer": "Acme Corp"},
        )
        policy = _notify_policy(conditions=[{"type": "keyword", "value": "payslip"}])

        with patch("docflow.core.ingestion.get_policy", return_value=policy):
            ingestion = await _orchestrator().match_to_policy(row["id"], "user-1", "invoices")

        assert ingestion.status == "matched"
        assert ingestion.actions_taken == ["Notified: Got Acme Corp"]
        assert "Manual policy match" in _steps(ingestion)
        args = env.record.call_args.args
        assert args[0] == "user-1"
        assert args[1]["id"] == row["id"]
        assert args[2:] == ("invoices", "Invoices")
        env.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_match_without_learning(self, env):
        row = env.store.seed(filename="invoice.txt", raw_text="x", extracted={"issuer": "Acme"})

        with patch("docflow.core.ingestion.get_policy", return_value=_notify_policy()):
            await _orchestrator().match_to_policy(row["id"], "user-1", "invoices", learn=False)

        env.record.assert_not_called()

    @pytest.mark.asyncio
    async def test_match_unknown_policy_returns_none(self, env):
        row = env.store.seed(filename="invoice.txt", status="no_match")

        with patch("docflow.core.ingestion.get_policy", side_effect=NotFoundError("Policy nope not found")):
            result = await _orchestrator().match_to_policy(row["id"], "user-1", "nope")

        assert result is None
        assert env.store.rows[row["id"]]["status"] == "no_match"
        env.record.assert_not_called()

    @pytest.mark.asyncio
    async def test_rerun_store_read_failure_returns_none(self, env):
        with patch("docflow.core.ingestion.get_ingestion", side_effect=RuntimeError("connection reset")):
            assert await _orchestrator().rerun("ing-1", "user-1") is None

    @pytest.mark.asyncio
    async def test_rerun_reset_failure_becomes_error(self, env):
        row = env.store.seed(filename="invoice.txt", raw_text=INVOICE_TEXT.decode())

        with patch("docflow.core.ingestion.update_ingestion", side_effect=RuntimeError("write failed")):
            ingestion = await _orchestrator().rerun(row["id"], "user-1")

        assert ingestion.status == "error"
        assert ingestion.error_message == "write failed"


# =============================================================================
# summarize / listing
# =============================================================================


class TestSummarize:
    @pytest.mark.asyncio
    async def test_generates_and_caches(self, env):
        row = env.store.seed(filename="invoice.txt", raw_text=INVOICE_TEXT.decode())
        llm = FakeLLM(chat=["  An invoice from Acme Corp for 42 EUR.  "])
        orchestrator = _orchestrator(llm)

        first = await orchestrator.summarize(row["id"], "user-1")
        second = await orchestrator.summarize(row["id"], "user-1")

        assert first == second == "An invoice from Acme Corp for 42 EUR."
        assert len(llm.chat_calls) == 1
        assert env.store.rows[row["id"]]["summary"] == first

    @pytest.mark.asyncio
    async def test_force_regenerates(self, env):
        row = env.store.seed(filename="invoice.txt", raw_text="text", summary="old")
        llm = FakeLLM(chat=["new"])

        assert await _orchestrator(llm).summarize(row["id"], "user-1", force=True) == "new"

    @pytest.mark.asyncio
    async def test_model_failure_returns_none(self, env):
        row = env.store.seed(filename="invoice.txt", raw_text="text")
        llm = FakeLLM(chat=[RuntimeError("offline")])

        assert await _orchestrator(llm).summarize(row["id"], "user-1") is None
        assert env.store.rows[row["id"]].get("summary") is None

    @pytest.mark.asyncio
    async def test_cache_write_failure_still_returns_summary(self, env):
        row = env.store.seed(filename="invoice.txt", raw_text="text")
        llm = FakeLLM(chat=["A short summary."])

        with patch("docflow.core.ingestion.update_ingestion", side_effect=RuntimeError("write failed")):
            summary = await _orchestrator(llm).summarize(row["id"], "user-1")

        assert summary == "A short summary."

    @pytest.mark.asyncio
    async def test_nothing_to_summarize(self, env):
        row = env.store.seed(filename="empty.txt", raw_text="   ")
        llm = FakeLLM()

        assert await _orchestrator(llm).summarize(row["id"], "user-1") is None
        assert llm.chat_calls == []


class TestListing:
    def test_list_get_delete(self, env):
        rows = [env.store.seed(filename="a.txt"), env.store.seed(filename="b.txt")]
        orchestrator = _orchestrator()

        with (
            patch("docflow.core.ingestion.list_ingestions", return_value=rows) as mock_list,
            patch("docflow.core.ingestion.delete_ingestion", return_value=True),
            patch("docflow.core.ingestion.delete_chunks_for_ingestion", return_value=3) as mock_delete_chunks,
        ):
            listed = orchestrator.list_all("user-1", status="matched")
            deleted = orchestrator.delete(rows[0]["id"], "user-1")

        mock_list.assert_called_once_with("user-1", 50, "matched")
        assert [i.filename for i in listed] == ["a.txt", "b.txt"]
        assert deleted is True
        mock_delete_chunks.assert_called_once_with(rows[0]["id"], "user-1")
        assert orchestrator.get(rows[1]["id"], "user-1").filename == "b.txt"
        assert orchestrator.get(rows[1]["id"], "user-2") is None

    def test_store_failures_return_empty_results(self, env):
        orchestrator = _orchestrator()

        with (
            patch("docflow.core.ingestion.list_ingestions", side_effect=RuntimeError("timeout")),
            patch("docflow.core.ingestion.get_ingestion", side_effect=RuntimeError("timeout")),
            patch("docflow.core.ingestion.delete_chunks_for_ingestion", side_effect=RuntimeError("timeout")),
            patch("docflow.core.ingestion.delete_ingestion") as mock_delete,
        ):
            assert orchestrator.list_all("user-1") == []
            assert orchestrator.get("ing-1", "user-1") is None
            assert orchestrator.delete("ing-1", "user-1") is False

        mock_delete.assert_not_called()
