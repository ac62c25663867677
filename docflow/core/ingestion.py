"""Ingestion orchestrator.

Owns the per-document flow: duplicate check, triage, baseline extraction,
policy matching (with learned fallback), persistence and background
indexing. Public entry points never raise: pipeline failures end as an
``error`` ingestion, lookups that fail return ``None``, ``[]`` or ``False``.

Usage:
    orchestrator = IngestionOrchestrator(llm=ProviderLLMService())
    ingestion = await orchestrator.ingest(user_id, "receipt.pdf", content, "application/pdf")
"""

import asyncio
import os
from pathlib import Path
from typing import Any

from docflow.core.actions.base import SpreadsheetService, StorageService
from docflow.core.actuator import Actuator
from docflow.core.baseline_config import enabled_fields, get_active
from docflow.core.embeddings import EmbedJobGate, EmbeddingModelResolver, schedule_chunk_and_embed
from docflow.core.event_log import EventLog
from docflow.core.extractor import append_extracted_section, extract_baseline
from docflow.core.llm import ChatProviderResolver, LLMService, normalize_llm_content
from docflow.core.logging import get_logger
from docflow.core.policy_engine import PolicyEngine, ProcessingResult
from docflow.core.policy_learning import record_manual_match, resolve_learned_candidate
from docflow.core.policy_loader import PolicyCache, get_policy
from docflow.core.rule_evaluator import DocumentObject
from docflow.core.schemas_ingestions import Ingestion, Trace
from docflow.core.schemas_policies import Policy
from docflow.core.triage import TriageResult, triage
from docflow.db.ingestions import (
    compute_file_hash,
    create_ingestion,
    delete_ingestion,
    find_by_file_hash,
    get_ingestion,
    list_ingestions,
    update_ingestion,
)
from docflow.db.document_chunks import delete_chunks_for_ingestion
from docflow.db.jobs import HeavyPathJob, SupabaseWorkQueue, WorkQueue
from docflow.db.user_settings import get_user_settings

logger = get_logger(__name__)

STATUS_BY_OUTCOME = {"matched": "matched", "fallback": "no_match", "error": "error"}

SUMMARY_TEXT_LIMIT = 6000

SUMMARY_SYSTEM_PROMPT = (
    "You summarize documents for a personal filing assistant. Write 2-3 plain sentences "
    "covering what the document is, who issued it, and any amounts or dates that matter. "
    "No markdown."
)


class IngestionOrchestrator:
    """Runs documents through the pipeline and persists the outcome."""

    def __init__(
        self,
        llm: LLMService,
        policy_cache: PolicyCache | None = None,
        embed_resolver: EmbeddingModelResolver | None = None,
        embed_gate: EmbedJobGate | None = None,
        work_queue: WorkQueue | None = None,
        event_log: EventLog | None = None,
        storage: StorageService | None = None,
        spreadsheets: SpreadsheetService | None = None,
    ):
        self.llm = llm
        self.chat_resolver = ChatProviderResolver(llm)
        self.policy_cache = policy_cache or PolicyCache()
        self.embed_resolver = embed_resolver or EmbeddingModelResolver()
        self.embed_gate = embed_gate or EmbedJobGate()
        self.work_queue = work_queue or SupabaseWorkQueue()
        self.event_log = event_log or EventLog()
        self.actuator = Actuator(event_log=self.event_log, storage=storage, spreadsheets=spreadsheets)
        self.engine = PolicyEngine(llm, self.chat_resolver, self.actuator)
        self._background: set[asyncio.Task] = set()

    # =========================================================================
    # Entry points
    # =========================================================================

    async def ingest(
        self,
        user_id: str,
        filename: str,
        content: bytes,
        mime_type: str | None = None,
        source: str = "upload",
        file_path: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Ingestion:
        """
        Ingest one document.

        Args:
            user_id: Owner
            filename: Original filename
            content: Raw file bytes
            mime_type: Declared MIME type
            source: upload, dropzone, email or url
            file_path: Where the file lives on disk (actions operate on it)
            settings: Per-user settings (llm_provider, llm_model, embedding overrides);
                loaded from user_settings when omitted

        Returns:
            The persisted Ingestion in its terminal (or pending) state. If the
            row cannot be created, an unsaved ``error`` Ingestion with an empty id
        """
        settings = settings if settings is not None else self._load_settings(user_id)
        file_hash = compute_file_hash(content)
        user_fields = {
            "user_id": user_id,
            "filename": filename,
            "source": source,
            "mime_type": mime_type,
            "file_size": len(content),
            "file_hash": file_hash,
            "storage_path": file_path,
        }

        original = self._find_duplicate(user_id, file_hash)
        if original:
            return self._record_duplicate(user_fields, original)

        try:
            row = create_ingestion(**user_fields)
        except Exception as e:
            return self._unsaved_error(user_fields, Trace(), e)
        ingestion_id = row["id"]
        trace = Trace()
        trace.add("Ingestion started", {"filename": filename, "source": source, "size": len(content)})
        self.event_log.log_event(ingestion_id, user_id, "info", "Ingestion", {"filename": filename})

        try:
            routed = triage(filename, raw_bytes=content)
            self._trace_triage(trace, routed)
            if not routed.fast_path:
                return self._defer_to_heavy_path(row, trace, routed.reason)
            return await self._process_text(row, routed.text, trace, settings)
        except Exception as e:
            return self._fail(row, trace, e)

    async def rerun(
        self, ingestion_id: str, user_id: str, settings: dict[str, Any] | None = None
    ) -> Ingestion | None:
        """
        Process an existing ingestion again.

        Extraction fields are reset, tags are kept, and new steps are
        appended to the existing trace. Returns None if the ingestion does
        not exist or cannot be read.
        """
        row = self._load_row(ingestion_id, user_id)
        if not row:
            return None

        trace = Trace.from_json(row.get("trace"))
        trace.add("Re-run requested", {"previous_status": row.get("status")})
        reset = {
            "status": "processing",
            "policy_id": None,
            "policy_name": None,
            "extracted": {},
            "actions_taken": [],
            "error_message": None,
            "summary": None,
            "trace": trace.to_json(),
        }
        logger.info("Re-running ingestion", extra={"ingestion_id": ingestion_id, "user_id": user_id})

        try:
            row = update_ingestion(ingestion_id, user_id, reset) or {**row, **reset}
            text = row.get("raw_text")
            if not text:
                routed = await self._triage_stored_file(row)
                self._trace_triage(trace, routed)
                if not routed.fast_path:
                    return self._defer_to_heavy_path(row, trace, routed.reason)
                text = routed.text
            if settings is None:
                settings = self._load_settings(user_id)
            return await self._process_text(row, text, trace, settings)
        except Exception as e:
            return self._fail(row, trace, e)

    async def match_to_policy(
        self, ingestion_id: str, user_id: str, policy_id: str, learn: bool = True
    ) -> Ingestion | None:
        """
        Run a user-chosen policy against a stored ingestion.

        With ``learn`` the match is recorded as a policy-learning sample.
        Returns None, leaving the ingestion untouched, if the ingestion or
        the policy cannot be found.
        """
        row = self._load_row(ingestion_id, user_id)
        if not row:
            return None
        try:
            policy = get_policy(user_id, policy_id)
        except Exception as e:
            logger.warning(
                f"Manual match to {policy_id} skipped: {e}",
                extra={"ingestion_id": ingestion_id, "user_id": user_id},
            )
            return None

        trace = Trace.from_json(row.get("trace"))
        trace.add("Manual policy match", {"policy_id": policy.id, "learn": learn})
        baseline = dict(row.get("extracted") or {})
        document = DocumentObject(
            file_path=self._file_path(row),
            text=append_extracted_section(row.get("raw_text") or "", baseline),
            mime_type=row.get("mime_type"),
        )

        try:
            result = await self.engine.run_policy(
                policy, document, trace, ingestion_id, user_id, baseline_entities=baseline
            )
            ingestion = self._finish(row, trace, result, baseline, text=None)
        except Exception as e:
            return self._fail(row, trace, e)

        if learn:
            record_manual_match(user_id, ingestion.model_dump(), policy.id, policy.name)
        return ingestion

    async def summarize(
        self,
        ingestion_id: str,
        user_id: str,
        settings: dict[str, Any] | None = None,
        force: bool = False,
    ) -> str | None:
        """Short prose summary, cached on the ingestion. None when unavailable."""
        row = self._load_row(ingestion_id, user_id)
        if not row:
            return None
        if row.get("summary") and not force:
            return row["summary"]

        text = row.get("raw_text") or ""
        extracted = row.get("extracted") or {}
        if not text.strip() and not extracted:
            return None

        settings = settings or {}
        try:
            choice = await self.chat_resolver.resolve(settings.get("llm_provider"), settings.get("llm_model"))
            raw = await self.llm.chat_complete(
                [
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": append_extracted_section(text[:SUMMARY_TEXT_LIMIT], extracted),
                    },
                ],
                provider=choice.provider,
                model=choice.model,
            )
        except Exception as e:
            logger.warning(f"Summary generation failed: {e}", extra={"ingestion_id": ingestion_id})
            return None

        summary = normalize_llm_content(raw).strip()
        if not summary:
            return None
        try:
            update_ingestion(ingestion_id, user_id, {"summary": summary})
        except Exception as e:
            logger.warning(f"Failed to cache summary: {e}", extra={"ingestion_id": ingestion_id})
        return summary

    def list_all(self, user_id: str, limit: int = 50, status: str | None = None) -> list[Ingestion]:
        try:
            rows = list_ingestions(user_id, limit, status)
        except Exception as e:
            logger.error(f"Failed to list ingestions: {e}", extra={"user_id": user_id})
            return []
        return [Ingestion.from_row(row) for row in rows]

    def get(self, ingestion_id: str, user_id: str) -> Ingestion | None:
        row = self._load_row(ingestion_id, user_id)
        return Ingestion.from_row(row) if row else None

    def delete(self, ingestion_id: str, user_id: str) -> bool:
        """Remove the ingestion and its indexed chunks. False when nothing was removed."""
        try:
            removed = delete_chunks_for_ingestion(ingestion_id, user_id)
            if removed:
                logger.info(f"Deleted {removed} chunks", extra={"ingestion_id": ingestion_id})
            return delete_ingestion(ingestion_id, user_id)
        except Exception as e:
            logger.error(f"Failed to delete ingestion: {e}", extra={"ingestion_id": ingestion_id})
            return False

    async def drain(self) -> None:
        """Wait for background indexing and event writes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.event_log.drain()

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _process_text(
        self, row: dict[str, Any], text: str, trace: Trace, settings: dict[str, Any]
    ) -> Ingestion:
        ingestion_id, user_id = row["id"], row["user_id"]

        config = get_active(user_id)
        fields = enabled_fields(config)
        choice = await self.chat_resolver.resolve(settings.get("llm_provider"), settings.get("llm_model"))
        baseline = await extract_baseline(
            text, fields, self.llm, choice.provider, choice.model, config.context if config else None
        )
        trace.add(
            "Baseline extraction",
            {
                "fields": len(fields),
                "extracted": sorted(k for k, v in baseline.entities.items() if v is not None),
                "uncertain": baseline.uncertain_fields,
                "provider": choice.provider,
                "model": choice.model,
            },
        )
        update_ingestion(
            ingestion_id,
            user_id,
            {
                "extracted": baseline.entities,
                "baseline_config_id": config.id if config else None,
                "raw_text": text,
                "trace": trace.to_json(),
            },
        )

        document = DocumentObject(
            file_path=self._file_path(row),
            text=append_extracted_section(text, baseline.entities),
            mime_type=row.get("mime_type"),
        )
        policies = self.policy_cache.load(user_id)
        result = await self.engine.process(
            document, policies, trace, ingestion_id, user_id, baseline_entities=baseline.entities
        )

        if result.status == "fallback" and policies:
            learned = await self._run_learned_policy(
                document, policies, trace, ingestion_id, user_id, baseline.entities, text
            )
            if learned is not None:
                result = learned

        return self._finish(row, trace, result, baseline.entities, text=text, settings=settings)

    async def _run_learned_policy(
        self,
        document: DocumentObject,
        policies: list[Policy],
        trace: Trace,
        ingestion_id: str,
        user_id: str,
        baseline: dict[str, Any],
        text: str,
    ) -> ProcessingResult | None:
        resolution = resolve_learned_candidate(
            user_id, [p.id for p in policies], document.file_path, baseline, text
        )
        best = resolution.diagnostics.best_candidate
        trace.add(
            "Policy learning",
            {
                "reason": resolution.diagnostics.reason,
                "evaluated_samples": resolution.diagnostics.evaluated_samples,
                "best_policy_id": best.policy_id if best else None,
                "best_score": round(best.score, 3) if best else None,
            },
        )
        if resolution.candidate is None:
            return None

        policy = next((p for p in policies if p.id == resolution.candidate.policy_id), None)
        if policy is None:
            return None
        logger.info(
            f"Applying learned policy {policy.id}",
            extra={"ingestion_id": ingestion_id, "user_id": user_id},
        )
        return await self.engine.run_policy(
            policy, document, trace, ingestion_id, user_id, baseline_entities=baseline
        )

    def _finish(
        self,
        row: dict[str, Any],
        trace: Trace,
        result: ProcessingResult,
        baseline: dict[str, Any],
        text: str | None,
        settings: dict[str, Any] | None = None,
    ) -> Ingestion:
        ingestion_id, user_id = row["id"], row["user_id"]
        status = STATUS_BY_OUTCOME[result.status]
        trace.add("Processing complete", {"status": status})

        updates: dict[str, Any] = {
            "status": status,
            "policy_id": result.matched_policy_id,
            "policy_name": result.matched_policy_name,
            "extracted": result.extracted if result.matched_policy_id else baseline,
            "actions_taken": result.actions_executed,
            "error_message": result.error,
            "trace": trace.to_json(),
        }
        if result.final_file_path and result.final_file_path != result.file_path:
            updates["storage_path"] = result.final_file_path
            updates["filename"] = os.path.basename(result.final_file_path)

        updated = update_ingestion(ingestion_id, user_id, updates) or {**row, **updates}
        self.event_log.log_event(
            ingestion_id,
            user_id,
            "error" if status == "error" else "info",
            "Ingestion",
            {"status": status, "policy_id": result.matched_policy_id},
        )
        logger.info(
            f"Ingestion finished: {status}",
            extra={"ingestion_id": ingestion_id, "user_id": user_id},
        )

        if text and text.strip():
            schedule_chunk_and_embed(
                ingestion_id,
                user_id,
                text,
                llm=self.llm,
                resolver=self.embed_resolver,
                gate=self.embed_gate,
                settings=settings,
                pending=self._background,
            )
        return Ingestion.from_row(updated)

    def _fail(self, row: dict[str, Any], trace: Trace, error: Exception) -> Ingestion:
        ingestion_id, user_id = row["id"], row["user_id"]
        logger.error(f"Ingestion failed: {error}", extra={"ingestion_id": ingestion_id, "user_id": user_id})
        trace.add("Processing failed", {"error": str(error)})
        updates = {"status": "error", "error_message": str(error), "trace": trace.to_json()}

        updated = None
        try:
            updated = update_ingestion(ingestion_id, user_id, updates)
        except Exception as e:
            logger.error(f"Failed to persist error state: {e}", extra={"ingestion_id": ingestion_id})
        self.event_log.log_event(ingestion_id, user_id, "error", "Ingestion", {"error": str(error)})
        return Ingestion.from_row(updated or {**row, **updates})

    def _defer_to_heavy_path(self, row: dict[str, Any], trace: Trace, reason: str) -> Ingestion:
        ingestion_id, user_id = row["id"], row["user_id"]
        job = HeavyPathJob(
            ingestion_id=ingestion_id,
            user_id=user_id,
            filename=row["filename"],
            mime_type=row.get("mime_type"),
            file_size=row.get("file_size"),
            file_path=self._file_path(row),
            storage_path=row.get("storage_path"),
            reason=reason,
        )
        job_id = self.work_queue.enqueue(job)
        trace.add("Queued for heavy path", {"job_id": job_id, "reason": reason})

        updates = {"status": "pending", "trace": trace.to_json()}
        updated = update_ingestion(ingestion_id, user_id, updates) or {**row, **updates}
        self.event_log.log_event(ingestion_id, user_id, "info", "Triage", {"heavy_path": True, "reason": reason})
        return Ingestion.from_row(updated)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load_settings(self, user_id: str) -> dict[str, Any]:
        try:
            return get_user_settings(user_id) or {}
        except Exception as e:
            logger.warning(f"Failed to load user settings, using defaults: {e}", extra={"user_id": user_id})
            return {}

    def _find_duplicate(self, user_id: str, file_hash: str) -> dict[str, Any] | None:
        try:
            return find_by_file_hash(user_id, file_hash)
        except Exception as e:
            logger.warning(f"Duplicate check failed, continuing: {e}", extra={"user_id": user_id})
            return None

    def _load_row(self, ingestion_id: str, user_id: str) -> dict[str, Any] | None:
        try:
            return get_ingestion(ingestion_id, user_id)
        except Exception as e:
            logger.error(f"Failed to load ingestion: {e}", extra={"ingestion_id": ingestion_id})
            return None

    def _record_duplicate(self, user_fields: dict[str, Any], original: dict[str, Any]) -> Ingestion:
        user_id = user_fields["user_id"]
        trace = Trace()
        trace.add(
            "Duplicate detected",
            {"original_id": original["id"], "original_filename": original.get("filename")},
        )
        try:
            row = create_ingestion(**user_fields, status="duplicate")
        except Exception as e:
            return self._unsaved_error(user_fields, trace, e)

        updates = {
            "trace": trace.to_json(),
            "error_message": f"Duplicate of {original.get('filename') or original['id']}",
        }
        try:
            updated = update_ingestion(row["id"], user_id, updates) or {**row, **updates}
        except Exception as e:
            logger.warning(f"Failed to annotate duplicate: {e}", extra={"ingestion_id": row["id"]})
            updated = {**row, **updates}

        logger.info(
            f"Skipped duplicate of {original['id']}",
            extra={"ingestion_id": row["id"], "user_id": user_id},
        )
        self.event_log.log_event(row["id"], user_id, "info", "Ingestion", {"duplicate_of": original["id"]})
        return Ingestion.from_row(updated)

    @staticmethod
    def _unsaved_error(user_fields: dict[str, Any], trace: Trace, error: Exception) -> Ingestion:
        """Error result for a document whose row could not be created."""
        logger.error(
            f"Failed to create ingestion for {user_fields['filename']}: {error}",
            extra={"user_id": user_fields["user_id"]},
        )
        trace.add("Processing failed", {"error": str(error)})
        return Ingestion.from_row(
            {
                **user_fields,
                "id": "",
                "status": "error",
                "error_message": str(error),
                "trace": trace.to_json(),
            }
        )

    @staticmethod
    def _trace_triage(trace: Trace, routed: TriageResult) -> None:
        trace.add(
            "Triage",
            {
                "fast_path": routed.fast_path,
                "reason": routed.reason,
                "signals": routed.signals.as_dict() if routed.signals else None,
            },
        )

    @staticmethod
    def _file_path(row: dict[str, Any]) -> str:
        return row.get("storage_path") or row["filename"]

    async def _triage_stored_file(self, row: dict[str, Any]) -> TriageResult:
        path = row.get("storage_path")
        if not path or not os.path.exists(path):
            raise FileNotFoundError(f"No stored text or file to re-run for {row['filename']}")
        content = await asyncio.to_thread(Path(path).read_bytes)
        return triage(row["filename"], raw_bytes=content)
