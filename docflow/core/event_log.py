"""Best-effort, non-blocking event log.

Events are written from detached tasks so the pipeline never waits on (or
fails because of) the processing_events table.
"""

import asyncio
from typing import Any

from docflow.core.logging import get_logger
from docflow.db.processing_events import insert_processing_event

logger = get_logger(__name__)


class EventLog:
    """Fire-and-forget writer for processing events."""

    def __init__(self) -> None:
        self._pending: set[asyncio.Task] = set()

    def log_event(
        self,
        ingestion_id: str | None,
        user_id: str | None,
        kind: str,
        stage: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Schedule an event write. Returns immediately."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): write inline, still best-effort
            self._write(ingestion_id, user_id, kind, stage, details)
            return

        task = loop.create_task(
            asyncio.to_thread(self._write, ingestion_id, user_id, kind, stage, details)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for scheduled writes (used at shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def _write(
        ingestion_id: str | None,
        user_id: str | None,
        kind: str,
        stage: str,
        details: dict[str, Any] | None,
    ) -> None:
        try:
            insert_processing_event(ingestion_id, user_id, kind, stage, details)
        except Exception as e:
            logger.warning(
                f"Failed to write processing event ({kind}/{stage}): {e}",
                extra={"ingestion_id": ingestion_id},
            )
