"""Heavy-path work queue backed by the processing_jobs table."""

from typing import Protocol

from pydantic import BaseModel

from docflow.core.logging import get_logger
from docflow.db.supabase_client import get_supabase

logger = get_logger(__name__)


class HeavyPathJob(BaseModel):
    """Descriptor handed to the OCR/vision worker for a deferred document."""

    ingestion_id: str
    user_id: str
    filename: str
    mime_type: str | None = None
    file_size: int | None = None
    file_path: str | None = None
    storage_path: str | None = None
    reason: str = ""


class WorkQueue(Protocol):
    def enqueue(self, job: HeavyPathJob) -> str: ...


class SupabaseWorkQueue:
    """WorkQueue that inserts a `queued` row per job."""

    def enqueue(self, job: HeavyPathJob) -> str:
        """
        Queue a heavy-path job.

        Args:
            job: Job descriptor

        Returns:
            Job id

        Raises:
            Exception: If database operation fails
        """
        supabase = get_supabase()

        try:
            response = (
                supabase.table("processing_jobs")
                .insert(
                    {
                        "ingestion_id": job.ingestion_id,
                        "user_id": job.user_id,
                        "job_type": "heavy_path",
                        "status": "queued",
                        "input": job.model_dump(),
                    }
                )
                .execute()
            )

            if not response.data:
                raise ValueError("No data returned from enqueue")

            job_id = str(response.data[0]["id"])
            logger.info(
                f"Queued heavy-path job {job_id} for {job.filename}",
                extra={"ingestion_id": job.ingestion_id, "user_id": job.user_id},
            )
            return job_id

        except Exception as e:
            logger.error(
                f"Failed to enqueue job: {e}", extra={"ingestion_id": job.ingestion_id}
            )
            raise
