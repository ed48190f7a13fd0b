"""Job Exclusivity - exactly one worker owns an analysis job at a time

State machine: queued -> running -> succeeded | failed. A running job whose
lock is older than the TTL counts as abandoned and can be claimed again.

- claim(): single atomic conditional update in the store
- Terminal writes re-check ownership and are themselves conditional; the
  result and the succeeded status are written in one transaction, so a
  worker whose lock was taken over discards its result
- Failure recording is best-effort and never raises
"""

from datetime import datetime
from typing import Optional, Union

from config import AnalysisSettings, get_logger
from database.models import JOB_RUNNING, AnalysisResult, ClaimResult
from exceptions import HiveError
from pipeline.protocols import ConversationStore, JobStore

logger = get_logger(__name__).bind(component="exclusivity")

GENERIC_FAILURE_MESSAGE = "Analysis failed due to an unexpected error"


def public_error_message(error: Union[BaseException, str]) -> str:
    """Human-readable message for job/conversation records

    Our own errors carry a safe message; anything else gets a generic one so
    library internals are never shown to users.
    """
    if isinstance(error, str):
        return error
    if isinstance(error, HiveError):
        return error.public_message
    return GENERIC_FAILURE_MESSAGE


class JobExclusivityManager:
    """Claim, ownership checks and terminal writes for analysis jobs"""

    def __init__(
        self,
        jobs: JobStore,
        conversations: ConversationStore,
        settings: Optional[AnalysisSettings] = None,
    ):
        self.jobs = jobs
        self.conversations = conversations
        self.settings = settings or AnalysisSettings()

    async def claim(self, job_id: str) -> ClaimResult:
        """Try to take ownership; a False result means another worker has it"""
        result = await self.jobs.claim_job(job_id, self.settings.lock_ttl_ms)
        if result.claimed:
            logger.info("job claimed", job_id=job_id)
        else:
            logger.info("job not claimable, another worker owns it or it is finished", job_id=job_id)
        return result

    async def still_owns(self, job_id: str, locked_at: datetime) -> bool:
        """Re-read the job: still running under our lock?"""
        job = await self.jobs.get_job(job_id)
        if job is None:
            return False
        return job.status == JOB_RUNNING and job.locked_at == locked_at

    async def finalize_success(self, job_id: str, locked_at: datetime, result: AnalysisResult) -> bool:
        """Persist the result and mark succeeded if we still own the job

        The re-read skips the write early when the job is already gone; the
        store repeats the ownership check inside its transaction, so a
        takeover after the re-read still discards this result.

        Returns:
            False if superseded (nothing written)
        """
        if not await self.still_owns(job_id, locked_at):
            logger.warning("job superseded before completion, discarding result", job_id=job_id)
            return False

        written = await self.conversations.save_analysis_result(result, job_id, locked_at)
        if not written:
            logger.warning("job superseded during completion, discarding result", job_id=job_id)
        return written

    async def record_failure(
        self,
        job_id: str,
        conversation_id: str,
        locked_at: datetime,
        error: Union[BaseException, str],
    ) -> bool:
        """Record a failure on the job and its conversation

        Best-effort: store errors are logged, never raised. Nothing is written
        when another worker has taken the job over.

        Returns:
            True if the job row was marked failed
        """
        message = public_error_message(error)

        try:
            written = await self.jobs.mark_job_failed(job_id, locked_at, message)
        except Exception as e:  # Intentionally broad: failure recording must not crash the caller
            logger.error(
                "failed to record job failure",
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            written = None

        if written is False:
            logger.warning("job superseded, not recording failure", job_id=job_id)
            return False

        try:
            await self.conversations.set_analysis_error(conversation_id, message)
        except Exception as e:  # Intentionally broad: failure recording must not crash the caller
            logger.error(
                "failed to record conversation analysis error",
                job_id=job_id,
                conversation_id=conversation_id,
                error=str(e),
                error_type=type(e).__name__,
            )

        return bool(written)
