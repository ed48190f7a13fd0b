"""Async JobRepository for analysis job rows

Ownership of a job is granted only by claim_job's single conditional
UPDATE. Failure writes are conditional on the job still being running under
the caller's lock; the success write happens inside the result transaction
(ConversationRepository.save_analysis_result).
"""

from datetime import datetime
from typing import Optional, Sequence

import asyncpg

from config import get_logger
from database.models import (
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_STRATEGIES,
    AnalysisJob,
    ClaimResult,
)
from database.repositories_async.base import BaseRepository
from exceptions import JobError, ValidationError

logger = get_logger(__name__).bind(component="job_repository")

_JOB_COLUMNS = """
    id, conversation_id, status, strategy, locked_at, attempts,
    last_error, created_at, updated_at
"""


def _claimable(ttl_param: str) -> str:
    """WHERE fragment matching queued jobs and running jobs with a stale lock"""
    return f"""(
        status = '{JOB_QUEUED}'
        OR (
            status = '{JOB_RUNNING}'
            AND (locked_at IS NULL OR locked_at < NOW() - ({ttl_param}::bigint * INTERVAL '1 millisecond'))
        )
    )"""


def _row_to_job(row: asyncpg.Record) -> AnalysisJob:
    return AnalysisJob(
        id=str(row["id"]),
        conversation_id=str(row["conversation_id"]),
        status=row["status"],
        strategy=row["strategy"],
        locked_at=row["locked_at"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class JobRepository(BaseRepository):
    """Repository for analysis jobs

    Provides:
    - Atomic claim with TTL reclaim of abandoned jobs
    - Ownership-conditional failure writes
    - Polling for the next claimable job
    - Enqueue with one active job per conversation
    """

    async def claim_job(self, job_id: str, lock_ttl_ms: int) -> ClaimResult:
        """Move a job to running if it is queued or its lock is stale

        A single UPDATE ... WHERE decides admission; no read-then-write.
        """
        row = await self._fetchrow(
            f"""
            UPDATE analysis_jobs
            SET status = '{JOB_RUNNING}',
                locked_at = NOW(),
                attempts = attempts + 1,
                updated_at = NOW()
            WHERE id = $1 AND {_claimable('$2')}
            RETURNING locked_at
            """,
            job_id,
            lock_ttl_ms,
        )

        if row is None:
            logger.debug("claim rejected", job_id=job_id)
            return ClaimResult(claimed=False)

        logger.debug("job claimed", job_id=job_id, locked_at=row["locked_at"].isoformat())
        return ClaimResult(claimed=True, locked_at=row["locked_at"])

    async def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        row = await self._fetchrow(
            f"SELECT {_JOB_COLUMNS} FROM analysis_jobs WHERE id = $1",
            job_id,
        )
        return _row_to_job(row) if row else None

    async def mark_job_failed(self, job_id: str, locked_at: datetime, error: str) -> bool:
        result = await self._execute(
            f"""
            UPDATE analysis_jobs
            SET status = '{JOB_FAILED}', last_error = $3, updated_at = NOW()
            WHERE id = $1 AND status = '{JOB_RUNNING}' AND locked_at = $2
            """,
            job_id,
            locked_at,
            error,
        )
        return self._parse_row_count(result) > 0

    async def fetch_next_job(
        self, lock_ttl_ms: int, exclude_ids: Sequence[str] = ()
    ) -> Optional[AnalysisJob]:
        """Oldest job that a claim would currently accept

        Read-only; callers still go through claim_job, which may lose the race.
        exclude_ids skips jobs this worker is already running.
        """
        row = await self._fetchrow(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM analysis_jobs
            WHERE {_claimable('$1')}
              AND NOT (id = ANY($2::text[]))
            ORDER BY created_at ASC
            LIMIT 1
            """,
            lock_ttl_ms,
            list(exclude_ids),
        )
        return _row_to_job(row) if row else None

    async def enqueue_job(self, conversation_id: str, strategy: str = "full") -> AnalysisJob:
        """Create a queued job unless the conversation already has an active one

        A partial unique index over conversation_id for queued/running rows
        backs this; on conflict the existing active job is returned.
        """
        if strategy not in JOB_STRATEGIES:
            raise ValidationError(
                f"Invalid job strategy: {strategy}. Must be one of: {sorted(JOB_STRATEGIES)}",
                field="strategy",
                value=strategy,
            )

        async with self.transaction() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO analysis_jobs (conversation_id, status, strategy)
                VALUES ($1, '{JOB_QUEUED}', $2)
                ON CONFLICT (conversation_id) WHERE status IN ('{JOB_QUEUED}', '{JOB_RUNNING}')
                DO NOTHING
                RETURNING {_JOB_COLUMNS}
                """,
                conversation_id,
                strategy,
            )
            if row is not None:
                logger.info("job enqueued", job_id=str(row["id"]), conversation_id=conversation_id, strategy=strategy)
                return _row_to_job(row)

            row = await conn.fetchrow(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM analysis_jobs
                WHERE conversation_id = $1 AND status IN ('{JOB_QUEUED}', '{JOB_RUNNING}')
                ORDER BY created_at DESC
                LIMIT 1
                """,
                conversation_id,
            )

        if row is None:
            # Active job finished between the insert and the lookup
            raise JobError("Could not enqueue or find an active job", conversation_id=conversation_id)

        logger.info("active job already exists", job_id=str(row["id"]), conversation_id=conversation_id)
        return _row_to_job(row)
