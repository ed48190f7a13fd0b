"""Async ConversationRepository for analysis inputs and outputs

Reads responses and feedback for a conversation; writes embeddings, analysis
status and the analysis result. A result replaces the previous run's rows
in one transaction (full recompute, no merge), and only while the job that
produced it is still owned.
"""

from datetime import datetime
from typing import Dict, List, Sequence

from config import get_logger
from database.models import (
    ANALYSIS_STATUS_ERROR,
    ANALYSIS_STATUS_READY,
    FEEDBACK_VALUES,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    AnalysisResult,
    FeedbackVote,
    Response,
)
from database.repositories_async.base import BaseRepository

logger = get_logger(__name__).bind(component="conversation_repository")


class ConversationRepository(BaseRepository):
    """Repository for conversation analysis data"""

    async def get_responses(self, conversation_id: str) -> List[Response]:
        """Responses in submission order, with stored embeddings when present"""
        rows = await self._fetch(
            """
            SELECT id, text, author_id, embedding
            FROM conversation_responses
            WHERE conversation_id = $1
            ORDER BY created_at ASC, id ASC
            """,
            conversation_id,
        )
        return [
            Response(
                id=str(row["id"]),
                text=row["text"],
                author_id=str(row["author_id"]) if row["author_id"] else None,
                embedding=list(row["embedding"]) if row["embedding"] is not None else None,
            )
            for row in rows
        ]

    async def save_embeddings(self, embeddings: Dict[str, Sequence[float]]) -> None:
        """Store vectors for responses that did not have one yet"""
        if not embeddings:
            return
        await self._executemany(
            """
            UPDATE conversation_responses
            SET embedding = $2
            WHERE id = $1 AND embedding IS NULL
            """,
            [(response_id, list(vector)) for response_id, vector in embeddings.items()],
        )
        logger.debug("embeddings saved", count=len(embeddings))

    async def get_feedback(self, conversation_id: str) -> List[FeedbackVote]:
        """Feedback rows oldest first, so later rows win on dedup"""
        rows = await self._fetch(
            """
            SELECT statement_id, user_id, feedback
            FROM response_feedback
            WHERE conversation_id = $1
            ORDER BY created_at ASC, id ASC
            """,
            conversation_id,
        )
        votes = []
        for row in rows:
            if row["feedback"] not in FEEDBACK_VALUES:
                logger.warning("skipping unknown feedback value", value=row["feedback"])
                continue
            votes.append(
                FeedbackVote(
                    statement_id=str(row["statement_id"]),
                    voter_id=str(row["user_id"]),
                    value=row["feedback"],
                )
            )
        return votes

    async def set_analysis_status(self, conversation_id: str, status: str) -> None:
        await self._execute(
            """
            UPDATE conversations
            SET analysis_status = $2,
                analysis_error = NULL,
                analysis_updated_at = NOW()
            WHERE id = $1
            """,
            conversation_id,
            status,
        )

    async def set_analysis_error(self, conversation_id: str, message: str) -> None:
        await self._execute(
            f"""
            UPDATE conversations
            SET analysis_status = '{ANALYSIS_STATUS_ERROR}',
                analysis_error = $2,
                analysis_updated_at = NOW()
            WHERE id = $1
            """,
            conversation_id,
            message,
        )

    async def save_analysis_result(self, result: AnalysisResult, job_id: str, locked_at: datetime) -> bool:
        """Replace the conversation's analysis rows with this result

        The job is marked succeeded first, in the same transaction, under the
        condition that it is still running under locked_at. The row lock that
        UPDATE takes blocks a concurrent reclaim until commit, and a worker
        that was taken over writes nothing.

        Returns:
            False if the job no longer belongs to this worker
        """
        conversation_id = result.conversation_id

        assignment_rows = [
            (conversation_id, response_id, cluster_index)
            for response_id, cluster_index in result.cluster_assignments.items()
        ]
        bucket_rows = []
        unconsolidated_rows = []
        for consolidation in result.consolidations:
            for position, bucket in enumerate(consolidation.buckets):
                bucket_rows.append(
                    (
                        conversation_id,
                        consolidation.cluster_index,
                        position,
                        bucket.bucket_name,
                        bucket.consolidated_statement,
                        list(bucket.response_ids),
                    )
                )
            for response_id in consolidation.unconsolidated_ids:
                unconsolidated_rows.append((conversation_id, consolidation.cluster_index, response_id))
        theme_rows = [
            (conversation_id, theme.cluster_index, theme.name, theme.description, theme.size)
            for theme in result.themes
        ]

        async with self.transaction() as conn:
            owned = await conn.fetchrow(
                f"""
                UPDATE analysis_jobs
                SET status = '{JOB_SUCCEEDED}', last_error = NULL, updated_at = NOW()
                WHERE id = $1 AND status = '{JOB_RUNNING}' AND locked_at = $2
                RETURNING id
                """,
                job_id,
                locked_at,
            )
            if owned is None:
                logger.warning(
                    "job no longer owned, result not saved",
                    job_id=job_id,
                    conversation_id=conversation_id,
                )
                return False

            for table in (
                "conversation_cluster_assignments",
                "conversation_cluster_buckets",
                "conversation_unconsolidated_responses",
                "conversation_cluster_themes",
            ):
                await conn.execute(f"DELETE FROM {table} WHERE conversation_id = $1", conversation_id)

            if assignment_rows:
                await conn.executemany(
                    """
                    INSERT INTO conversation_cluster_assignments (conversation_id, response_id, cluster_index)
                    VALUES ($1, $2, $3)
                    """,
                    assignment_rows,
                )
            if bucket_rows:
                await conn.executemany(
                    """
                    INSERT INTO conversation_cluster_buckets (
                        conversation_id, cluster_index, position,
                        bucket_name, consolidated_statement, response_ids
                    )
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    bucket_rows,
                )
            if unconsolidated_rows:
                await conn.executemany(
                    """
                    INSERT INTO conversation_unconsolidated_responses (conversation_id, cluster_index, response_id)
                    VALUES ($1, $2, $3)
                    """,
                    unconsolidated_rows,
                )
            if theme_rows:
                await conn.executemany(
                    """
                    INSERT INTO conversation_cluster_themes (conversation_id, cluster_index, name, description, size)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    theme_rows,
                )

            await conn.execute(
                f"""
                UPDATE conversations
                SET analysis_status = '{ANALYSIS_STATUS_READY}',
                    analysis_error = NULL,
                    analysis_response_count = $2,
                    analysis_metrics = $3,
                    analysis_consensus = $4,
                    analysis_updated_at = NOW()
                WHERE id = $1
                """,
                conversation_id,
                result.response_count,
                result.metrics.to_dict(),
                result.consensus_to_dict(),
            )

        logger.info(
            "analysis result saved",
            job_id=job_id,
            conversation_id=conversation_id,
            responses=result.response_count,
            clusters=result.cluster_count,
            misc=result.misc_count,
            buckets=len(bucket_rows),
            unconsolidated=len(unconsolidated_rows),
            agreement_summaries=len(result.agreement_summaries),
        )
        return True
