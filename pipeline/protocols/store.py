"""Store Protocols - the only data-store operations the analysis core needs

Decouples job exclusivity and the analysis pipeline from any particular
database. Postgres repositories implement these; tests use in-memory fakes.
"""

from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from database.models import AnalysisJob, AnalysisResult, ClaimResult, FeedbackVote, Response


class JobStore(Protocol):
    """Analysis job rows with conditional-update semantics"""

    async def claim_job(self, job_id: str, lock_ttl_ms: int) -> ClaimResult:
        """Atomically move a queued (or stale running) job to running"""
        ...

    async def get_job(self, job_id: str) -> Optional[AnalysisJob]: ...

    async def mark_job_failed(self, job_id: str, locked_at: datetime, error: str) -> bool:
        """Write failed only if still running under this lock; True if written"""
        ...

    async def fetch_next_job(
        self, lock_ttl_ms: int, exclude_ids: Sequence[str] = ()
    ) -> Optional[AnalysisJob]: ...

    async def enqueue_job(self, conversation_id: str, strategy: str = "full") -> AnalysisJob: ...


class ConversationStore(Protocol):
    """Conversation inputs and analysis outputs"""

    async def get_responses(self, conversation_id: str) -> List[Response]: ...

    async def save_embeddings(self, embeddings: Dict[str, Sequence[float]]) -> None: ...

    async def get_feedback(self, conversation_id: str) -> List[FeedbackVote]: ...

    async def set_analysis_status(self, conversation_id: str, status: str) -> None: ...

    async def set_analysis_error(self, conversation_id: str, message: str) -> None: ...

    async def save_analysis_result(self, result: AnalysisResult, job_id: str, locked_at: datetime) -> bool:
        """Persist the result and mark the job succeeded in one transaction

        Nothing is written unless the job is still running under locked_at.
        Returns False when the job was taken over.
        """
        ...
