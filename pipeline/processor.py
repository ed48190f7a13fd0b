"""Pipeline Processor - claim, analyze and finalize analysis jobs"""

import asyncio
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from config import AnalysisSettings, get_logger
from exceptions import HiveError
from pipeline.analyzer import AnalysisPipeline
from pipeline.exclusivity import JobExclusivityManager
from pipeline.protocols import ConversationStore, JobStore, MetricsCollector, NullMetrics

logger = get_logger(__name__).bind(component="processor")


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # claim lost; another worker owns the job
    SUPERSEDED = "superseded"  # lock taken over mid-run; result discarded


class JobProcessor:
    """Runs one analysis job under the exclusivity rules

    Only the worker holding the claim writes anything. A result is persisted
    together with the succeeded status, and only while the job is still owned.
    """

    def __init__(
        self,
        jobs: JobStore,
        conversations: ConversationStore,
        pipeline: AnalysisPipeline,
        settings: Optional[AnalysisSettings] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.jobs = jobs
        self.conversations = conversations
        self.pipeline = pipeline
        self.settings = settings or AnalysisSettings()
        self.metrics = metrics or NullMetrics()
        self.exclusivity = JobExclusivityManager(jobs, conversations, self.settings)

    async def process_job(self, job_id: str) -> JobOutcome:
        """Claim and run a job

        Raises:
            Exception: Unexpected (non-domain) errors, after recording the failure
        """
        claim = await self.exclusivity.claim(job_id)
        if not claim.claimed:
            return self._finish(JobOutcome.SKIPPED, job_id)

        job = await self.jobs.get_job(job_id)
        if job is None:
            logger.warning("claimed job vanished", job_id=job_id)
            return self._finish(JobOutcome.SKIPPED, job_id)

        log = logger.bind(job_id=job_id, conversation_id=job.conversation_id)
        if job.strategy == "incremental":
            log.info("incremental strategy requested, running full recompute")

        try:
            with self.metrics.analysis_duration.labels(strategy=job.strategy).time():
                result = await self.pipeline.run(job.conversation_id)

            saved = await self.exclusivity.finalize_success(job_id, claim.locked_at, result)

        except HiveError as e:
            self.metrics.record_error(component="processor", error=e)
            log.error("analysis job failed", error=str(e), error_type=type(e).__name__)
            await self.exclusivity.record_failure(job_id, job.conversation_id, claim.locked_at, e)
            return self._finish(JobOutcome.FAILED, job_id)

        except Exception as e:
            self.metrics.record_error(component="processor", error=e)
            log.error("unexpected analysis error", error=str(e), error_type=type(e).__name__)
            await self.exclusivity.record_failure(job_id, job.conversation_id, claim.locked_at, e)
            self._finish(JobOutcome.FAILED, job_id)
            raise

        if not saved:
            log.warning("job superseded during analysis, result discarded")
            return self._finish(JobOutcome.SUPERSEDED, job_id)

        log.info("analysis job succeeded", responses=result.response_count, clusters=result.cluster_count)
        return self._finish(JobOutcome.SUCCEEDED, job_id)

    def _finish(self, outcome: JobOutcome, job_id: str) -> JobOutcome:
        self.metrics.jobs_processed.labels(outcome=outcome.value).inc()
        logger.debug("job finished", job_id=job_id, outcome=outcome.value)
        return outcome


class AnalysisTaskRunner:
    """Tracked background execution of analysis jobs

    Every submitted job is an asyncio.Task held until it completes, so work
    is never orphaned and failures are always logged.

    Usage:
        runner = AnalysisTaskRunner(processor)
        runner.submit(job_id)
        outcomes = await runner.wait_all()
    """

    def __init__(self, processor: JobProcessor):
        self.processor = processor
        self._tasks: Dict[asyncio.Task, str] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def active_job_ids(self) -> FrozenSet[str]:
        """Jobs submitted here and not yet finished"""
        return frozenset(self._tasks.values())

    def submit(self, job_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.processor.process_job(job_id), name=f"analysis-{job_id}")
        self._tasks[task] = job_id
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            logger.warning("analysis task cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "analysis task raised",
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
            )

    async def wait_all(self) -> List[Union[JobOutcome, BaseException]]:
        """Wait for every tracked task; exceptions are returned, not raised"""
        if not self._tasks:
            return []
        return await asyncio.gather(*list(self._tasks), return_exceptions=True)
