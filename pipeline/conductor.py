"""
Pipeline Conductor - worker loop and CLI

Coordinates:
- Polling for claimable analysis jobs
- Dispatch through the tracked AnalysisTaskRunner
- Graceful shutdown on SIGINT/SIGTERM
- Admin commands (run one job, enqueue a conversation)

Pure async architecture - no threading, uses asyncio tasks
"""

import asyncio
import json
import signal
from typing import Optional

from analysis.embeddings import EmbeddingClient
from analysis.gemini import create_client
from analysis.llm.consolidator import ClusterConsolidator
from analysis.llm.themes import ClusterThemeGenerator
from config import AnalysisSettings, config, get_logger
from database.db_postgres import Database
from pipeline.analyzer import AnalysisPipeline
from pipeline.metrics import metrics as default_metrics, serve_metrics
from pipeline.processor import AnalysisTaskRunner, JobOutcome, JobProcessor
from pipeline.protocols import MetricsCollector

logger = get_logger(__name__).bind(component="conductor")


def build_processor(
    db: Database,
    settings: Optional[AnalysisSettings] = None,
    metrics: Optional[MetricsCollector] = None,
) -> JobProcessor:
    """Wire repositories and model clients into a JobProcessor"""
    settings = settings or AnalysisSettings.from_config()
    metrics = metrics or default_metrics
    client = create_client()
    embedder = EmbeddingClient(client=client, batch_size=config.EMBEDDING_BATCH_SIZE, metrics=metrics)
    consolidator = ClusterConsolidator(client=client, settings=settings, metrics=metrics)
    themes = ClusterThemeGenerator(client=client, metrics=metrics)
    pipeline = AnalysisPipeline(db.conversations, embedder, consolidator, settings, theme_generator=themes)
    return JobProcessor(db.jobs, db.conversations, pipeline, settings, metrics)


class Conductor:
    """Polling worker for analysis jobs"""

    def __init__(
        self,
        processor: JobProcessor,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
        max_concurrent_jobs: int = 1,
    ):
        self.processor = processor
        self.runner = AnalysisTaskRunner(processor)
        self.poll_interval = poll_interval
        self.max_concurrent_jobs = max_concurrent_jobs
        # Use asyncio.Event for proper async-safe shutdown signaling
        self._shutdown_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return not self._shutdown_event.is_set()

    def stop(self) -> None:
        self._shutdown_event.set()

    async def _sleep_or_shutdown(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> bool:
        """Dispatch the next claimable job if capacity allows; True if one was submitted"""
        if self.runner.pending >= self.max_concurrent_jobs:
            return False

        # A submitted job stays claimable until its task's claim lands
        job = await self.processor.jobs.fetch_next_job(
            self.processor.settings.lock_ttl_ms, exclude_ids=sorted(self.runner.active_job_ids)
        )
        if job is None:
            return False

        logger.info("dispatching analysis job", job_id=job.id, conversation_id=job.conversation_id)
        self.runner.submit(job.id)
        return True

    async def run_forever(self) -> None:
        """Poll until stop() is called, then wait for in-flight jobs"""
        logger.info("starting analysis worker", poll_interval=self.poll_interval)

        while self.is_running:
            try:
                dispatched = await self.run_once()
            except Exception as e:  # Intentionally broad: worker resilience
                logger.error("worker poll failed", error=str(e), error_type=type(e).__name__)
                dispatched = False

            if not dispatched:
                await self._sleep_or_shutdown(self.poll_interval)
            else:
                # Let the submitted task start before the next poll
                await asyncio.sleep(0)

        logger.info("shutdown requested, waiting for in-flight jobs", pending=self.runner.pending)
        await self.runner.wait_all()
        logger.info("shutdown complete")


def main():
    """Entry point for the hive-analysis CLI"""
    import click

    @click.group(invoke_without_command=True)
    @click.pass_context
    def cli(ctx):
        """Hive response analysis worker"""
        if ctx.invoked_subcommand is None:
            click.echo(ctx.get_help())

    @cli.command("run-job")
    @click.argument("job_id")
    def run_job(job_id):
        """Claim and run a single analysis job"""
        async def run():
            db = await Database.create()
            try:
                processor = build_processor(db)
                runner = AnalysisTaskRunner(processor)
                runner.submit(job_id)
                return (await runner.wait_all())[0]
            finally:
                await db.close()

        outcome = asyncio.run(run())
        if isinstance(outcome, JobOutcome):
            click.echo(f"Job {job_id}: {outcome.value}")
        else:
            click.echo(f"Job {job_id}: error ({type(outcome).__name__})")
            raise SystemExit(1)

    @cli.command("worker")
    @click.option("--concurrency", default=1, show_default=True, type=click.IntRange(min=1),
                  help="Maximum jobs analyzed at once")
    @click.option("--metrics-port", type=int, default=None, help="Serve Prometheus metrics on this port")
    def worker(concurrency, metrics_port):
        """Poll for analysis jobs until SIGINT/SIGTERM"""
        if metrics_port:
            serve_metrics(metrics_port)
            logger.info("metrics endpoint started", port=metrics_port)

        async def run():
            db = await Database.create()
            try:
                conductor = Conductor(build_processor(db), max_concurrent_jobs=concurrency)

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.add_signal_handler(sig, _handle_signal, conductor, sig)

                await conductor.run_forever()
            finally:
                await db.close()

        asyncio.run(run())

    @cli.command("enqueue")
    @click.argument("conversation_id")
    @click.option("--strategy", type=click.Choice(["full", "incremental"]), default="full", show_default=True)
    def enqueue(conversation_id, strategy):
        """Queue an analysis job for a conversation"""
        async def run():
            db = await Database.create()
            try:
                return await db.jobs.enqueue_job(conversation_id, strategy)
            finally:
                await db.close()

        job = asyncio.run(run())
        click.echo(json.dumps(job.to_dict(), indent=2))

    @cli.command("init-schema")
    def init_schema():
        """Create analysis tables if missing"""
        async def run():
            db = await Database.create()
            try:
                await db.init_schema()
            finally:
                await db.close()

        asyncio.run(run())
        click.echo("Schema initialized")

    cli()


def _handle_signal(conductor: Conductor, sig: signal.Signals) -> None:
    logger.info("received signal - graceful shutdown", signal=sig.name)
    conductor.stop()


if __name__ == "__main__":
    main()
