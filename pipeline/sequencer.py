"""
Job sequencer - runs entity migrations one at a time.

Each job goes through:

    IDLE -> CONSUMER_STARTING -> PRODUCER_RUNNING -> DRAIN_WAITING
         -> CONSUMER_STOPPING -> DONE

with SKIPPED reachable when the producer exhausts its attempts or the drain
wait times out, and FAILED for anything unexpected. A failing job never
stops the run: the sequencer logs it and moves on to the next job.
"""

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional

from core.config import settings
from core.database import Database
from core.exceptions import DrainTimeoutError
from models.base import JobState, RunMode, WorkerState
from models.job_run import MigrationJobRun
from pipeline.context import PipelineContext
from pipeline.worker import interruptible_sleep
from schemas.jobs import JobSpec, OrchestratorConfig
from schemas.status import JobRunResult
import logging

logger = logging.getLogger(__name__)

MAX_KEPT_RESULTS = 1000


def consumer_worker_name(job: JobSpec) -> str:
    return f"consumer:{job.name}"


class JobRunRecorder:
    """Best-effort persistence of job outcomes into ``migration_job_runs``."""

    def __init__(self, database: Optional[Database]):
        self.database = database

    async def record(self, job: JobSpec, result: JobRunResult) -> None:
        if self.database is None:
            return

        status = result.drain_status
        try:
            async with self.database.session() as session:
                session.add(MigrationJobRun(
                    cycle=result.cycle,
                    job_name=job.name,
                    group_id=job.group_id,
                    topic=job.topic,
                    state=result.state,
                    records_sent=result.records_sent,
                    producer_attempts=result.producer_attempts,
                    drained=result.drained,
                    log_end_offset=status.log_end_offset if status else None,
                    lag=status.lag if status else None,
                    error_message=result.error_message,
                    started_at=result.started_at.replace(tzinfo=None),
                    completed_at=result.completed_at.replace(tzinfo=None) if result.completed_at else None,
                    duration_seconds=result.duration_seconds,
                ))
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to record job run for {job.name}: {str(e)}")


class JobSequencer:
    """
    Drive the configured jobs through their lifecycle.

    Responsibilities:
    - Start each job's batch consumer as a supervised worker
    - Run the publisher synchronously with a bounded number of attempts
    - Gate progress on drain detection (with a wait ceiling)
    - Stop the consumer, record the outcome, move on
    - Repeat in cycles when configured to

    Usage:
        async with PipelineContext() as context:
            sequencer = JobSequencer(config, context)
            results = await sequencer.run()
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        context: PipelineContext,
        recorder: Optional[JobRunRecorder] = None,
        producer_max_attempts: Optional[int] = None,
        producer_retry_backoff: Optional[float] = None,
    ):
        self.config = config
        self.context = context
        self.recorder = recorder or JobRunRecorder(context.ledger_database)
        self.producer_max_attempts = max(
            1, producer_max_attempts if producer_max_attempts is not None else settings.PRODUCER_MAX_ATTEMPTS
        )
        self.producer_retry_backoff = (
            producer_retry_backoff if producer_retry_backoff is not None
            else settings.PRODUCER_RETRY_BACKOFF_SECONDS
        )

        self.results: Deque[JobRunResult] = deque(maxlen=MAX_KEPT_RESULTS)
        self._stop_event = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request a graceful stop; the job in progress finishes its current phase."""
        if not self._stop_event.is_set():
            logger.info("Stop requested for job sequencer")
        self._stop_event.set()

    def _worker_failure(self, worker_name: str) -> Optional[str]:
        status = self.context.workers.describe(worker_name)
        if status is not None and status.state == WorkerState.FAILED:
            return f"Consumer worker failed: {status.last_error}"
        return None

    async def _run_producer(self, job: JobSpec, result: JobRunResult) -> bool:
        """Run the publisher with retries; returns False once attempts are exhausted."""
        for attempt in range(1, self.producer_max_attempts + 1):
            result.producer_attempts = attempt
            try:
                published = await self.context.build_publisher().run(job, stop_event=self._stop_event)
                result.records_sent += published.records_sent
                return True
            except Exception as e:
                result.error_message = str(e)
                logger.error(
                    f"Producer for {job.name} failed (attempt {attempt}/{self.producer_max_attempts}): {str(e)}"
                )

            if attempt < self.producer_max_attempts:
                if await interruptible_sleep(self.producer_retry_backoff, self._stop_event):
                    break

        return False

    async def run_job(self, job: JobSpec, cycle: int = 1) -> JobRunResult:
        """Run one job's whole lifecycle; never raises for job-level failures."""
        result = JobRunResult(job_name=job.name, cycle=cycle)
        worker_name = consumer_worker_name(job)
        final_state = JobState.DONE

        logger.info(f"[cycle {cycle}] Starting job {job.name} (topic={job.topic}, group={job.group_id})")

        try:
            # --------------------------------------------------
            # PHASE 1: START CONSUMER
            # --------------------------------------------------
            result.state = JobState.CONSUMER_STARTING
            consumer = self.context.build_consumer(job)
            await self.context.workers.start(worker_name, consumer.run)

            # --------------------------------------------------
            # PHASE 2: PRODUCE
            # --------------------------------------------------
            result.state = JobState.PRODUCER_RUNNING
            if not await self._run_producer(job, result):
                logger.warning(f"Producer for {job.name} exhausted its attempts; job will be skipped")
                final_state = JobState.SKIPPED

            # --------------------------------------------------
            # PHASE 3: WAIT FOR DRAIN
            # --------------------------------------------------
            # Still waited for when the producer failed: part of the data may be in the log
            result.state = JobState.DRAIN_WAITING
            try:
                status = await self.context.drain_monitor.wait_for_drain(
                    job.group_id,
                    job.topic,
                    stop_event=self._stop_event,
                    abort_check=lambda: self._worker_failure(worker_name),
                )
                result.drain_status = status
                result.drained = bool(status and status.drained)
                if not result.drained:
                    final_state = JobState.SKIPPED
            except DrainTimeoutError as e:
                logger.warning(str(e))
                result.error_message = e.message
                final_state = JobState.SKIPPED

        except Exception as e:
            logger.error(f"Job {job.name} failed: {str(e)}", exc_info=True)
            result.error_message = str(e)
            final_state = JobState.FAILED

        # --------------------------------------------------
        # PHASE 4: STOP CONSUMER
        # --------------------------------------------------
        result.state = JobState.CONSUMER_STOPPING
        try:
            if not await self.context.workers.stop(worker_name):
                logger.info(f"Consumer worker for {job.name} was already stopped")
        except Exception as e:
            logger.error(f"Failed to stop consumer worker for {job.name}: {str(e)}")

        result.state = final_state
        result.completed_at = datetime.now(timezone.utc)
        self.results.append(result)
        await self.recorder.record(job, result)

        logger.info(
            f"[cycle {cycle}] Job {job.name} finished: state={result.state.value} "
            f"sent={result.records_sent} drained={result.drained} "
            f"duration={result.duration_seconds:.1f}s"
        )
        return result

    async def run_cycle(self, cycle: int = 1) -> List[JobRunResult]:
        results = []
        for job in self.config.jobs:
            if self.stopping:
                break
            results.append(await self.run_job(job, cycle))

        summary = ", ".join(f"{r.job_name}={r.state.value} ({r.duration_seconds:.1f}s)" for r in results)
        logger.info(f"Cycle {cycle} complete: {summary}")
        return results

    async def run(self) -> List[JobRunResult]:
        """
        Run all jobs once, or repeatedly in cycle mode until stopped.

        Returns:
            Results of every job run (most recent ``MAX_KEPT_RESULTS``)
        """
        cycle = 0
        while not self.stopping:
            cycle += 1
            await self.run_cycle(cycle)

            if self.config.mode == RunMode.ONCE:
                break

            logger.info(f"Sleeping {self.config.cycle_delay_seconds}s before cycle {cycle + 1}")
            if await interruptible_sleep(self.config.cycle_delay_seconds, self._stop_event):
                break

        logger.info(f"Job sequencer finished after {cycle} cycle(s)")
        return list(self.results)
