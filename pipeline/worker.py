"""
Supervised background workers.

A worker is an asyncio task running ``factory(stop_event)``. The supervisor
restarts it with exponential backoff when it raises, up to a restart
ceiling, and stops it cooperatively (stop event, bounded wait, then
cancellation).
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from core.config import settings
from core.exceptions import WorkerError
from models.base import WorkerState
from schemas.status import WorkerStatus
import logging

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[asyncio.Event], Awaitable[Any]]

MAX_RESTART_DELAY = 60.0


async def interruptible_sleep(seconds: float, stop_event: Optional[asyncio.Event]) -> bool:
    """Sleep up to ``seconds``; returns True when woken by ``stop_event``."""
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(seconds, 0))
        return True
    except asyncio.TimeoutError:
        return False


class SupervisedWorker:
    """
    One restartable background task.

    Attributes:
        name: Worker name
        status: Live ``WorkerStatus`` (state, restarts, last error, timestamps)
    """

    def __init__(
        self,
        name: str,
        factory: WorkerFactory,
        max_restarts: int,
        restart_backoff: float,
        shutdown_timeout: float,
    ):
        self.name = name
        self.factory = factory
        self.max_restarts = max_restarts
        self.restart_backoff = restart_backoff
        self.shutdown_timeout = shutdown_timeout

        self.status = WorkerStatus(name=name, state=WorkerState.PENDING)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            raise WorkerError(f"Worker '{self.name}' is already running", context={"worker": self.name})
        self._stop_event.clear()
        self.status = WorkerStatus(name=self.name, state=WorkerState.PENDING)
        self._task = asyncio.create_task(self._supervise(), name=f"worker:{self.name}")

    def _restart_delay(self) -> float:
        return min(self.restart_backoff * (2 ** (self.status.restarts - 1)), MAX_RESTART_DELAY)

    async def _supervise(self) -> None:
        while True:
            self.status.state = WorkerState.RUNNING
            self.status.started_at = datetime.now(timezone.utc)
            try:
                await self.factory(self._stop_event)
                if not self._stop_event.is_set():
                    logger.info(f"Worker '{self.name}' finished on its own")
                break
            except Exception as e:
                self.status.last_error = f"{type(e).__name__}: {e}"
                if self._stop_event.is_set():
                    logger.warning(f"Worker '{self.name}' failed while stopping: {self.status.last_error}")
                    break
                if self.status.restarts >= self.max_restarts:
                    self.status.state = WorkerState.FAILED
                    self.status.stopped_at = datetime.now(timezone.utc)
                    logger.error(f"Worker '{self.name}' failed after {self.status.restarts} restarts: {self.status.last_error}")
                    return

                self.status.restarts += 1
                self.status.state = WorkerState.RESTARTING
                delay = self._restart_delay()
                logger.warning(
                    f"Worker '{self.name}' crashed ({self.status.last_error}); "
                    f"restart {self.status.restarts}/{self.max_restarts} in {delay}s"
                )
                if await interruptible_sleep(delay, self._stop_event):
                    break

        self.status.state = WorkerState.STOPPED
        self.status.stopped_at = datetime.now(timezone.utc)

    async def stop(self) -> bool:
        """
        Stop the worker.

        Returns:
            False when the worker was not running (already stopped or failed)
        """
        if not self.running:
            return False

        self.status.state = WorkerState.STOPPING
        self._stop_event.set()

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Worker '{self.name}' did not stop within {self.shutdown_timeout}s; cancelling")
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        except Exception as e:
            logger.error(f"Worker '{self.name}' raised during shutdown: {str(e)}")

        self.status.state = WorkerState.STOPPED
        self.status.stopped_at = datetime.now(timezone.utc)
        logger.info(f"Worker '{self.name}' stopped")
        return True


class WorkerManager:
    """
    Start/stop/describe named background workers.

    Usage:
        workers = WorkerManager()
        await workers.start("consumer:user_register", consumer.run)
        workers.describe("consumer:user_register")
        await workers.stop("consumer:user_register")
    """

    def __init__(
        self,
        max_restarts: Optional[int] = None,
        restart_backoff: Optional[float] = None,
        shutdown_timeout: Optional[float] = None,
    ):
        self.max_restarts = max_restarts if max_restarts is not None else settings.WORKER_MAX_RESTARTS
        self.restart_backoff = (
            restart_backoff if restart_backoff is not None else settings.WORKER_RESTART_BACKOFF_SECONDS
        )
        self.shutdown_timeout = (
            shutdown_timeout if shutdown_timeout is not None else settings.WORKER_SHUTDOWN_TIMEOUT_SECONDS
        )
        self._workers: Dict[str, SupervisedWorker] = {}

    async def start(self, name: str, factory: WorkerFactory) -> WorkerStatus:
        existing = self._workers.get(name)
        if existing is not None and existing.running:
            raise WorkerError(f"Worker '{name}' is already running", context={"worker": name})

        worker = SupervisedWorker(
            name,
            factory,
            max_restarts=self.max_restarts,
            restart_backoff=self.restart_backoff,
            shutdown_timeout=self.shutdown_timeout,
        )
        self._workers[name] = worker
        worker.start()
        # Let the task reach its first await
        await asyncio.sleep(0)
        logger.info(f"Worker '{name}' started")
        return worker.status

    async def stop(self, name: str) -> bool:
        worker = self._workers.get(name)
        if worker is None:
            return False
        return await worker.stop()

    def describe(self, name: str) -> Optional[WorkerStatus]:
        worker = self._workers.get(name)
        return worker.status.model_copy() if worker is not None else None

    def is_running(self, name: str) -> bool:
        worker = self._workers.get(name)
        return worker is not None and worker.running

    async def stop_all(self) -> None:
        for name in list(self._workers):
            try:
                await self.stop(name)
            except Exception as e:
                logger.error(f"Failed to stop worker '{name}': {str(e)}")
