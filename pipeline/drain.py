"""
Drain detection for a consumer group.

Lag per partition is ``log_end - committed`` (a partition the group never
committed counts as committed at 0). A group is drained when nothing was
ever produced to the topic or when the summed lag is zero.
"""

import asyncio
import time
from typing import Callable, Optional

from core.config import settings
from core.exceptions import DrainTimeoutError, WorkerError
from pipeline.message_log import GroupAdmin
from pipeline.worker import interruptible_sleep
from schemas.status import DrainStatus
import logging

logger = logging.getLogger(__name__)


class DrainMonitor:
    """
    Poll a group's offsets until it drains or the wait ceiling is reached.

    Attributes:
        admin: Group admin used for describe-group calls
        poll_interval: Seconds between polls
        max_wait: Ceiling on one ``wait_for_drain`` call, in seconds
    """

    def __init__(
        self,
        admin: GroupAdmin,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ):
        self.admin = admin
        self.poll_interval = poll_interval if poll_interval is not None else settings.DRAIN_POLL_INTERVAL_SECONDS
        self.max_wait = max_wait if max_wait is not None else settings.DRAIN_MAX_WAIT_SECONDS

    async def status(self, group_id: str, topic: str) -> DrainStatus:
        partitions = await self.admin.describe_group(group_id, topic)
        # A topic that does not exist yet has never been produced to
        return DrainStatus.from_partitions(group_id, topic, partitions or [])

    async def wait_for_drain(
        self,
        group_id: str,
        topic: str,
        stop_event: Optional[asyncio.Event] = None,
        abort_check: Optional[Callable[[], Optional[str]]] = None,
    ) -> Optional[DrainStatus]:
        """
        Block until the group is drained.

        Args:
            stop_event: Ends the wait early; the last status seen is returned
            abort_check: Called between polls; a non-empty reason aborts

        Returns:
            The drained status, or the last status seen when stopped

        Raises:
            DrainTimeoutError: ``max_wait`` elapsed before the group drained
            WorkerError: ``abort_check`` reported a reason to give up
        """
        started = time.monotonic()
        last: Optional[DrainStatus] = None

        while True:
            try:
                last = await self.status(group_id, topic)
            except Exception as e:
                logger.warning(f"Drain status poll for {group_id} failed: {str(e)}")
            else:
                logger.info(
                    f"Group {group_id}: log_end={last.log_end_offset} lag={last.lag} "
                    f"partitions={last.partitions}"
                )
                if last.drained:
                    return last

            waited = time.monotonic() - started
            if waited >= self.max_wait:
                raise DrainTimeoutError(
                    f"Group {group_id} did not drain within {self.max_wait}s",
                    context={
                        "group_id": group_id,
                        "waited_seconds": round(waited, 1),
                        "last_lag": last.lag if last else None,
                        "last_log_end": last.log_end_offset if last else None,
                    }
                )

            if abort_check is not None:
                reason = abort_check()
                if reason:
                    raise WorkerError(reason, context={"group_id": group_id})

            if await interruptible_sleep(min(self.poll_interval, self.max_wait - waited), stop_event):
                logger.info(f"Drain wait for {group_id} interrupted by stop request")
                return last
