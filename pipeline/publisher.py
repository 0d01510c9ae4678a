"""
Extractor/publisher: pump source pages into the message log.

Publishing is a best-effort pump. A chunk that fails to publish is logged
and skipped; re-running the extraction is the recovery path, and idempotent
upserts downstream absorb the resulting duplicates.
"""

import asyncio
import json
import time
import uuid
from typing import Any, Callable, Dict, Iterator, List, Optional

from core.config import settings
from core.exceptions import PublishError
from pipeline.message_log import OutboundMessage, RecordProducer
from pipeline.source import SourceReader
from schemas.jobs import JobSpec
from schemas.status import PublishResult
import logging

logger = logging.getLogger(__name__)


def is_valid_key(value: Any) -> bool:
    """Positive integer, or a string of digits denoting one."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value > 0
    if isinstance(value, str):
        text = value.strip()
        return text.isdigit() and int(text) > 0
    return False


def synthesize_key() -> str:
    """Unique placeholder key: ``temp_<epoch ms>_<random>``."""
    return f"temp_{int(time.time() * 1000)}_{uuid.uuid4().hex}"


class ExtractorPublisher:
    """
    Read every page of a job's source table and publish it as keyed messages.

    Responsibilities:
    - Walk the source with an offset cursor until an empty page, or until no
      publishable row arrived for ``idle_timeout`` seconds
    - Key each message by the entity's natural key (placeholder when unusable)
    - Chunk by count and by payload bytes, throttle between chunks
    - Always disconnect the producer; disconnect errors are only logged
    """

    def __init__(
        self,
        reader: SourceReader,
        producer: RecordProducer,
        chunk_size: Optional[int] = None,
        max_chunk_bytes: Optional[int] = None,
        throttle_seconds: Optional[float] = None,
        idle_timeout_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reader = reader
        self.producer = producer
        self.chunk_size = chunk_size or settings.PUBLISH_CHUNK_SIZE
        self.max_chunk_bytes = max_chunk_bytes or settings.PUBLISH_MAX_CHUNK_BYTES
        self.throttle_seconds = (
            throttle_seconds if throttle_seconds is not None else settings.PUBLISH_THROTTLE_SECONDS
        )
        self.idle_timeout_seconds = (
            idle_timeout_seconds if idle_timeout_seconds is not None else settings.SOURCE_IDLE_TIMEOUT_SECONDS
        )
        self._clock = clock

    def to_message(self, job: JobSpec, row: Dict[str, Any], result: PublishResult) -> OutboundMessage:
        raw_key = row.get(job.key_field)
        if is_valid_key(raw_key):
            key = str(raw_key).strip()
        else:
            key = synthesize_key()
            result.synthesized_keys += 1
            logger.debug(f"Synthesized key {key} for {job.name} row with {job.key_field}={raw_key!r}")
        return OutboundMessage(key=key, value=json.dumps(row, default=str).encode("utf-8"))

    def chunk(self, messages: List[OutboundMessage]) -> Iterator[List[OutboundMessage]]:
        """Split ``messages`` into chunks within both the count and byte ceilings."""
        current: List[OutboundMessage] = []
        current_bytes = 0
        for message in messages:
            too_many = len(current) >= self.chunk_size
            too_big = current and current_bytes + message.size > self.max_chunk_bytes
            if too_many or too_big:
                yield current
                current, current_bytes = [], 0
            current.append(message)
            current_bytes += message.size
        if current:
            yield current

    async def _publish(self, job: JobSpec, messages: List[OutboundMessage], result: PublishResult) -> None:
        for chunk in self.chunk(messages):
            try:
                await self.producer.send_chunk(job.topic, chunk)
                result.records_sent += len(chunk)
            except Exception as e:
                result.records_failed += len(chunk)
                error = PublishError(
                    "Chunk publish failed",
                    context={"job_name": job.name, "topic": job.topic, "chunk_size": len(chunk)},
                    original_exception=e
                )
                logger.error(str(error), extra={"error_context": error.to_dict()})

            if self.throttle_seconds > 0:
                await asyncio.sleep(self.throttle_seconds)

    async def run(self, job: JobSpec, stop_event: Optional[asyncio.Event] = None) -> PublishResult:
        """
        Publish the whole source table of ``job``.

        Returns:
            PublishResult with records sent/failed and the stop reason

        Raises:
            ExtractionError: Source pages could not be fetched (after retries)
            PublishError: The producer could not connect
        """
        result = PublishResult(job_name=job.name)
        offset = 0
        last_data_at = self._clock()

        try:
            await self.producer.start()
        except Exception as e:
            raise PublishError(
                "Producer failed to connect",
                context={"job_name": job.name, "topic": job.topic},
                original_exception=e
            )

        try:
            while True:
                if stop_event is not None and stop_event.is_set():
                    result.stopped_by = "stopped"
                    break

                rows = await self.reader.fetch(job.source_table, job.page_size, offset)
                if not rows:
                    result.stopped_by = "empty_page"
                    break

                result.pages += 1
                offset += len(rows)

                messages = [
                    self.to_message(job, row, result)
                    for row in rows
                    if isinstance(row, dict) and row
                ]

                now = self._clock()
                if messages:
                    last_data_at = now
                elif now - last_data_at >= self.idle_timeout_seconds:
                    logger.info(
                        f"No publishable rows for {job.name} in {self.idle_timeout_seconds}s; stopping"
                    )
                    result.stopped_by = "idle_timeout"
                    break

                await self._publish(job, messages, result)
                logger.info(f"{job.name}: page {result.pages} offset={offset} sent={result.records_sent}")
        finally:
            try:
                await self.producer.stop()
            except Exception as e:
                logger.error(f"Producer disconnect failed for {job.name}: {str(e)}")

        logger.info(
            f"Publisher finished {job.name}: sent={result.records_sent} "
            f"failed={result.records_failed} pages={result.pages} stopped_by={result.stopped_by}"
        )
        return result
