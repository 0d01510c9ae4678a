"""
Batch consumer: the per-message state machine between the message log and
the target sinks.

Per message:

    RECEIVED -> PARSED | PARSE_FAILED
    PARSED   -> FILTERED_OUT | ACCEPTED (or REJECTED on unusable key)
    ACCEPTED -> per sink WRITE_OK | WRITE_FAILED
    *        -> RESOLVED

Every message of a batch is resolved exactly once. Offsets are committed
after the last message unless the batch turned out to be batch-fatal, in
which case nothing is committed and the batch is handed back for
redelivery.
"""

import asyncio
from typing import Any, Dict, List, Optional

from core.exceptions import (
    BatchFatalError,
    ParseError,
    RowWriteError,
    SinkUnavailableError,
    TransformationError,
    ValidationError,
)
from pipeline.error_ledger import ErrorLedger, build_entry
from pipeline.message_log import BatchSource, InboundMessage, MessageBatch
from pipeline.sinks import TargetSink
from pipeline.transform import RecordFilter, RecordTransformer, UpsertRow, parse_payload
from schemas.jobs import JobSpec
from schemas.status import BatchOutcome, ConsumerStats, ErrorLedgerEntry
import logging

logger = logging.getLogger(__name__)


class _BatchState:
    """Scratch state of one ``on_batch`` call."""

    def __init__(self, batch: MessageBatch, sinks: List[TargetSink]):
        self.outcome = BatchOutcome(
            topic=batch.topic,
            partition=batch.partition,
            first_offset=batch.first_offset,
            last_offset=batch.last_offset,
            received=len(batch.messages),
        )
        # Ledger entries are only written once the batch is known to commit,
        # so a redelivered batch never ledgers the same failure twice
        self.deferred: List[ErrorLedgerEntry] = []
        self.unavailable: Dict[str, int] = {sink.name: 0 for sink in sinks}


class BatchConsumer:
    """
    Consume one job's topic and upsert every in-scope record into all sinks.

    Responsibilities:
    - Parse, filter and transform each message
    - Fan out each row to every sink concurrently
    - Ledger per-row failures without blocking the batch
    - Commit only fully resolved, non-fatal batches
    - Heartbeat between rows

    Batch-fatal rule (``JobSpec.batch_fatal_policy``):
    - ``any_sink``: some sink was unreachable for every accepted row
    - ``all_sinks``: every sink was unreachable for every accepted row
    """

    def __init__(
        self,
        job: JobSpec,
        source: BatchSource,
        sinks: List[TargetSink],
        ledger: ErrorLedger,
        transformer: Optional[RecordTransformer] = None,
        fetch_timeout_ms: int = 1000,
    ):
        self.job = job
        self.source = source
        self.sinks = sinks
        self.ledger = ledger
        self.transformer = transformer or RecordTransformer(job)
        self.record_filter = RecordFilter(job.filter)
        self.fetch_timeout_ms = fetch_timeout_ms
        self.stats = ConsumerStats()

    # ------------------------------------------------------------------
    # Per message
    # ------------------------------------------------------------------

    async def _write_row(self, row: UpsertRow, record: Dict[str, Any], state: _BatchState) -> None:
        results = await asyncio.gather(
            *[sink.write(row) for sink in self.sinks],
            return_exceptions=True
        )

        for sink, result in zip(self.sinks, results):
            if result is None:
                state.outcome.writes_ok += 1
                continue

            if not isinstance(result, Exception):
                raise result

            state.outcome.writes_failed += 1
            if isinstance(result, SinkUnavailableError):
                state.unavailable[sink.name] += 1
                state.deferred.append(build_entry(
                    self.job,
                    f"SINK_UNAVAILABLE: {result.original_exception or result.message}",
                    payload=record,
                    primary_key=row.key,
                    target_tables=[sink.qualified_name],
                ))
                continue

            cause = result.original_exception if isinstance(result, RowWriteError) else result
            state.deferred.append(build_entry(
                self.job,
                f"INSERT_FAILED: {cause}",
                payload=record,
                primary_key=row.key,
                target_tables=[sink.qualified_name],
            ))

    async def _process(self, message: InboundMessage, state: _BatchState) -> None:
        outcome = state.outcome

        try:
            record = parse_payload(message.value)
        except ParseError as e:
            outcome.parse_failed += 1
            state.deferred.append(build_entry(self.job, e.message, payload={}))
            return

        reason = self.record_filter.rejection_reason(record)
        if reason is not None:
            outcome.filtered_out += 1
            logger.debug(f"{self.job.name}: offset {message.offset} filtered out ({reason})")
            return

        try:
            row = self.transformer.transform(record)
        except (ValidationError, TransformationError) as e:
            outcome.rejected += 1
            if isinstance(e, TransformationError) or self.job.on_invalid_key == "ledger":
                state.deferred.append(build_entry(
                    self.job, e.message, payload=record, primary_key=record.get(self.job.key_field)
                ))
            return

        outcome.accepted += 1
        await self._write_row(row, record, state)

    # ------------------------------------------------------------------
    # Per batch
    # ------------------------------------------------------------------

    def _fatal_sinks(self, state: _BatchState) -> List[str]:
        accepted = state.outcome.accepted
        if accepted == 0:
            return []
        down = [name for name, failures in state.unavailable.items() if failures >= accepted]
        if self.job.batch_fatal_policy == "all_sinks" and len(down) < len(self.sinks):
            return []
        return down

    async def on_batch(self, batch: MessageBatch) -> BatchOutcome:
        """
        Resolve every message of ``batch`` and commit when safe.

        Raises:
            BatchFatalError: Sinks were unreachable for the whole batch; no
                offset of the batch has been committed
        """
        state = _BatchState(batch, self.sinks)

        for message in batch.messages:
            try:
                await self._process(message, state)
            except Exception as e:
                # Unexpected per-record failure: ledger it and move on
                logger.exception(f"{self.job.name}: unexpected error at offset {message.offset}")
                state.deferred.append(build_entry(
                    self.job, f"UNEXPECTED_ERROR: {type(e).__name__}: {e}", payload={"offset": message.offset}
                ))
            batch.resolve(message)
            await batch.heartbeat()

        down = self._fatal_sinks(state)
        if down:
            raise BatchFatalError(
                "Target sinks unreachable for the whole batch",
                context={
                    "job_name": self.job.name,
                    "topic": batch.topic,
                    "partition": batch.partition,
                    "first_offset": batch.first_offset,
                    "last_offset": batch.last_offset,
                    "unavailable_sinks": down,
                }
            )

        await self.ledger.record_many(state.deferred)
        state.outcome.committed = await batch.commit_offsets_if_necessary()

        outcome = state.outcome
        logger.info(
            f"{self.job.name} [{batch.partition}] offsets {outcome.first_offset}-{outcome.last_offset}: "
            f"accepted={outcome.accepted} filtered={outcome.filtered_out} "
            f"rejected={outcome.rejected} parse_failed={outcome.parse_failed} "
            f"writes_ok={outcome.writes_ok} writes_failed={outcome.writes_failed}"
        )
        return outcome

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> ConsumerStats:
        """
        Consume until ``stop_event`` is set.

        The batch in flight when stop is requested is finished; later
        batches of the same fetch are left uncommitted for redelivery.
        """
        await self.source.start()
        try:
            while not stop_event.is_set():
                batches = await self.source.fetch_batches(self.fetch_timeout_ms)

                for index, batch in enumerate(batches):
                    if stop_event.is_set():
                        break
                    try:
                        outcome = await self.on_batch(batch)
                    except BatchFatalError as e:
                        self.stats.batches_fatal += 1
                        logger.error(str(e), extra={"error_context": e.to_dict()})
                        for pending in batches[index:]:
                            await pending.rewind()
                        raise
                    self.stats.add(outcome)
        finally:
            try:
                await self.source.stop()
            except Exception as e:
                logger.error(f"Consumer disconnect failed for {self.job.name}: {str(e)}")

        logger.info(
            f"Consumer for {self.job.name} stopped: batches={self.stats.batches} "
            f"accepted={self.stats.accepted} writes_failed={self.stats.writes_failed}"
        )
        return self.stats
