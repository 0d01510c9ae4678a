"""
Unit tests for the batch consumer
"""

import asyncio
import json
import pytest

from core.exceptions import BatchFatalError
from pipeline.consumer import BatchConsumer
from pipeline.error_ledger import ErrorLedger
from pipeline.sinks import build_sinks
from schemas.jobs import JobSpec
from tests.fakes import (
    FlakySink,
    InMemoryBatchSource,
    drop_email_column,
    fetch_rows,
    ledger_rows,
    publish_records,
)


def make_consumer(job, message_log, sinks, ledger_db):
    source = InMemoryBatchSource(message_log, job.topic, job.group_id, job.batch_size)
    return BatchConsumer(job, source, sinks, ErrorLedger(ledger_db), fetch_timeout_ms=10), source


async def consume_once(consumer, source):
    """Start the source and run ``on_batch`` for the first fetched batch."""
    await source.start()
    batches = await source.fetch_batches()
    assert len(batches) == 1
    return batches[0], await consumer.on_batch(batches[0])


class TestBatchOutcomes:
    """Test per-message resolution and commit"""

    @pytest.mark.asyncio
    async def test_filtered_row_is_skipped_without_ledger(self, job_spec, message_log, sink_dbs, ledger_db):
        publish_records(message_log, job_spec.topic, [
            {"id": 1, "name": "Asha", "ts": "2024-02-01"},
            {"id": 2, "name": "Ravi", "ts": "2023-01-01"},
        ])
        consumer, source = make_consumer(job_spec, message_log, build_sinks(job_spec, sink_dbs), ledger_db)

        batch, outcome = await consume_once(consumer, source)

        for name in ("live", "uat"):
            rows = await fetch_rows(sink_dbs.get(name))
            assert [r["id"] for r in rows] == [1]
        assert await ledger_rows(ledger_db) == []
        assert outcome.accepted == 1
        assert outcome.filtered_out == 1
        assert outcome.committed
        assert message_log.committed_offset(job_spec.group_id, job_spec.topic) == 2

    @pytest.mark.asyncio
    async def test_row_failure_on_one_sink_is_ledgered_and_committed(
        self, job_spec, message_log, sink_dbs, ledger_db
    ):
        live, uat = build_sinks(job_spec, sink_dbs)
        sinks = [FlakySink(live, failing_keys=[5]), uat]
        publish_records(message_log, job_spec.topic, [{"id": 5, "name": "Meera", "ts": "2024-03-01"}])
        consumer, source = make_consumer(job_spec, message_log, sinks, ledger_db)

        _, outcome = await consume_once(consumer, source)

        entries = await ledger_rows(ledger_db)
        assert len(entries) == 1
        assert entries[0].source_primary_key == "5"
        assert entries[0].target_table == live.qualified_name
        assert entries[0].error_message.startswith("INSERT_FAILED")
        assert "Duplicate entry '5'" in entries[0].error_message
        assert json.loads(entries[0].failed_data)["name"] == "Meera"

        assert await fetch_rows(sink_dbs.get("live")) == []
        assert [r["id"] for r in await fetch_rows(sink_dbs.get("uat"))] == [5]
        assert outcome.writes_ok == 1 and outcome.writes_failed == 1
        assert message_log.committed_offset(job_spec.group_id, job_spec.topic) == 1

    @pytest.mark.asyncio
    async def test_parse_error_is_ledgered_with_null_key(self, job_spec, message_log, sink_dbs, ledger_db):
        publish_records(message_log, job_spec.topic, [b"{not json", {"id": 1, "name": "Asha", "ts": "2024-02-01"}])
        consumer, source = make_consumer(job_spec, message_log, build_sinks(job_spec, sink_dbs), ledger_db)

        _, outcome = await consume_once(consumer, source)

        entries = await ledger_rows(ledger_db)
        assert [(e.error_message, e.source_primary_key, e.failed_data) for e in entries] == [
            ("INVALID_JSON", None, "{}")
        ]
        assert outcome.parse_failed == 1
        assert outcome.accepted == 1
        assert message_log.committed_offset(job_spec.group_id, job_spec.topic) == 2

    @pytest.mark.asyncio
    async def test_invalid_key_is_ledgered(self, job_spec, message_log, sink_dbs, ledger_db):
        publish_records(message_log, job_spec.topic, [{"id": 0, "name": "Zero", "ts": "2024-02-01"}])
        consumer, source = make_consumer(job_spec, message_log, build_sinks(job_spec, sink_dbs), ledger_db)

        _, outcome = await consume_once(consumer, source)

        entries = await ledger_rows(ledger_db)
        assert [(e.error_message, e.source_primary_key) for e in entries] == [("INVALID_PRIMARY_KEY", "0")]
        assert outcome.rejected == 1
        assert await fetch_rows(sink_dbs.get("live")) == []

    @pytest.mark.asyncio
    async def test_invalid_key_can_be_skipped(self, job_spec_data, message_log, sink_dbs, ledger_db):
        job_spec_data["on_invalid_key"] = "skip"
        job = JobSpec.model_validate(job_spec_data)
        publish_records(message_log, job.topic, [{"name": "No key", "ts": "2024-02-01"}])
        consumer, source = make_consumer(job, message_log, build_sinks(job, sink_dbs), ledger_db)

        _, outcome = await consume_once(consumer, source)

        assert outcome.rejected == 1
        assert await ledger_rows(ledger_db) == []
        assert outcome.committed

    @pytest.mark.asyncio
    async def test_required_column_rejects_and_ledgers(self, job_spec_data, message_log, sink_dbs, ledger_db):
        job_spec_data["on_invalid_key"] = "skip"
        job_spec_data["columns"][1] = {"column": "email", "transforms": ["clean_email"], "required": True}
        job = JobSpec.model_validate(job_spec_data)
        publish_records(message_log, job.topic, [
            {"id": 3, "name": "Kiran", "email": "no-at-sign", "ts": "2024-02-01"},
            {"id": 4, "name": "Divya", "email": "d@x.com", "ts": "2024-02-01"},
        ])
        consumer, source = make_consumer(job, message_log, build_sinks(job, sink_dbs), ledger_db)

        _, outcome = await consume_once(consumer, source)

        entries = await ledger_rows(ledger_db)
        assert [(e.error_message, e.source_primary_key) for e in entries] == [("INVALID_EMAIL", "3")]
        assert [r["id"] for r in await fetch_rows(sink_dbs.get("live"))] == [4]
        assert outcome.rejected == 1
        assert outcome.committed

    @pytest.mark.asyncio
    async def test_drifted_sink_table_does_not_block_commit(self, job_spec, message_log, sink_dbs, ledger_db):
        await drop_email_column(sink_dbs.get("uat"))
        publish_records(message_log, job_spec.topic, [
            {"id": 1, "name": "Asha", "email": "a@x.com", "ts": "2024-02-01"},
            {"id": 2, "name": "Ravi", "email": "r@x.com", "ts": "2024-02-02"},
        ])
        live, uat = build_sinks(job_spec, sink_dbs)
        consumer, source = make_consumer(job_spec, message_log, [live, uat], ledger_db)

        _, outcome = await consume_once(consumer, source)

        entries = await ledger_rows(ledger_db)
        assert outcome.committed
        assert message_log.committed_offset(job_spec.group_id, job_spec.topic) == 2
        assert [r["id"] for r in await fetch_rows(sink_dbs.get("live"))] == [1, 2]
        assert [(e.source_primary_key, e.target_table) for e in entries] == [
            ("1", uat.qualified_name),
            ("2", uat.qualified_name),
        ]
        assert all(e.error_message.startswith("INSERT_FAILED") for e in entries)

    @pytest.mark.asyncio
    async def test_heartbeat_after_every_message(self, job_spec, message_log, sink_dbs, ledger_db):
        publish_records(message_log, job_spec.topic, [
            {"id": i, "name": f"user {i}", "ts": "2024-02-01"} for i in range(1, 5)
        ])
        consumer, source = make_consumer(job_spec, message_log, build_sinks(job_spec, sink_dbs), ledger_db)

        batch, _ = await consume_once(consumer, source)

        assert batch.heartbeats == 4
        assert batch.all_resolved
        assert batch.commits == [4]


class TestBatchFatal:
    """Test offset safety when sinks are unreachable"""

    @pytest.mark.asyncio
    async def test_unreachable_sink_blocks_commit(self, job_spec, message_log, sink_dbs, ledger_db):
        live, uat = build_sinks(job_spec, sink_dbs)
        flaky = FlakySink(live, unavailable=True)
        publish_records(message_log, job_spec.topic, [
            {"id": 1, "name": "Asha", "ts": "2024-02-01"},
            {"id": 2, "name": "Ravi", "ts": "2024-02-02"},
        ])
        consumer, source = make_consumer(job_spec, message_log, [flaky, uat], ledger_db)

        await source.start()
        batch = (await source.fetch_batches())[0]

        with pytest.raises(BatchFatalError) as exc_info:
            await consumer.on_batch(batch)

        assert exc_info.value.context["unavailable_sinks"] == ["live"]
        assert batch.commits == []
        assert message_log.committed_offset(job_spec.group_id, job_spec.topic) is None
        # Connectivity failures of a redelivered batch are not ledgered
        assert await ledger_rows(ledger_db) == []

        # Redelivery after recovery converges to the same final state
        await batch.rewind()
        flaky.unavailable = False
        redelivered = (await source.fetch_batches())[0]
        outcome = await consumer.on_batch(redelivered)

        assert outcome.committed
        assert [r["id"] for r in await fetch_rows(sink_dbs.get("live"))] == [1, 2]
        assert [r["id"] for r in await fetch_rows(sink_dbs.get("uat"))] == [1, 2]
        assert message_log.committed_offset(job_spec.group_id, job_spec.topic) == 2

    @pytest.mark.asyncio
    async def test_row_errors_of_fatal_batch_are_ledgered_once(self, job_spec, message_log, sink_dbs, ledger_db):
        live, uat = build_sinks(job_spec, sink_dbs)
        flaky_live = FlakySink(live, unavailable=True)
        publish_records(message_log, job_spec.topic, [{"id": 1, "name": "Asha", "ts": "2024-02-01"}])
        consumer, source = make_consumer(
            job_spec, message_log, [flaky_live, FlakySink(uat, failing_keys=[1])], ledger_db
        )

        await source.start()
        batch = (await source.fetch_batches())[0]
        with pytest.raises(BatchFatalError):
            await consumer.on_batch(batch)

        assert await ledger_rows(ledger_db) == []

        await batch.rewind()
        flaky_live.unavailable = False
        await consumer.on_batch((await source.fetch_batches())[0])

        entries = await ledger_rows(ledger_db)
        assert [(e.source_primary_key, e.target_table) for e in entries] == [("1", uat.qualified_name)]

    @pytest.mark.asyncio
    async def test_partial_unavailability_is_ledgered_after_commit(
        self, job_spec, message_log, sink_dbs, ledger_db
    ):
        live, uat = build_sinks(job_spec, sink_dbs)
        publish_records(message_log, job_spec.topic, [
            {"id": 1, "name": "Asha", "ts": "2024-02-01"},
            {"id": 2, "name": "Ravi", "ts": "2024-02-02"},
        ])
        consumer, source = make_consumer(
            job_spec, message_log, [FlakySink(live, unavailable_keys=[2]), uat], ledger_db
        )

        _, outcome = await consume_once(consumer, source)

        entries = await ledger_rows(ledger_db)
        assert outcome.committed
        assert [(e.source_primary_key, e.target_table) for e in entries] == [("2", live.qualified_name)]
        assert entries[0].error_message.startswith("SINK_UNAVAILABLE")

    @pytest.mark.asyncio
    async def test_all_sinks_policy_tolerates_one_sink_down(
        self, job_spec_data, message_log, sink_dbs, ledger_db
    ):
        job_spec_data["batch_fatal_policy"] = "all_sinks"
        job = JobSpec.model_validate(job_spec_data)
        live, uat = build_sinks(job, sink_dbs)
        publish_records(message_log, job.topic, [{"id": 1, "name": "Asha", "ts": "2024-02-01"}])
        consumer, source = make_consumer(job, message_log, [FlakySink(live, unavailable=True), uat], ledger_db)

        _, outcome = await consume_once(consumer, source)

        assert outcome.committed
        assert len(await ledger_rows(ledger_db)) == 1

    @pytest.mark.asyncio
    async def test_all_sinks_policy_fails_when_everything_is_down(
        self, job_spec_data, message_log, sink_dbs, ledger_db
    ):
        job_spec_data["batch_fatal_policy"] = "all_sinks"
        job = JobSpec.model_validate(job_spec_data)
        sinks = [FlakySink(s, unavailable=True) for s in build_sinks(job, sink_dbs)]
        publish_records(message_log, job.topic, [{"id": 1, "name": "Asha", "ts": "2024-02-01"}])
        consumer, source = make_consumer(job, message_log, sinks, ledger_db)

        await source.start()
        with pytest.raises(BatchFatalError):
            await consumer.on_batch((await source.fetch_batches())[0])

    @pytest.mark.asyncio
    async def test_batch_without_accepted_rows_is_never_fatal(self, job_spec, message_log, sink_dbs, ledger_db):
        sinks = [FlakySink(s, unavailable=True) for s in build_sinks(job_spec, sink_dbs)]
        publish_records(message_log, job_spec.topic, [{"id": 1, "name": "Old", "ts": "2020-01-01"}])
        consumer, source = make_consumer(job_spec, message_log, sinks, ledger_db)

        _, outcome = await consume_once(consumer, source)

        assert outcome.committed
        assert sinks[0].attempts == 0


class TestRunLoop:
    """Test the worker loop"""

    @pytest.mark.asyncio
    async def test_consumes_until_stopped(self, job_spec, message_log, sink_dbs, ledger_db):
        publish_records(message_log, job_spec.topic, [
            {"id": i, "name": f"user {i}", "ts": "2024-02-01"} for i in range(1, 4)
        ])
        consumer, source = make_consumer(job_spec, message_log, build_sinks(job_spec, sink_dbs), ledger_db)
        stop_event = asyncio.Event()

        task = asyncio.create_task(consumer.run(stop_event))
        for _ in range(200):
            if message_log.committed_offset(job_spec.group_id, job_spec.topic) == 3:
                break
            await asyncio.sleep(0.01)

        stop_event.set()
        stats = await asyncio.wait_for(task, timeout=5)

        assert stats.accepted == 3
        assert stats.batches == 1
        assert source.started == 1 and source.stopped == 1

    @pytest.mark.asyncio
    async def test_fatal_batch_is_rewound_and_raised(self, job_spec, message_log, sink_dbs, ledger_db):
        sinks = [FlakySink(s, unavailable=True) for s in build_sinks(job_spec, sink_dbs)]
        publish_records(message_log, job_spec.topic, [{"id": 1, "name": "Asha", "ts": "2024-02-01"}])
        consumer, source = make_consumer(job_spec, message_log, sinks, ledger_db)

        with pytest.raises(BatchFatalError):
            await asyncio.wait_for(consumer.run(asyncio.Event()), timeout=5)

        assert source.positions[0] == 0
        assert source.stopped == 1
        assert consumer.stats.batches_fatal == 1
