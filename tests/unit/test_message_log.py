"""
Unit tests for the aiokafka message log adapters
"""

import asyncio
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from aiokafka import TopicPartition

from pipeline.message_log import (
    KafkaBatchConsumer,
    KafkaGroupAdmin,
    KafkaRecordProducer,
    OutboundMessage,
)
from schemas.status import DrainStatus, PartitionOffsets

TOPIC = "users_migration"


def kafka_record(partition: int, offset: int, value: bytes = b"{}"):
    return SimpleNamespace(topic=TOPIC, partition=partition, offset=offset, key=b"1", value=value)


def mock_kafka_consumer(records=None) -> MagicMock:
    consumer = MagicMock()
    consumer.start = AsyncMock()
    consumer.stop = AsyncMock()
    consumer.commit = AsyncMock()
    consumer.getmany = AsyncMock(return_value=records or {})
    consumer.end_offsets = AsyncMock(return_value={})
    return consumer


def mock_admin_client(topics, committed=None) -> MagicMock:
    admin = MagicMock()
    admin.start = AsyncMock()
    admin.close = AsyncMock()
    admin.describe_topics = AsyncMock(return_value=topics)
    admin.list_consumer_group_offsets = AsyncMock(return_value=committed or {})
    return admin


class TestGroupAdmin:
    """Test per-partition offsets behind the drain signal"""

    @pytest.mark.asyncio
    async def test_describe_group_combines_end_and_committed_offsets(self):
        tp0, tp1 = TopicPartition(TOPIC, 0), TopicPartition(TOPIC, 1)
        admin = mock_admin_client(
            topics=[
                {"topic": TOPIC, "error_code": 0, "partitions": [{"partition": 1}, {"partition": 0}]},
                {"topic": "other_topic", "error_code": 0, "partitions": [{"partition": 7}]},
            ],
            committed={tp0: SimpleNamespace(offset=5), tp1: SimpleNamespace(offset=-1)},
        )
        offsets_consumer = mock_kafka_consumer()
        offsets_consumer.end_offsets.return_value = {tp0: 5, tp1: 3}

        with patch("pipeline.message_log.AIOKafkaAdminClient", return_value=admin), \
                patch("pipeline.message_log.AIOKafkaConsumer", return_value=offsets_consumer) as mock_consumer_cls:
            group_admin = KafkaGroupAdmin(bootstrap_servers="kafka:9092")
            await group_admin.start()
            partitions = await group_admin.describe_group("users-migration", TOPIC)

        assert mock_consumer_cls.call_args.kwargs["group_id"] is None
        offsets_consumer.end_offsets.assert_awaited_once_with([tp0, tp1])
        admin.list_consumer_group_offsets.assert_awaited_once_with("users-migration", partitions=[tp0, tp1])

        assert partitions == [
            PartitionOffsets(partition=0, log_end_offset=5, committed_offset=5),
            PartitionOffsets(partition=1, log_end_offset=3, committed_offset=None),
        ]
        status = DrainStatus.from_partitions("users-migration", TOPIC, partitions)
        assert status.log_end_offset == 8
        assert status.lag == 3
        assert not status.drained

    @pytest.mark.asyncio
    async def test_missing_commit_counts_from_zero(self):
        tp0 = TopicPartition(TOPIC, 0)
        admin = mock_admin_client(topics=[{"topic": TOPIC, "error_code": 0, "partitions": [{"partition": 0}]}])
        offsets_consumer = mock_kafka_consumer()
        offsets_consumer.end_offsets.return_value = {tp0: 4}

        with patch("pipeline.message_log.AIOKafkaAdminClient", return_value=admin), \
                patch("pipeline.message_log.AIOKafkaConsumer", return_value=offsets_consumer):
            group_admin = KafkaGroupAdmin(bootstrap_servers="kafka:9092")
            await group_admin.start()
            partitions = await group_admin.describe_group("users-migration", TOPIC)

        assert partitions[0].committed_offset is None
        assert partitions[0].lag == 4

    @pytest.mark.asyncio
    async def test_unknown_topic_is_not_ready(self):
        admin = mock_admin_client(topics=[{"topic": TOPIC, "error_code": 3, "partitions": []}])
        offsets_consumer = mock_kafka_consumer()

        with patch("pipeline.message_log.AIOKafkaAdminClient", return_value=admin), \
                patch("pipeline.message_log.AIOKafkaConsumer", return_value=offsets_consumer):
            group_admin = KafkaGroupAdmin(bootstrap_servers="kafka:9092")
            await group_admin.start()

            assert await group_admin.describe_group("users-migration", TOPIC) is None
            await group_admin.stop()

        offsets_consumer.end_offsets.assert_not_awaited()
        offsets_consumer.stop.assert_awaited_once()
        admin.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_describe_before_start_fails(self):
        with pytest.raises(RuntimeError):
            await KafkaGroupAdmin(bootstrap_servers="kafka:9092").describe_group("g", TOPIC)


class TestBatchConsumer:
    """Test batches handed out by the group member"""

    @pytest.mark.asyncio
    async def test_one_batch_per_partition_with_data(self):
        tp0, tp1, tp2 = (TopicPartition(TOPIC, p) for p in range(3))
        consumer = mock_kafka_consumer({
            tp0: [kafka_record(0, 10), kafka_record(0, 11)],
            tp1: [],
            tp2: [kafka_record(2, 4)],
        })

        with patch("pipeline.message_log.AIOKafkaConsumer", return_value=consumer) as mock_consumer_cls:
            source = KafkaBatchConsumer(TOPIC, "users-migration", batch_size=50, bootstrap_servers="kafka:9092")
            await source.start()
            batches = await source.fetch_batches(timeout_ms=250)

        kwargs = mock_consumer_cls.call_args.kwargs
        assert mock_consumer_cls.call_args.args == (TOPIC,)
        assert kwargs["group_id"] == "users-migration"
        assert kwargs["enable_auto_commit"] is False
        assert kwargs["auto_offset_reset"] == "earliest"
        consumer.getmany.assert_awaited_once_with(timeout_ms=250, max_records=50)

        assert [(b.partition, b.first_offset, b.last_offset) for b in batches] == [(0, 10, 11), (2, 4, 4)]
        assert batches[0].messages[0].key == b"1"

    @pytest.mark.asyncio
    async def test_commit_covers_resolved_prefix_only(self):
        tp = TopicPartition(TOPIC, 0)
        consumer = mock_kafka_consumer({tp: [kafka_record(0, o) for o in (10, 11, 12)]})

        with patch("pipeline.message_log.AIOKafkaConsumer", return_value=consumer):
            source = KafkaBatchConsumer(TOPIC, "users-migration", batch_size=50, bootstrap_servers="kafka:9092")
            await source.start()
            batch = (await source.fetch_batches())[0]

        first, second, third = batch.messages
        batch.resolve(first)
        batch.resolve(third)
        assert await batch.commit_offsets_if_necessary()
        consumer.commit.assert_awaited_once_with({tp: 11})

        # Nothing new resolved: no second commit
        assert not await batch.commit_offsets_if_necessary()

        batch.resolve(second)
        assert await batch.commit_offsets_if_necessary()
        consumer.commit.assert_awaited_with({tp: 13})

    @pytest.mark.asyncio
    async def test_rewind_seeks_to_first_offset(self):
        tp = TopicPartition(TOPIC, 1)
        consumer = mock_kafka_consumer({tp: [kafka_record(1, 40), kafka_record(1, 41)]})

        with patch("pipeline.message_log.AIOKafkaConsumer", return_value=consumer):
            source = KafkaBatchConsumer(TOPIC, "users-migration", batch_size=50, bootstrap_servers="kafka:9092")
            await source.start()
            batch = (await source.fetch_batches())[0]
            await batch.rewind()
            await source.stop()

        consumer.seek.assert_called_once_with(tp, 40)
        consumer.commit.assert_not_awaited()
        consumer.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fetch_before_start_fails(self):
        with pytest.raises(RuntimeError):
            await KafkaBatchConsumer(TOPIC, "g", batch_size=1, bootstrap_servers="kafka:9092").fetch_batches()


class TestRecordProducer:
    """Test chunk publishing"""

    @staticmethod
    def mock_producer(errors=None) -> MagicMock:
        errors = dict(errors or {})
        producer = MagicMock()
        producer.start = AsyncMock()
        producer.stop = AsyncMock()

        async def send(topic, key, value):
            delivery = asyncio.get_running_loop().create_future()
            if key in errors:
                delivery.set_exception(errors[key])
            else:
                delivery.set_result(SimpleNamespace(topic=topic, offset=0))
            return delivery

        producer.send = AsyncMock(side_effect=send)
        return producer

    @pytest.mark.asyncio
    async def test_send_chunk_waits_for_every_delivery(self):
        producer = self.mock_producer()
        messages = [OutboundMessage(key=str(i), value=b'{"id": %d}' % i) for i in (1, 2, 3)]

        with patch("pipeline.message_log.AIOKafkaProducer", return_value=producer):
            publisher = KafkaRecordProducer(bootstrap_servers="kafka:9092")
            await publisher.start()
            await publisher.send_chunk(TOPIC, messages)
            await publisher.stop()

        assert [c.kwargs["key"] for c in producer.send.await_args_list] == [b"1", b"2", b"3"]
        assert producer.send.await_args_list[0].args == (TOPIC,)
        producer.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_delivery_fails_the_chunk(self):
        producer = self.mock_producer(errors={b"2": RuntimeError("broker rejected")})
        messages = [OutboundMessage(key=str(i), value=b"{}") for i in (1, 2)]

        with patch("pipeline.message_log.AIOKafkaProducer", return_value=producer):
            publisher = KafkaRecordProducer(bootstrap_servers="kafka:9092")
            await publisher.start()

            with pytest.raises(RuntimeError, match="broker rejected"):
                await publisher.send_chunk(TOPIC, messages)

    @pytest.mark.asyncio
    async def test_send_before_start_fails(self):
        with pytest.raises(RuntimeError):
            await KafkaRecordProducer(bootstrap_servers="kafka:9092").send_chunk(TOPIC, [])
