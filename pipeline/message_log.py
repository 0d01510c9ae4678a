"""
Message log contracts and their Kafka (aiokafka) implementation.

The pipeline talks to the log through three narrow roles:

- ``RecordProducer``: publishes keyed messages in chunks
- ``BatchSource``: a consumer-group member handing out ``MessageBatch``es
- ``GroupAdmin``: describes per-partition log-end / committed offsets of a
  group, from which the sequencer derives ``DrainStatus``

``MessageBatch`` carries the resolve/heartbeat/commit contract the batch
consumer relies on: offsets are committed only up to the highest offset
below which every message has been resolved.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient

from core.config import settings
from schemas.status import PartitionOffsets
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    key: str
    value: bytes

    @property
    def size(self) -> int:
        return len(self.key.encode("utf-8")) + len(self.value)


@dataclass(frozen=True)
class InboundMessage:
    topic: str
    partition: int
    offset: int
    key: Optional[bytes]
    value: Optional[bytes]


# ============================================================================
# Contracts
# ============================================================================

class MessageBatch(ABC):
    """
    Messages of one partition delivered by one fetch.

    Every message must be resolved exactly once; committing only advances
    the group offset over the resolved prefix of the batch.
    """

    def __init__(self, topic: str, partition: int, messages: Sequence[InboundMessage]):
        self.topic = topic
        self.partition = partition
        self.messages = list(messages)
        self._resolved: set = set()
        self._committed_offset: Optional[int] = None

    @property
    def first_offset(self) -> Optional[int]:
        return self.messages[0].offset if self.messages else None

    @property
    def last_offset(self) -> Optional[int]:
        return self.messages[-1].offset if self.messages else None

    @property
    def all_resolved(self) -> bool:
        return len(self._resolved) == len(self.messages)

    def resolve(self, message: InboundMessage) -> None:
        if message.offset in self._resolved:
            logger.warning(
                f"Offset {message.offset} on {self.topic}[{self.partition}] resolved twice"
            )
            return
        self._resolved.add(message.offset)

    def _commit_position(self) -> Optional[int]:
        """Next offset to consume after the contiguous resolved prefix."""
        position = None
        for message in self.messages:
            if message.offset not in self._resolved:
                break
            position = message.offset + 1
        return position

    async def commit_offsets_if_necessary(self) -> bool:
        """Commit the resolved prefix; returns True when a commit was issued."""
        position = self._commit_position()
        if position is None or position == self._committed_offset:
            return False
        await self._commit(position)
        self._committed_offset = position
        return True

    @abstractmethod
    async def _commit(self, position: int) -> None:
        """Persist ``position`` as the group's next offset for this partition."""

    @abstractmethod
    async def heartbeat(self) -> None:
        """Signal liveness to the group coordinator."""

    @abstractmethod
    async def rewind(self) -> None:
        """Reposition the fetch cursor so this batch is delivered again."""


class RecordProducer(ABC):
    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def send_chunk(self, topic: str, messages: Sequence[OutboundMessage]) -> None:
        """Publish all messages of a chunk; raises if any delivery fails."""


class BatchSource(ABC):
    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def fetch_batches(self, timeout_ms: int = 1000) -> List[MessageBatch]:
        """Fetch the next batches (one per partition with data)."""


class GroupAdmin(ABC):
    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def describe_group(self, group_id: str, topic: str) -> Optional[List[PartitionOffsets]]:
        """Per-partition offsets, or None when the topic/group is not ready yet."""


# ============================================================================
# Kafka implementation
# ============================================================================

class KafkaMessageBatch(MessageBatch):
    def __init__(self, consumer: AIOKafkaConsumer, tp: TopicPartition, messages: Sequence[InboundMessage]):
        super().__init__(tp.topic, tp.partition, messages)
        self._consumer = consumer
        self._tp = tp

    async def _commit(self, position: int) -> None:
        await self._consumer.commit({self._tp: position})

    async def heartbeat(self) -> None:
        # aiokafka heartbeats from its coordinator task; yielding lets it run
        # between slow per-row steps
        await asyncio.sleep(0)

    async def rewind(self) -> None:
        if self.first_offset is not None:
            self._consumer.seek(self._tp, self.first_offset)


class KafkaRecordProducer(RecordProducer):
    """Keyed publisher; messages with equal keys land on the same partition."""

    def __init__(
        self,
        bootstrap_servers: Optional[str] = None,
        client_id: Optional[str] = None,
        max_request_size: Optional[int] = None,
    ):
        self.bootstrap_servers = bootstrap_servers or settings.KAFKA_BOOTSTRAP_SERVERS
        self.client_id = client_id or settings.KAFKA_CLIENT_ID
        self.max_request_size = max_request_size or settings.KAFKA_MAX_REQUEST_SIZE
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            max_request_size=self.max_request_size,
            acks="all",
            enable_idempotence=True,
        )
        await self._producer.start()
        logger.info(f"Kafka producer connected to {self.bootstrap_servers}")

    async def stop(self) -> None:
        if self._producer is not None:
            producer, self._producer = self._producer, None
            await producer.stop()

    async def send_chunk(self, topic: str, messages: Sequence[OutboundMessage]) -> None:
        if self._producer is None:
            raise RuntimeError("Producer is not started")

        deliveries = []
        for message in messages:
            deliveries.append(
                await self._producer.send(topic, key=message.key.encode("utf-8"), value=message.value)
            )
        await asyncio.gather(*deliveries)


class KafkaBatchConsumer(BatchSource):
    """Consumer-group member with manual offset commits."""

    def __init__(
        self,
        topic: str,
        group_id: str,
        batch_size: int,
        bootstrap_servers: Optional[str] = None,
        client_id: Optional[str] = None,
    ):
        self.topic = topic
        self.group_id = group_id
        self.batch_size = batch_size
        self.bootstrap_servers = bootstrap_servers or settings.KAFKA_BOOTSTRAP_SERVERS
        self.client_id = client_id or settings.KAFKA_CLIENT_ID
        self._consumer: Optional[AIOKafkaConsumer] = None

    async def start(self) -> None:
        self._consumer = AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            session_timeout_ms=settings.KAFKA_SESSION_TIMEOUT_MS,
            heartbeat_interval_ms=settings.KAFKA_HEARTBEAT_INTERVAL_MS,
            max_poll_interval_ms=settings.KAFKA_MAX_POLL_INTERVAL_MS,
            max_poll_records=self.batch_size,
        )
        await self._consumer.start()
        logger.info(f"Kafka consumer joined group {self.group_id} on {self.topic}")

    async def stop(self) -> None:
        if self._consumer is not None:
            consumer, self._consumer = self._consumer, None
            await consumer.stop()
            logger.info(f"Kafka consumer left group {self.group_id}")

    async def fetch_batches(self, timeout_ms: int = 1000) -> List[MessageBatch]:
        if self._consumer is None:
            raise RuntimeError("Consumer is not started")

        records = await self._consumer.getmany(timeout_ms=timeout_ms, max_records=self.batch_size)

        batches: List[MessageBatch] = []
        for tp, kafka_messages in records.items():
            if not kafka_messages:
                continue
            messages = [
                InboundMessage(
                    topic=m.topic,
                    partition=m.partition,
                    offset=m.offset,
                    key=m.key,
                    value=m.value,
                )
                for m in kafka_messages
            ]
            batches.append(KafkaMessageBatch(self._consumer, tp, messages))
        return batches


class KafkaGroupAdmin(GroupAdmin):
    """Structured replacement for ``kafka-consumer-groups --describe``."""

    def __init__(self, bootstrap_servers: Optional[str] = None, client_id: Optional[str] = None):
        self.bootstrap_servers = bootstrap_servers or settings.KAFKA_BOOTSTRAP_SERVERS
        self.client_id = f"{client_id or settings.KAFKA_CLIENT_ID}-admin"
        self._admin: Optional[AIOKafkaAdminClient] = None
        self._offsets: Optional[AIOKafkaConsumer] = None

    async def start(self) -> None:
        self._admin = AIOKafkaAdminClient(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
        )
        await self._admin.start()

        # Group-less consumer, only used to look up log-end offsets
        self._offsets = AIOKafkaConsumer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            group_id=None,
            enable_auto_commit=False,
        )
        await self._offsets.start()

    async def stop(self) -> None:
        if self._offsets is not None:
            offsets, self._offsets = self._offsets, None
            await offsets.stop()
        if self._admin is not None:
            admin, self._admin = self._admin, None
            await admin.close()

    async def _partitions_for(self, topic: str) -> List[int]:
        topics = await self._admin.describe_topics([topic])
        partitions: List[int] = []
        for entry in topics:
            if entry.get("topic") != topic or entry.get("error_code", 0) != 0:
                continue
            partitions.extend(p["partition"] for p in entry.get("partitions", []))
        return sorted(partitions)

    async def describe_group(self, group_id: str, topic: str) -> Optional[List[PartitionOffsets]]:
        if self._admin is None or self._offsets is None:
            raise RuntimeError("Group admin is not started")

        partitions = await self._partitions_for(topic)
        if not partitions:
            logger.debug(f"Topic {topic} has no partitions yet")
            return None

        tps = [TopicPartition(topic, p) for p in partitions]
        end_offsets: Dict[TopicPartition, int] = await self._offsets.end_offsets(tps)
        committed = await self._admin.list_consumer_group_offsets(group_id, partitions=tps)

        result = []
        for tp in tps:
            meta = committed.get(tp)
            committed_offset = meta.offset if meta is not None and meta.offset >= 0 else None
            result.append(PartitionOffsets(
                partition=tp.partition,
                log_end_offset=end_offsets.get(tp, 0),
                committed_offset=committed_offset,
            ))
        return result
