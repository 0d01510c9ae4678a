"""
Explicit owner of every long-lived client the pipeline uses.

Built once by the entrypoint, entered as an async context manager, and
passed to the sequencer. Leaving the context stops running workers and
releases every client, logging (never raising) release failures.
"""

from typing import Any, Callable, Dict, Optional

from core.config import settings
from core.database import Database, DatabaseRegistry
from core.encryption import FieldCipher
from pipeline.consumer import BatchConsumer
from pipeline.drain import DrainMonitor
from pipeline.error_ledger import ErrorLedger
from pipeline.message_log import (
    BatchSource,
    GroupAdmin,
    KafkaBatchConsumer,
    KafkaGroupAdmin,
    KafkaRecordProducer,
    RecordProducer,
)
from pipeline.publisher import ExtractorPublisher
from pipeline.sinks import build_sinks
from pipeline.source import SourceReader
from pipeline.transform import RecordTransformer
from pipeline.worker import WorkerManager
from schemas.jobs import JobSpec
import logging

logger = logging.getLogger(__name__)


def _kafka_batch_source(job: JobSpec) -> BatchSource:
    return KafkaBatchConsumer(job.topic, job.group_id, job.batch_size)


class PipelineContext:
    """
    Shared clients for one sequencer run.

    Attributes:
        sink_databases: Target sink connections by name
        ledger_database: Error ledger / job-run history database
        source_reader: Legacy source reader
        group_admin: Message log admin used for drain detection
        workers: Background worker supervisor
        ledger: Best-effort error ledger writer
        drain_monitor: Drain poller built on ``group_admin``
    """

    def __init__(
        self,
        sink_databases: Optional[DatabaseRegistry] = None,
        ledger_database: Optional[Database] = None,
        source_reader: Optional[SourceReader] = None,
        producer_factory: Optional[Callable[[], RecordProducer]] = None,
        batch_source_factory: Optional[Callable[[JobSpec], BatchSource]] = None,
        group_admin: Optional[GroupAdmin] = None,
        workers: Optional[WorkerManager] = None,
        cipher: Optional[FieldCipher] = None,
        drain_poll_interval: Optional[float] = None,
        drain_max_wait: Optional[float] = None,
        publisher_options: Optional[Dict[str, Any]] = None,
    ):
        self.sink_databases = sink_databases or DatabaseRegistry(settings.SINK_DATABASE_URLS)
        self.ledger_database = ledger_database or Database("ledger", settings.LEDGER_DATABASE_URL)
        self.source_reader = source_reader or SourceReader()
        self.producer_factory = producer_factory or KafkaRecordProducer
        self.batch_source_factory = batch_source_factory or _kafka_batch_source
        self.group_admin = group_admin or KafkaGroupAdmin()
        self.workers = workers or WorkerManager()
        self.cipher = cipher
        self.publisher_options = publisher_options or {}

        self.ledger = ErrorLedger(self.ledger_database)
        self.drain_monitor = DrainMonitor(
            self.group_admin,
            poll_interval=drain_poll_interval,
            max_wait=drain_max_wait,
        )

    async def __aenter__(self) -> "PipelineContext":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        await self.source_reader.connect()
        await self.group_admin.start()
        logger.info("Pipeline context opened")

    async def close(self) -> None:
        await self.workers.stop_all()

        for label, release in (
            ("group admin", self.group_admin.stop),
            ("source reader", self.source_reader.close),
            ("sink databases", self.sink_databases.dispose_all),
            ("ledger database", self.ledger_database.dispose),
        ):
            try:
                await release()
            except Exception as e:
                logger.error(f"Failed to release {label}: {str(e)}")

        logger.info("Pipeline context closed")

    def build_publisher(self) -> ExtractorPublisher:
        return ExtractorPublisher(self.source_reader, self.producer_factory(), **self.publisher_options)

    def build_consumer(self, job: JobSpec) -> BatchConsumer:
        """
        Consumer for ``job`` wired to its sinks and the shared ledger.

        Raises:
            ConfigurationError: Unknown transform, missing encryption key or
                unknown sink connection
        """
        transformer = RecordTransformer(job, cipher=self.cipher)
        sinks = build_sinks(job, self.sink_databases)
        return BatchConsumer(job, self.batch_source_factory(job), sinks, self.ledger, transformer)
