"""
Migration pipeline engine.

Moves legacy rows into the replacement schemas through the message log:

    SourceReader -> ExtractorPublisher -> message log -> BatchConsumer -> TargetSinks
                                                                      \\-> ErrorLedger

Modules:
    source: Paged reader for the legacy extraction endpoint (httpx)
    message_log: Producer / batch consumer / group admin contracts and their aiokafka implementation
    publisher: Extractor/publisher pump with key synthesis, chunking and throttling
    transform: Payload parsing, domain filter, field transforms, UpsertRow
    sinks: Dialect-aware idempotent upserts into target tables
    error_ledger: Best-effort writer for migration_error_log
    consumer: Per-batch state machine and commit rules
    worker: Supervised background workers (start / stop / describe)
    drain: Consumer-group drain detection
    sequencer: One-job-at-a-time orchestration, single pass or cycles
    context: Owner of every long-lived client

Usage:
    from pipeline.context import PipelineContext
    from pipeline.sequencer import JobSequencer
    from schemas.jobs import OrchestratorConfig

Example:
    config = OrchestratorConfig.from_file("config/jobs.json")

    async with PipelineContext() as context:
        sequencer = JobSequencer(config, context)
        results = await sequencer.run()

Error Handling:
    Per-row failures (parse, key validation, row writes) are recorded in the
    error ledger and never block a batch. Only BatchFatalError blocks an
    offset commit. Job-level failures are absorbed by the sequencer.
"""

__all__ = [
    "SourceReader",
    "ExtractorPublisher",
    "RecordFilter",
    "RecordTransformer",
    "TargetSink",
    "ErrorLedger",
    "BatchConsumer",
    "WorkerManager",
    "DrainMonitor",
    "JobSequencer",
    "PipelineContext",
]
