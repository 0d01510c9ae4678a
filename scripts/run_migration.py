"""
Script to run the migration sequencer for all configured jobs

Usage:
    python -m scripts.run_migration [--config PATH] [--mode once|cycle] [--job NAME ...]
"""

import argparse
import asyncio
import signal
import sys
import logging
from typing import List, Optional

from core.config import settings
from core.exceptions import ConfigurationError
from core.logging import setup_logging
from models.base import JobState, RunMode
from pipeline.context import PipelineContext
from pipeline.sequencer import JobSequencer
from schemas.jobs import OrchestratorConfig

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the bridge migration jobs")
    parser.add_argument(
        "--config",
        default=settings.JOBS_CONFIG_PATH,
        help="Path of the orchestrator config file (JSON)"
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in RunMode],
        default=None,
        help="Override the run mode from the config file"
    )
    parser.add_argument(
        "--job",
        action="append",
        dest="jobs",
        default=None,
        help="Only run this job (repeatable)"
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> OrchestratorConfig:
    config = OrchestratorConfig.from_file(args.config).select(args.jobs)
    if args.mode:
        config = config.model_copy(update={"mode": RunMode(args.mode)})
    return config


def install_signal_handlers(sequencer: JobSequencer) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, sequencer.stop)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: sequencer.stop())


async def run_migration(config: OrchestratorConfig) -> int:
    """Run the sequencer; exit code 0 unless every job of the last cycle failed."""
    logger.info(
        f"Running {len(config.jobs)} job(s) in {config.mode.value} mode: "
        f"{', '.join(j.name for j in config.jobs)}"
    )

    async with PipelineContext() as context:
        sequencer = JobSequencer(config, context)
        install_signal_handlers(sequencer)
        results = await sequencer.run()

    for result in results:
        logger.info(
            f"cycle={result.cycle} job={result.job_name} state={result.state.value} "
            f"sent={result.records_sent} drained={result.drained}"
        )

    if not results:
        return 0

    last_cycle = max(r.cycle for r in results)
    if all(r.state == JobState.FAILED for r in results if r.cycle == last_cycle):
        logger.error(f"All jobs failed in cycle {last_cycle}")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging()
    args = parse_args(argv)

    try:
        config = load_config(args)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    return asyncio.run(run_migration(config))


if __name__ == "__main__":
    sys.exit(main())
