"""Main entry point for the pipeline workers.

Drains the extraction and/or identity queues, or keeps polling them when
WORKER_POLL is set.
"""
import asyncio
import os
import signal
import sys
import logging
from dotenv import load_dotenv

from commitboard.application.worker_runner import WorkerRunner
from commitboard.bootstrap import build_pipeline
from commitboard.config import PipelineConfig
from commitboard.domain.errors import QueueUnavailable
from commitboard.domain.models import JobKind

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

WORKER_KINDS = {
    "commits": [JobKind.EXTRACTION],
    "identities": [JobKind.IDENTITY_BATCH],
    "all": [JobKind.EXTRACTION, JobKind.IDENTITY_BATCH],
}


async def main():
    """Run the configured worker kinds."""
    worker_kind = os.getenv("WORKER_KIND", "all")
    if worker_kind not in WORKER_KINDS:
        logger.error(f"WORKER_KIND must be one of {', '.join(WORKER_KINDS)}, got {worker_kind}")
        sys.exit(1)
    poll = os.getenv("WORKER_POLL", "").lower() in ("1", "true", "yes")

    config = PipelineConfig.from_env()
    if not config.github_token:
        logger.warning("GITHUB_TOKEN not set: size pre-checks are skipped and only noreply emails resolve")

    try:
        pipeline = build_pipeline(config)
    except QueueUnavailable as e:
        logger.error(f"Cannot start workers: {e}")
        sys.exit(1)

    runners = []
    for kind in WORKER_KINDS[worker_kind]:
        worker = (
            pipeline.extraction_worker() if kind == JobKind.EXTRACTION
            else pipeline.identity_worker()
        )
        runners.append(WorkerRunner(
            pipeline.queue,
            kind,
            worker,
            concurrency=config.worker_concurrency,
            job_timeout_seconds=config.job_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
        ))

    logger.info(
        f"Starting {worker_kind} workers (concurrency {config.worker_concurrency}, "
        f"{'polling' if poll else f'at most {config.max_jobs_per_execution} jobs per queue'})"
    )

    try:
        if poll:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            await asyncio.gather(*(runner.run_forever(stop) for runner in runners))
        else:
            # Extraction first so its fan-out is picked up in the same execution
            for runner in runners:
                metrics = await runner.drain(config.max_jobs_per_execution)
                logger.info("=" * 50)
                logger.info("Worker Metrics:")
                logger.info(f"  Jobs processed: {metrics.jobs_processed}")
                logger.info(f"  Jobs failed: {metrics.jobs_failed}")
                logger.info(f"  Duration: {metrics.duration_seconds:.2f} seconds")
                logger.info(f"  Errors: {metrics.errors}")
                logger.info("=" * 50)

        logger.info(f"Queue counts: {pipeline.queue.counts()}")

    except Exception as e:
        logger.error(f"Workers failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await pipeline.close()


if __name__ == "__main__":
    asyncio.run(main())
