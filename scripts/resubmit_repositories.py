"""Re-submit repositories whose last run ended partially resolved (or failed).

Partial results are never retried automatically; run this when the identity
API is expected to know more than it did last time.
"""
import asyncio
import sys
import logging
from dotenv import load_dotenv

from commitboard.bootstrap import build_pipeline
from commitboard.config import PipelineConfig
from commitboard.domain.errors import QueueUnavailable
from commitboard.domain.models import RepositoryState

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

RESUBMITTABLE = (RepositoryState.COMPLETED_PARTIAL, RepositoryState.FAILED)


async def resubmit(state: RepositoryState) -> None:
    config = PipelineConfig.from_env()
    pipeline = build_pipeline(config)
    try:
        results = pipeline.submissions.resubmit(state, config.github_token)
        logger.info(f"Re-submitted {len(results)} {state.value} repositories")
    finally:
        await pipeline.close()


if __name__ == "__main__":
    state_name = sys.argv[1] if len(sys.argv) > 1 else RepositoryState.COMPLETED_PARTIAL.value
    allowed = [s.value for s in RESUBMITTABLE]
    if state_name not in allowed:
        print(f"Usage: python scripts/resubmit_repositories.py [{'|'.join(allowed)}]")
        sys.exit(2)
    try:
        asyncio.run(resubmit(RepositoryState(state_name)))
    except QueueUnavailable as e:
        logger.error(f"Re-submission interrupted: {e}")
        sys.exit(1)
