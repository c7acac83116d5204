"""Submit a repository URL to the ingestion pipeline."""
import asyncio
import sys
import logging
from dotenv import load_dotenv

from commitboard.bootstrap import build_pipeline
from commitboard.config import PipelineConfig
from commitboard.domain.errors import InvalidRepositoryUrl, QueueUnavailable

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def submit(url: str) -> None:
    config = PipelineConfig.from_env()
    pipeline = build_pipeline(config)
    try:
        repository, job = pipeline.submissions.submit(url, config.github_token)
        if job is None:
            logger.info(f"{repository.url} is {repository.state.value}; no new run started")
        else:
            logger.info(
                f"{repository.url} (ID: {repository.repo_id}) is {repository.state.value}, "
                f"extraction job {job.job_id} is {job.state.value}"
            )
    finally:
        await pipeline.close()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python submit_repository.py <github-repository-url>")
        sys.exit(2)
    try:
        asyncio.run(submit(sys.argv[1]))
    except InvalidRepositoryUrl as e:
        logger.error(str(e))
        sys.exit(2)
    except QueueUnavailable as e:
        logger.error(f"Repository recorded but not admitted, try again later: {e}")
        sys.exit(1)
