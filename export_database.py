"""Export a repository leaderboard to CSV."""
import sys
import csv
import logging
from dotenv import load_dotenv

from commitboard.application.leaderboard_service import Leaderboard, LeaderboardService
from commitboard.config import PipelineConfig
from commitboard.domain.errors import RepositoryNotFound
from commitboard.infrastructure.postgres_storage import PostgresPipelineStorage

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

CSV_HEADER = ['rank', 'display_name', 'username', 'email', 'profile_url', 'commit_count']


def write_leaderboard(leaderboard: Leaderboard, output_file: str) -> int:
    """Write leaderboard rows to ``output_file``; returns the number of rows."""
    with open(output_file, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for rank, entry in enumerate(leaderboard.entries, start=1):
            writer.writerow([
                rank,
                entry.display_name,
                entry.username or '',
                entry.email,
                entry.profile_url or '',
                entry.commit_count,
            ])
    return len(leaderboard.entries)


def export_to_csv(url: str, output_file: str = "leaderboard.csv"):
    """Export the leaderboard of one repository to a CSV file.

    Args:
        url: Repository URL as submitted
        output_file: Path to output CSV file
    """
    config = PipelineConfig.from_env()

    try:
        storage = PostgresPipelineStorage(config.connection_string)
        try:
            leaderboard = LeaderboardService(storage).for_url(url)
        finally:
            storage.close()

        repository = leaderboard.repository
        if leaderboard.failure_reason:
            logger.warning(f"{repository.url} is {repository.state.value}: {leaderboard.failure_reason}")

        row_count = write_leaderboard(leaderboard, output_file)
        logger.info(
            f"Exported {row_count} contributors of {repository.url} "
            f"({repository.state.value}) to {output_file}"
        )

    except RepositoryNotFound as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error exporting leaderboard: {e}")
        sys.exit(1)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python export_database.py <github-repository-url> [output.csv]")
        sys.exit(2)
    output_file = sys.argv[2] if len(sys.argv) > 2 else "leaderboard.csv"
    export_to_csv(sys.argv[1], output_file)
