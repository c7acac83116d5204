"""Verify that the setup is correct before running the workers."""
import asyncio
import os
import shutil
import subprocess
import sys
import psycopg2
from dotenv import load_dotenv

from commitboard.config import PipelineConfig
from commitboard.infrastructure.github_client import GitHubGraphQLClient

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')

CHECK_REPOSITORY = "https://github.com/octocat/Hello-World"

REQUIRED_TABLES = [
    "repositories",
    "commit_aggregates",
    "contributors",
    "repository_contributors",
    "jobs",
    "rate_limits",
]


def check_environment_variables():
    """Check environment variables."""
    print("Checking environment variables...")

    optional_vars = [
        "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_DB", "POSTGRES_USER",
        "REPO_BASE_PATH", "WORKER_KIND", "WORKER_CONCURRENCY",
    ]

    if not os.getenv("GITHUB_TOKEN"):
        print("⚠️  GITHUB_TOKEN not set: only noreply emails will resolve")
    else:
        print("✅ GITHUB_TOKEN set")

    for var in optional_vars:
        if os.getenv(var):
            print(f"   {var}: {os.getenv(var)}")

    return True


def check_database_connection():
    """Check PostgreSQL connection."""
    print("\nChecking database connection...")

    config = PipelineConfig.from_env()
    try:
        conn = psycopg2.connect(config.connection_string)
        conn.close()
        print(f"✅ Successfully connected to PostgreSQL at {config.postgres_host}:{config.postgres_port}")
        return True
    except Exception as e:
        print(f"❌ Failed to connect to PostgreSQL: {e}")
        return False


def check_database_schema():
    """Check that every pipeline table exists."""
    print("\nChecking database schema...")

    try:
        conn = psycopg2.connect(PipelineConfig.from_env().connection_string)
        cursor = conn.cursor()

        cursor.execute("""
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ANY(%s)
        """, (REQUIRED_TABLES,))
        present = {row[0] for row in cursor.fetchall()}
        missing = [table for table in REQUIRED_TABLES if table not in present]

        if not missing:
            cursor.execute("SELECT COUNT(*) FROM repositories")
            count = cursor.fetchone()[0]
            print("✅ Database schema exists")
            print(f"   Current repository count: {count}")
            result = True
        else:
            print(f"❌ Missing tables: {', '.join(missing)}. Run 'python setup_postgres.py' first.")
            result = False

        cursor.close()
        conn.close()
        return result

    except Exception as e:
        print(f"❌ Failed to check schema: {e}")
        return False


def check_git():
    """Check the git binary and the working copy directory."""
    print("\nChecking git...")

    if shutil.which("git") is None:
        print("❌ git not found on PATH")
        return False
    version = subprocess.run(["git", "--version"], capture_output=True, text=True).stdout.strip()
    print(f"✅ {version}")

    base_path = PipelineConfig.from_env().repo_base_path
    try:
        os.makedirs(base_path, exist_ok=True)
    except OSError as e:
        print(f"❌ Cannot create REPO_BASE_PATH {base_path}: {e}")
        return False
    if not os.access(base_path, os.W_OK):
        print(f"❌ REPO_BASE_PATH {base_path} is not writable")
        return False
    print(f"   Working copies: {base_path}")
    return True


async def query_github(token):
    client = GitHubGraphQLClient()
    try:
        return await client.reported_size(CHECK_REPOSITORY, token)
    finally:
        await client.close()


def check_github_api():
    """Call the GraphQL API once and report the remaining budget."""
    print("\nChecking GitHub API...")

    token = os.getenv("GITHUB_TOKEN")
    if not token:
        print("⚠️  GITHUB_TOKEN not set, skipping")
        return True

    reported = asyncio.run(query_github(token))
    if reported.rate_limit is None:
        print("❌ GitHub API did not answer; check the token and network access")
        return False

    rate_limit = reported.rate_limit
    print(f"✅ GitHub API reachable ({rate_limit.remaining}/{rate_limit.limit} calls left)")
    if rate_limit.reset_at:
        print(f"   Budget resets at {rate_limit.reset_at.isoformat()}")
    return True


CHECKS = [
    ("Environment Variables", check_environment_variables),
    ("Database Connection", check_database_connection),
    ("Database Schema", check_database_schema),
    ("Git", check_git),
    ("GitHub API", check_github_api),
]


def main():
    """Run every check and exit non-zero if one fails."""
    print("=" * 60)
    print("commitboard setup verification")
    print("=" * 60)

    failed = []
    for name, check in CHECKS:
        try:
            passed = check()
        except Exception as e:
            print(f"❌ {name} check raised {e.__class__.__name__}: {e}")
            passed = False
        if not passed:
            failed.append(name)

    print("\n" + "=" * 60)
    for name, _ in CHECKS:
        print(f"{'❌ FAIL' if name in failed else '✅ PASS'}: {name}")
    print("=" * 60)

    if failed:
        print("\nFix the failing checks, then run this script again:")
        print("  - database: start PostgreSQL and run 'python setup_postgres.py'")
        print("  - git: install git and point REPO_BASE_PATH at a writable directory")
        sys.exit(1)

    print("\nReady. Submit a repository and drain the queues:")
    print("  python submit_repository.py https://github.com/owner/name")
    print("  python run_workers.py")


if __name__ == "__main__":
    main()
