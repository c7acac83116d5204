"""Query and display statistics about the pipeline state."""
import psycopg2
from dotenv import load_dotenv

from commitboard.config import PipelineConfig

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


def print_section(title: str):
    """Print a section header."""
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def display_statistics():
    """Display repository states, queue depth, rate limits and top contributors."""
    conn = psycopg2.connect(PipelineConfig.from_env().connection_string)
    cursor = conn.cursor()

    print_section("Repositories by State")
    cursor.execute("""
        SELECT state, COUNT(*)
        FROM repositories
        GROUP BY state
        ORDER BY state
    """)
    rows = cursor.fetchall()
    total = sum(row[1] for row in rows)
    print(f"{'State':<25} {'Count':>15} {'Percentage':>15}")
    print("-" * 60)
    for state, count in rows:
        percentage = (count / total * 100) if total > 0 else 0
        print(f"{state:<25} {count:>15,} {percentage:>14.1f}%")
    print(f"Total repositories: {total:,}")

    print_section("Job Queue")
    cursor.execute("""
        SELECT kind, state, COUNT(*), MIN(created_at)
        FROM jobs
        GROUP BY kind, state
        ORDER BY kind, state
    """)
    print(f"{'Kind':<20} {'State':<12} {'Count':>10} {'Oldest':<25}")
    print("-" * 70)
    for row in cursor:
        print(f"{row[0]:<20} {row[1]:<12} {row[2]:>10,} {str(row[3]):<25}")

    print_section("Identity Resolution")
    cursor.execute("""
        SELECT status, COUNT(*)
        FROM commit_aggregates
        GROUP BY status
        ORDER BY status
    """)
    for status, count in cursor:
        print(f"{status:<25} {count:>15,}")
    cursor.execute("SELECT COUNT(*), COUNT(username) FROM contributors")
    known, resolved = cursor.fetchone()
    print(f"Cached identities: {known:,} ({resolved:,} resolved)")

    print_section("Rate Limits")
    cursor.execute("""
        SELECT key, remaining, limit_total, reset_at, updated_at
        FROM rate_limits
        ORDER BY key
    """)
    print(f"{'Credential':<25} {'Remaining':>10} {'Limit':>8} {'Resets At':<25}")
    print("-" * 70)
    for row in cursor:
        print(f"{row[0]:<25} {row[1]:>10,} {row[2]:>8,} {str(row[3]):<25}")

    print_section("Recently Failed Repositories (Last 10)")
    cursor.execute("""
        SELECT url, failure_reason, last_attempt_at
        FROM repositories
        WHERE state = 'failed'
        ORDER BY last_attempt_at DESC NULLS LAST
        LIMIT 10
    """)
    for row in cursor:
        print(f"{row[0]}\n    {row[2]}: {row[1]}")

    print_section("Top 10 Contributors Across Repositories")
    cursor.execute("""
        SELECT c.username, SUM(rc.commit_count) AS commits, COUNT(*) AS repos
        FROM repository_contributors rc
        JOIN contributors c ON c.id = rc.contributor_id
        GROUP BY c.username
        ORDER BY commits DESC
        LIMIT 10
    """)
    print(f"{'Contributor':<30} {'Commits':>12} {'Repos':>10}")
    print("-" * 60)
    for row in cursor:
        print(f"{row[0]:<30} {row[1]:>12,} {row[2]:>10,}")

    cursor.close()
    conn.close()

    print("\n" + "=" * 60)
    print("Query completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    try:
        display_statistics()
    except Exception as e:
        print(f"Error: {e}")
        import sys
        sys.exit(1)
