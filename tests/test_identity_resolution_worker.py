"""Tests for the identity resolution stage."""
import asyncio
from datetime import timedelta

from commitboard.application.identity_cache import IdentityCache
from commitboard.application.identity_resolution_worker import IdentityResolutionWorker
from commitboard.application.job_queue_service import JobQueueService
from commitboard.application.rate_limit_coordinator import RateLimitCoordinator
from commitboard.application.repository_lifecycle import RepositoryLifecycle
from commitboard.config import PipelineConfig
from commitboard.domain.models import JobKind, RateLimitState, RepositoryState, ResolutionStatus
from commitboard.domain.rate_limit import credential_key

from fakes import (
    T0,
    Clock,
    FakeIdentityClient,
    InMemoryJobQueue,
    InMemoryRateLimitStore,
    InMemoryStorage,
    no_sleep,
    no_wait,
)

URL = "https://github.com/acme/widgets"
PATH = "github.com/acme/widgets"
TOKEN = "ghp_token"


class Harness:
    """A repository in users_processing with its aggregates stored."""

    def __init__(self, counts, directory=None, failures=None, config=None, rate_limit=None):
        self.config = config or PipelineConfig(github_token=TOKEN, identity_batch_size=50)
        self.clock = Clock()
        self.storage = InMemoryStorage()
        self.backend = InMemoryJobQueue()
        self.queue = JobQueueService(self.backend, self.config.job_options, clock=self.clock)
        self.lifecycle = RepositoryLifecycle(self.storage, clock=self.clock)
        self.rate_store = InMemoryRateLimitStore()
        self.client = FakeIdentityClient(directory, failures, rate_limit)
        self.cache = IdentityCache(self.storage, self.config.identity_freshness_window, clock=self.clock)
        self.worker = IdentityResolutionWorker(
            self.storage,
            self.client,
            self.cache,
            RateLimitCoordinator(self.rate_store, sleep=no_sleep, clock=self.clock),
            self.queue,
            self.lifecycle,
            self.config,
            retry_wait=no_wait,
            clock=self.clock,
        )

        repository = self.lifecycle.submit(URL, PATH)
        self.repository_id = repository.repo_id
        self.lifecycle.begin_extraction(self.repository_id)
        self.storage.replace_commit_aggregates(self.repository_id, counts)
        self.lifecycle.begin_resolution(self.repository_id, sum(counts.values()), len(counts))

    def enqueue(self, emails, token=TOKEN):
        credential = credential_key(token) if token else None
        return self.queue.enqueue_identity_batch(self.repository_id, emails, credential)

    def run_next(self):
        """Claim, process and complete the next batch the way the runner does."""
        job = self.queue.claim(JobKind.IDENTITY_BATCH)
        result = asyncio.run(self.worker.process(job))
        self.queue.complete(job)
        self.worker.on_completed(job)
        return result

    @property
    def repository(self):
        return self.lifecycle.get(self.repository_id)


def test_all_authors_resolved_completes_with_leaderboard():
    """Test a fully resolved run yields a ranked leaderboard."""
    harness = Harness(
        {"a@x.com": 5, "b@x.com": 3, "c@x.com": 1},
        directory={"a@x.com": "alice", "b@x.com": "bob", "c@x.com": "carol"},
    )
    harness.enqueue(["a@x.com", "b@x.com", "c@x.com"])

    result = harness.run_next()

    assert result.resolved == 3
    assert result.external_calls == 3
    assert harness.repository.state == RepositoryState.COMPLETED
    leaderboard = harness.storage.get_leaderboard(harness.repository_id)
    assert [(e.username, e.commit_count) for e in leaderboard] == [
        ("alice", 5), ("bob", 3), ("carol", 1),
    ]
    assert len(harness.storage.links) == 3


def test_not_found_author_makes_run_partial():
    """Test an unknown email stays on the leaderboard under its raw address."""
    harness = Harness(
        {"a@x.com": 5, "x@x.com": 2},
        directory={"a@x.com": "alice"},
    )
    harness.enqueue(["a@x.com", "x@x.com"])

    result = harness.run_next()

    assert result.resolved == 1
    assert result.unresolved == 1
    assert harness.repository.state == RepositoryState.COMPLETED_PARTIAL
    leaderboard = harness.storage.get_leaderboard(harness.repository_id)
    assert [e.display_name for e in leaderboard] == ["alice", "x@x.com"]
    assert harness.storage.get_contributor("x@x.com").username is None


def test_transient_errors_are_retried_per_email():
    """Test a transient failure is retried without failing the batch."""
    harness = Harness({"a@x.com": 1}, directory={"a@x.com": "alice"}, failures={"a@x.com": 2})
    harness.enqueue(["a@x.com"])

    result = harness.run_next()

    assert result.resolved == 1
    assert result.external_calls == 3
    assert harness.client.calls == ["a@x.com"] * 3


def test_exhausted_transient_retries_leave_author_unresolved():
    """Test an email that keeps failing is unresolved and the batch still completes."""
    harness = Harness({"a@x.com": 1}, directory={"a@x.com": "alice"}, failures={"a@x.com": 5})
    harness.enqueue(["a@x.com"])

    result = harness.run_next()

    assert result.unresolved == 1
    assert harness.repository.state == RepositoryState.COMPLETED_PARTIAL
    # Not cached: the next run asks again
    assert harness.storage.get_contributor("a@x.com") is None


def test_cached_identity_skips_external_call():
    """Test fresh contributors are served from the cache."""
    harness = Harness({"a@x.com": 4}, directory={})
    harness.storage.upsert_contributor("a@x.com", "alice", "https://github.com/alice", T0 - timedelta(hours=1))
    harness.enqueue(["a@x.com"])

    result = harness.run_next()

    assert result.resolved == 1
    assert result.cache_hits == 1
    assert harness.client.calls == []


def test_stale_identity_is_looked_up_again():
    """Test contributors older than the freshness window are refreshed."""
    harness = Harness({"a@x.com": 4}, directory={"a@x.com": "alice-renamed"})
    harness.storage.upsert_contributor("a@x.com", "alice", "https://github.com/alice", T0 - timedelta(hours=25))
    harness.enqueue(["a@x.com"])

    harness.run_next()

    assert harness.client.calls == ["a@x.com"]
    assert harness.storage.get_contributor("a@x.com").username == "alice-renamed"


def test_noreply_email_resolves_without_external_call():
    """Test GitHub noreply addresses resolve locally."""
    email = "12345+octocat@users.noreply.github.com"
    harness = Harness({email: 7})
    harness.enqueue([email], token=None)

    result = harness.run_next()

    assert result.resolved == 1
    assert harness.client.calls == []
    assert harness.storage.get_contributor(email).profile_url == "https://github.com/octocat"


def test_without_credential_lookups_are_skipped():
    """Test authors stay unresolved when no token is available."""
    harness = Harness(
        {"a@x.com": 1}, directory={"a@x.com": "alice"}, config=PipelineConfig(github_token=None)
    )
    harness.enqueue(["a@x.com"], token=None)

    result = harness.run_next()

    assert result.unresolved == 1
    assert harness.client.calls == []


def test_repository_settles_after_last_sibling_batch():
    """Test the run is only finalized once every batch is terminal."""
    harness = Harness(
        {"a@x.com": 5, "b@x.com": 3},
        directory={"a@x.com": "alice", "b@x.com": "bob"},
    )
    harness.enqueue(["a@x.com"])
    harness.enqueue(["b@x.com"])

    harness.run_next()
    assert harness.repository.state == RepositoryState.USERS_PROCESSING

    harness.run_next()
    assert harness.repository.state == RepositoryState.COMPLETED


def test_terminal_batch_failure_marks_emails_unresolved():
    """Test a batch that exhausted its attempts still lets the run settle."""
    config = PipelineConfig(github_token=None, job_max_attempts=1)
    harness = Harness({"a@x.com": 5, "b@x.com": 3}, directory={"a@x.com": "alice"}, config=config)
    harness.storage.set_aggregate_status(harness.repository_id, ["a@x.com"], ResolutionStatus.RESOLVED)
    harness.enqueue(["b@x.com"])
    job = harness.queue.claim(JobKind.IDENTITY_BATCH)

    failed = harness.queue.fail(job, RuntimeError("worker crashed"))
    harness.worker.on_failed(failed, RuntimeError("worker crashed"))

    assert harness.storage.count_aggregates(harness.repository_id, ResolutionStatus.UNRESOLVED) == 1
    assert harness.repository.state == RepositoryState.COMPLETED_PARTIAL


def test_lookup_records_rate_limit_metadata():
    """Test every response updates the shared rate limit state."""
    rate_limit = RateLimitState(credential_key(TOKEN), 4321, T0 + timedelta(minutes=30), 5000)
    harness = Harness({"a@x.com": 1}, directory={"a@x.com": "alice"}, rate_limit=rate_limit)
    harness.enqueue(["a@x.com"])

    harness.run_next()

    assert harness.rate_store.get(credential_key(TOKEN)).remaining == 4321


def test_aggregates_replaced_mid_run_are_skipped():
    """Test emails no longer in the aggregates are ignored."""
    harness = Harness({"a@x.com": 1}, directory={"a@x.com": "alice", "gone@x.com": "ghost"})
    harness.enqueue(["a@x.com", "gone@x.com"])

    result = harness.run_next()

    assert result.resolved == 1
    assert "gone@x.com" not in harness.client.calls
