"""Tests for job admission, deduplication and the retry policy."""
from datetime import timedelta

import pytest

from commitboard.application.job_queue_service import (
    JobQueueService,
    batch_hash,
    extraction_job_key,
    identity_batch_job_key,
)
from commitboard.domain.errors import QueueUnavailable
from commitboard.domain.models import JobKind, JobOptions, JobState, Repository
from commitboard.domain.rate_limit import credential_key

from fakes import T0, Clock, InMemoryJobQueue

REPO = Repository(url="https://github.com/acme/widgets", path_name="github.com/acme/widgets", repo_id=7)


def make_service(**options):
    backend = InMemoryJobQueue()
    clock = Clock()
    return backend, clock, JobQueueService(backend, JobOptions(**options), clock=clock)


def test_job_keys_are_deterministic():
    """Test keys derive from the repository and the batch members."""
    assert extraction_job_key(7) == "commit_extraction:7"
    assert batch_hash(["b@x.com", "a@x.com"]) == batch_hash(["a@x.com", "b@x.com", "a@x.com"])
    assert identity_batch_job_key(7, ["a@x.com"]) != identity_batch_job_key(7, ["b@x.com"])
    assert identity_batch_job_key(7, ["a@x.com"]) != identity_batch_job_key(8, ["a@x.com"])


def test_enqueue_extraction_deduplicates_outstanding_job():
    """Test re-submitting while a job is outstanding returns the same job."""
    backend, clock, service = make_service()

    first = service.enqueue_extraction(REPO, "ghp_token")
    second = service.enqueue_extraction(REPO, "ghp_token")

    assert first.job_id == second.job_id
    assert len(backend.jobs) == 1
    assert first.payload == {
        "url": REPO.url,
        "path_name": REPO.path_name,
        "credential": credential_key("ghp_token"),
    }


def test_key_is_reusable_after_terminal_job():
    """Test a finished job no longer blocks its key."""
    backend, clock, service = make_service(remove_on_complete=False)
    first = service.enqueue_extraction(REPO)
    service.complete(service.claim(JobKind.EXTRACTION))

    second = service.enqueue_extraction(REPO)

    assert second.job_id != first.job_id
    assert backend.get(first.job_id).state == JobState.COMPLETED


def test_identity_batch_payload_is_sorted():
    """Test batch payloads carry sorted members and their hash."""
    backend, clock, service = make_service()

    job = service.enqueue_identity_batch(7, ["b@x.com", "a@x.com"], None)

    assert job.payload["emails"] == ["a@x.com", "b@x.com"]
    assert job.payload["batch_hash"] == batch_hash(["a@x.com", "b@x.com"])


def test_claim_increments_attempts():
    """Test claiming activates the job and counts the attempt."""
    backend, clock, service = make_service()
    service.enqueue_extraction(REPO)

    job = service.claim(JobKind.EXTRACTION)

    assert job.state == JobState.ACTIVE
    assert job.attempts_made == 1
    assert service.claim(JobKind.EXTRACTION) is None
    assert service.claim(JobKind.IDENTITY_BATCH) is None


def test_retryable_failure_is_delayed_with_backoff():
    """Test exponential backoff between attempts."""
    backend, clock, service = make_service(max_attempts=3, backoff_base_ms=60_000)
    service.enqueue_extraction(REPO)

    failed = service.fail(service.claim(JobKind.EXTRACTION), RuntimeError("network"))
    assert failed.state == JobState.DELAYED
    assert failed.run_at == T0 + timedelta(seconds=60)
    assert service.claim(JobKind.EXTRACTION) is None

    clock.advance(seconds=60)
    failed = service.fail(service.claim(JobKind.EXTRACTION), RuntimeError("network"))
    assert failed.run_at == clock.now + timedelta(seconds=120)


def test_failure_without_attempts_left_is_terminal():
    """Test the last attempt fails the job for good."""
    backend, clock, service = make_service(max_attempts=1)
    service.enqueue_extraction(REPO)

    failed = service.fail(service.claim(JobKind.EXTRACTION), RuntimeError("network"))

    assert failed.state == JobState.FAILED
    assert failed.failure_reason == "network"
    assert not service.has_outstanding(JobKind.EXTRACTION, REPO.repo_id)


def test_non_retryable_failure_is_terminal_immediately():
    """Test non-retryable errors skip the remaining attempts."""
    backend, clock, service = make_service(max_attempts=3)
    service.enqueue_extraction(REPO)

    failed = service.fail(service.claim(JobKind.EXTRACTION), ValueError("too large"), retryable=False)

    assert failed.state == JobState.FAILED


def test_remove_on_fail_deletes_terminal_job():
    """Test terminal failures are removed when configured."""
    backend, clock, service = make_service(max_attempts=1, remove_on_fail=True)
    job = service.enqueue_extraction(REPO)

    failed = service.fail(service.claim(JobKind.EXTRACTION), RuntimeError("boom"))

    assert failed.state == JobState.FAILED
    assert backend.get(job.job_id) is None


def test_has_outstanding_excludes_current_job():
    """Test the sibling check ignores the job asking."""
    backend, clock, service = make_service()
    first = service.enqueue_identity_batch(7, ["a@x.com"])
    service.enqueue_identity_batch(7, ["b@x.com"])

    assert service.has_outstanding(JobKind.IDENTITY_BATCH, 7, exclude_job_id=first.job_id)
    assert not service.has_outstanding(JobKind.IDENTITY_BATCH, 8)


def test_recover_stalled_fails_abandoned_attempts():
    """Test jobs left active by a dead worker are retried."""
    backend, clock, service = make_service()
    service.enqueue_extraction(REPO)
    service.claim(JobKind.EXTRACTION)
    clock.advance(minutes=30)

    recovered = service.recover_stalled(timedelta(minutes=20))

    assert len(recovered) == 1
    assert recovered[0].state == JobState.DELAYED
    assert "stalled" in recovered[0].failure_reason


def test_enqueue_propagates_queue_unavailable():
    """Test an unreachable backend surfaces to the caller."""
    backend, clock, service = make_service()
    backend.unavailable = True

    with pytest.raises(QueueUnavailable):
        service.enqueue_extraction(REPO)


def test_counts_by_kind_and_state():
    """Test queue counts are grouped per kind and state."""
    backend, clock, service = make_service()
    service.enqueue_extraction(REPO)
    service.enqueue_identity_batch(7, ["a@x.com"])
    service.claim(JobKind.EXTRACTION)

    assert service.counts() == {
        "commit_extraction": {"active": 1},
        "identity_batch": {"waiting": 1},
    }


def test_retained_failed_jobs_hold_no_token():
    """Test payloads kept after a terminal failure only reference the credential."""
    backend, clock, service = make_service(max_attempts=1, remove_on_fail=False)
    service.enqueue_extraction(REPO, "ghp_secret")
    service.enqueue_identity_batch(7, ["a@x.com"], credential_key("ghp_secret"))

    for kind in (JobKind.EXTRACTION, JobKind.IDENTITY_BATCH):
        service.fail(service.claim(kind), RuntimeError("boom"))

    assert [job.state for job in backend.jobs.values()] == [JobState.FAILED, JobState.FAILED]
    for job in backend.jobs.values():
        assert "ghp_secret" not in repr(job.payload)
        assert job.payload["credential"] == credential_key("ghp_secret")
