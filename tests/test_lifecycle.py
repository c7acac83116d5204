"""Tests for the repository lifecycle state machine and its persistent transitions."""
import pytest

from commitboard.application.repository_lifecycle import RepositoryLifecycle
from commitboard.domain import lifecycle
from commitboard.domain.errors import InvalidStateTransition, RepositoryNotFound
from commitboard.domain.models import RepositoryState, ResolutionStatus

from fakes import Clock, InMemoryStorage

S = RepositoryState
URL = "https://github.com/acme/widgets"
PATH = "github.com/acme/widgets"


def make_lifecycle():
    storage = InMemoryStorage()
    return storage, RepositoryLifecycle(storage, clock=Clock())


def test_happy_path_transitions_are_allowed():
    """Test the forward path through the state machine."""
    assert lifecycle.can_transition(S.PENDING, S.COMMITS_PROCESSING)
    assert lifecycle.can_transition(S.COMMITS_PROCESSING, S.USERS_PROCESSING)
    assert lifecycle.can_transition(S.USERS_PROCESSING, S.COMPLETED)
    assert lifecycle.can_transition(S.USERS_PROCESSING, S.COMPLETED_PARTIAL)


def test_users_processing_cannot_fail_or_restart():
    """Test identity resolution never fails the repository."""
    assert not lifecycle.can_transition(S.USERS_PROCESSING, S.FAILED)
    assert not lifecycle.can_transition(S.USERS_PROCESSING, S.PENDING)
    with pytest.raises(InvalidStateTransition):
        lifecycle.ensure_transition(S.USERS_PROCESSING, S.FAILED)


def test_terminal_states_only_reenter_pending():
    """Test terminal repositories re-enter pending and nothing else."""
    for state in (S.COMPLETED, S.COMPLETED_PARTIAL):
        assert lifecycle.ALLOWED_TRANSITIONS[state] == frozenset({S.PENDING})
    assert lifecycle.can_transition(S.FAILED, S.PENDING)


def test_sources_for_failed():
    """Test which states can fail."""
    assert lifecycle.sources_for(S.FAILED) == frozenset({S.PENDING, S.COMMITS_PROCESSING})


def test_resolution_outcome():
    """Test completed vs completed_partial."""
    assert lifecycle.resolution_outcome(3, 3) == S.COMPLETED
    assert lifecycle.resolution_outcome(3, 2) == S.COMPLETED_PARTIAL
    assert lifecycle.resolution_outcome(0, 0) == S.COMPLETED


def test_submit_new_repository_is_pending():
    """Test a first submission creates a pending repository."""
    storage, service = make_lifecycle()

    repository = service.submit(URL, PATH)

    assert repository.state == S.PENDING
    assert storage.get_repository(repository.repo_id) == repository


def test_submit_completed_repository_reenters_pending():
    """Test re-submitting a finished repository clears the previous failure."""
    storage, service = make_lifecycle()
    repository = service.submit(URL, PATH)
    service.begin_extraction(repository.repo_id)
    service.fail(repository.repo_id, "clone failed")

    again = service.submit(URL, PATH)

    assert again.repo_id == repository.repo_id
    assert again.state == S.PENDING
    assert again.failure_reason is None


def test_begin_extraction_records_attempt_time():
    """Test entering commits_processing stamps the attempt."""
    storage, service = make_lifecycle()
    repository = service.submit(URL, PATH)

    processing = service.begin_extraction(repository.repo_id)

    assert processing.state == S.COMMITS_PROCESSING
    assert processing.last_attempt_at is not None


def test_invalid_move_raises():
    """Test moving a repository along a forbidden edge."""
    storage, service = make_lifecycle()
    repository = service.submit(URL, PATH)

    with pytest.raises(InvalidStateTransition):
        service.begin_resolution(repository.repo_id, total_commits=3, unique_contributors=1)


def test_fail_after_resolution_started_is_a_noop():
    """Test a late failure does not overwrite users_processing."""
    storage, service = make_lifecycle()
    repository = service.submit(URL, PATH)
    service.begin_extraction(repository.repo_id)
    service.begin_resolution(repository.repo_id, total_commits=3, unique_contributors=1)

    assert service.fail(repository.repo_id, "timeout") is None
    assert service.get(repository.repo_id).state == S.USERS_PROCESSING


def test_finish_resolution_marks_leftovers_unresolved():
    """Test pending aggregates count as unresolved when the run settles."""
    storage, service = make_lifecycle()
    repository = service.submit(URL, PATH)
    service.begin_extraction(repository.repo_id)
    storage.replace_commit_aggregates(repository.repo_id, {"a@x.com": 5, "b@x.com": 3})
    storage.set_aggregate_status(repository.repo_id, ["a@x.com"], ResolutionStatus.RESOLVED)
    service.begin_resolution(repository.repo_id, total_commits=8, unique_contributors=2)

    finished = service.finish_resolution(repository.repo_id)

    assert finished.state == S.COMPLETED_PARTIAL
    assert finished.last_processed_at is not None
    assert storage.count_aggregates(repository.repo_id, ResolutionStatus.UNRESOLVED) == 1


def test_finish_resolution_twice_settles_once():
    """Test the second of two racing finalizers is a no-op."""
    storage, service = make_lifecycle()
    repository = service.submit(URL, PATH)
    service.begin_extraction(repository.repo_id)
    storage.replace_commit_aggregates(repository.repo_id, {"a@x.com": 5})
    storage.set_aggregate_status(repository.repo_id, ["a@x.com"], ResolutionStatus.RESOLVED)
    service.begin_resolution(repository.repo_id, total_commits=5, unique_contributors=1)

    assert service.finish_resolution(repository.repo_id).state == S.COMPLETED
    assert service.finish_resolution(repository.repo_id) is None


def test_finish_resolution_before_users_processing_is_a_no_op():
    """Test settling during extraction leaves the aggregates pending."""
    storage, service = make_lifecycle()
    repository = service.submit(URL, PATH)
    service.begin_extraction(repository.repo_id)
    storage.replace_commit_aggregates(repository.repo_id, {"a@x.com": 5})

    assert service.finish_resolution(repository.repo_id) is None
    assert storage.count_aggregates(repository.repo_id, ResolutionStatus.PENDING) == 1
    assert service.get(repository.repo_id).state == S.COMMITS_PROCESSING


def test_get_unknown_repository():
    """Test looking up a repository that was never submitted."""
    storage, service = make_lifecycle()

    with pytest.raises(RepositoryNotFound):
        service.get(99)
