# =============================================================================
# Unit Tests — Job Service, Rate Limiter & Secondary Writes
# =============================================================================
#
# Test groups:
#   1. JobService submission (validation, conflicts, dispatch, transcripts)
#   2. JobService cancellation
#   3. SubmissionRateLimiter (mocked Redis pipeline, as in production)
#   4. SecondaryWriter replay backlog
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fakes import ENGAGEMENT_ID, THESIS, FakeRedis, make_repositories

from thesis_validator.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    QueueUnavailableError,
    RateLimitExceededError,
    ValidationError,
)
from thesis_validator.models.jobs import JobStatus, JobType
from thesis_validator.services.jobs import CANCELLED_MESSAGE, JobService, cancel_key
from thesis_validator.services.rate_limiter import SubmissionRateLimiter
from thesis_validator.services.repositories import SecondaryWriter


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class RecordingDispatcher:
    def __init__(self):
        self.dispatched = []

    def dispatch(self, job):
        self.dispatched.append(job)


class BrokerDown:
    def dispatch(self, job):
        raise ConnectionError("Error 111 connecting to redis:6379. Connection refused.")


class AllowAll:
    async def check(self, key):
        return None


def _service(limiter=None):
    repos = make_repositories()
    dispatcher = RecordingDispatcher()
    redis = FakeRedis()
    service = JobService(
        repos.jobs,
        repos.engagements,
        rate_limiter=limiter or AllowAll(),
        dispatcher=dispatcher,
        redis=redis,
    )
    return service, repos, dispatcher, redis


# ---------------------------------------------------------------------------
# 1. Submission
# ---------------------------------------------------------------------------


class TestSubmission:
    def test_research_job_created_and_dispatched(self):
        service, repos, dispatcher, _ = _service()
        job = _run(service.submit_research(ENGAGEMENT_ID, f"  {THESIS}  ", {"search_depth": "quick"}))
        assert job.status == JobStatus.PENDING
        assert job.job_type == JobType.RESEARCH
        assert job.config["thesis"] == THESIS
        assert job.config["research"]["search_depth"] == "quick"
        assert repos.jobs.jobs[job.id] is job
        assert dispatcher.dispatched == [job]

    def test_stress_test_job(self):
        service, _, dispatcher, _ = _service()
        job = _run(service.submit_stress_test(ENGAGEMENT_ID, ["h1"], {"intensity": "light"}))
        assert job.job_type == JobType.STRESS_TEST
        assert job.config["hypothesis_ids"] == ["h1"]
        assert job.config["stress_test"]["intensity"] == "light"
        assert len(dispatcher.dispatched) == 1

    def test_second_active_job_conflicts(self):
        service, repos, dispatcher, _ = _service()
        first = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        with pytest.raises(ConflictError) as exc_info:
            _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        assert exc_info.value.existing_job_id == first.id
        assert len(repos.jobs.jobs) == 1
        assert dispatcher.dispatched == [first]

    def test_conflict_spans_job_types(self):
        service, _, _, _ = _service()
        first = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        with pytest.raises(ConflictError) as exc_info:
            _run(service.submit_stress_test(ENGAGEMENT_ID))
        assert exc_info.value.existing_job_id == first.id

    def test_new_job_after_terminal(self):
        service, repos, _, _ = _service()
        first = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        _run(service.cancel_job(first.id))
        second = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        assert second.id != first.id

    def test_unknown_engagement(self):
        service, repos, dispatcher, _ = _service()
        with pytest.raises(NotFoundError):
            _run(service.submit_research("nope", THESIS))
        assert repos.jobs.jobs == {} and dispatcher.dispatched == []

    @pytest.mark.parametrize("thesis", ["", "too short", "x" * 2001])
    def test_thesis_length_validated(self, thesis):
        service, repos, _, _ = _service()
        with pytest.raises(ValidationError):
            _run(service.submit_research(ENGAGEMENT_ID, thesis))
        assert repos.jobs.jobs == {}

    def test_config_validated(self):
        service, _, _, _ = _service()
        with pytest.raises(ValidationError, match="ResearchConfig"):
            _run(service.submit_research(ENGAGEMENT_ID, THESIS, {"max_hypotheses": 0}))

    def test_rate_limit_blocks_before_create(self):
        limiter = MagicMock()
        limiter.check = AsyncMock(side_effect=RateLimitExceededError(10, 3600))
        service, repos, _, _ = _service(limiter)
        with pytest.raises(RateLimitExceededError):
            _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        assert repos.jobs.jobs == {}

    def test_dispatch_failure_fails_job(self):
        service, repos, _, _ = _service()
        service.dispatcher = BrokerDown()
        with pytest.raises(QueueUnavailableError) as exc_info:
            _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        stored = repos.jobs.jobs[exc_info.value.job_id]
        assert stored.status == JobStatus.FAILED
        assert stored.error_message.startswith("Dispatch failed: Error 111")
        assert stored.completed_at is not None

        # The failed record does not hold the engagement's active slot
        service.dispatcher = RecordingDispatcher()
        retry = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        assert retry.status == JobStatus.PENDING
        assert service.dispatcher.dispatched == [retry]

    def test_transcripts_stored_on_job(self):
        service, _, _, _ = _service()
        transcript = {
            "content": "Former CFO: practices renew their software every three years.",
            "expert_name": "Former CFO",
            "call_id": "call-9",
            "hypothesis_ids": [],
        }
        job = _run(service.submit_research(ENGAGEMENT_ID, THESIS, expert_transcripts=[transcript]))
        assert job.config["expert_transcripts"] == [transcript]

    def test_no_transcripts_key_by_default(self):
        service, _, _, _ = _service()
        job = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        assert "expert_transcripts" not in job.config

    def test_blank_transcript_rejected(self):
        service, repos, _, _ = _service()
        with pytest.raises(ValidationError, match="content"):
            _run(
                service.submit_research(ENGAGEMENT_ID, THESIS, expert_transcripts=[{"content": " "}])
            )
        assert repos.jobs.jobs == {}

    def test_get_and_list(self):
        service, _, _, _ = _service()
        job = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        assert _run(service.get_job(job.id)) is job
        assert _run(service.list_jobs(ENGAGEMENT_ID)) == [job]
        with pytest.raises(NotFoundError):
            _run(service.get_job("missing"))


# ---------------------------------------------------------------------------
# 2. Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_pending_fails_immediately(self):
        service, repos, _, redis = _service()
        job = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        cancelled = _run(service.cancel_job(job.id))
        assert cancelled.status == JobStatus.FAILED
        assert cancelled.error_message == CANCELLED_MESSAGE
        assert repos.jobs.jobs[job.id].status == JobStatus.FAILED
        assert redis.values == {}

    def test_running_sets_flag(self):
        service, repos, _, redis = _service()
        job = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        repos.jobs.jobs[job.id] = job.transitioned(JobStatus.RUNNING)
        result = _run(service.cancel_job(job.id))
        assert result.status == JobStatus.RUNNING
        assert redis.values[cancel_key(job.id)] == "1"

    def test_terminal_rejected(self):
        service, repos, _, _ = _service()
        job = _run(service.submit_research(ENGAGEMENT_ID, THESIS))
        running = job.transitioned(JobStatus.RUNNING)
        repos.jobs.jobs[job.id] = running.transitioned(JobStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            _run(service.cancel_job(job.id))

    def test_unknown_job(self):
        service, _, _, _ = _service()
        with pytest.raises(NotFoundError):
            _run(service.cancel_job("missing"))


# ---------------------------------------------------------------------------
# 3. Rate limiter
# ---------------------------------------------------------------------------


def _mock_redis(count: int):
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[None, count, None, None])
    redis = MagicMock()
    redis.pipeline.return_value = pipe
    return redis, pipe


class TestSubmissionRateLimiter:
    def test_under_limit_passes(self):
        redis, pipe = _mock_redis(3)
        _run(SubmissionRateLimiter(redis, limit=10, window_seconds=3600).check(ENGAGEMENT_ID))
        pipe.zadd.assert_called_once()
        assert pipe.zcard.call_args.args[0] == f"ratelimit:submissions:{ENGAGEMENT_ID}"

    def test_at_limit_raises(self):
        redis, _ = _mock_redis(10)
        with pytest.raises(RateLimitExceededError) as exc_info:
            _run(SubmissionRateLimiter(redis, limit=10, window_seconds=3600).check(ENGAGEMENT_ID))
        assert exc_info.value.limit == 10
        assert exc_info.value.retry_after == 3600

    def test_redis_unavailable_allows_through(self):
        with patch(
            "thesis_validator.services.rate_limiter._get_rate_limit_redis",
            side_effect=ConnectionError("Redis down"),
        ):
            _run(SubmissionRateLimiter(limit=1).check(ENGAGEMENT_ID))  # Should not raise

    def test_pipeline_error_allows_through(self):
        redis, pipe = _mock_redis(0)
        pipe.execute = AsyncMock(side_effect=TimeoutError("slow"))
        _run(SubmissionRateLimiter(redis, limit=1).check(ENGAGEMENT_ID))


# ---------------------------------------------------------------------------
# 4. Secondary writer
# ---------------------------------------------------------------------------


class TestSecondaryWriter:
    def test_success_not_parked(self):
        writer = SecondaryWriter()
        op = AsyncMock()
        assert _run(writer.replicate("x", op)) is True
        assert len(writer.backlog) == 0

    def test_failure_parked_then_replayed(self):
        writer = SecondaryWriter()
        op = AsyncMock(side_effect=[ConnectionError("down"), None])
        assert _run(writer.replicate("evidence.create:1", op)) is False
        assert writer.backlog[0].label == "evidence.create:1"
        assert _run(writer.replay()) == (1, 0)
        assert op.await_count == 2

    def test_replay_keeps_still_failing(self):
        writer = SecondaryWriter()
        op = AsyncMock(side_effect=ConnectionError("down"))
        _run(writer.replicate("a", op))
        assert _run(writer.replay()) == (0, 1)
        assert len(writer.backlog) == 1

    def test_backlog_bounded(self):
        writer = SecondaryWriter(max_backlog=2)
        op = AsyncMock(side_effect=ConnectionError("down"))
        for i in range(5):
            _run(writer.replicate(str(i), op))
        assert [w.label for w in writer.backlog] == ["3", "4"]
