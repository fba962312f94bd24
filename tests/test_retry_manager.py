"""Failure handling: classification, backoff, retry budget and terminal failures."""

from datetime import timedelta

import pytest

from mediaqueue.models.job import JobStatus
from mediaqueue.services.errors import JobStalled, StageExecutionError, TerminalStageError
from mediaqueue.services.retry_manager import BackoffPolicy, ErrorClassifier, UNKNOWN


class _HttpError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


# ===== Classification =====

class TestErrorClassifier:
    @pytest.fixture
    def classifier(self):
        return ErrorClassifier()

    @pytest.mark.parametrize(
        "err, type_",
        [
            (TimeoutError(), "timeout"),
            (ConnectionError("peer reset"), "network"),
            (RuntimeError("Request timed out after 30s"), "timeout"),
            (_HttpError("slow down", 429), "rate_limit"),
            (_HttpError("bad gateway", 502), "service_unavailable"),
        ],
    )
    def test_transient_errors_are_retryable(self, classifier, err, type_):
        result = classifier.classify(err)
        assert result.retryable is True
        assert result.type == type_

    @pytest.mark.parametrize(
        "err, type_",
        [
            (ValueError("Unsupported codec: vp11"), "validation"),
            (ValueError("malformed header"), "validation"),
            (PermissionError("denied"), "auth"),
            (_HttpError("nope", 401), "auth"),
            (MemoryError(), "resource"),
        ],
    )
    def test_permanent_errors_are_terminal(self, classifier, err, type_):
        result = classifier.classify(err)
        assert result.retryable is False
        assert result.type == type_

    def test_unrecognised_errors_default_to_retryable(self, classifier):
        assert classifier.classify(RuntimeError("something odd")) == UNKNOWN
        assert UNKNOWN.retryable is True

    def test_explicit_flag_wins_over_matching_rule(self, classifier):
        retryable = classifier.classify(StageExecutionError("invalid response body"))
        terminal = classifier.classify(TerminalStageError("Request timed out"))

        assert (retryable.type, retryable.retryable) == ("validation", True)
        assert (terminal.type, terminal.retryable) == ("timeout", False)

    def test_explicit_flag_without_rule(self, classifier):
        assert classifier.classify(StageExecutionError("hiccup")).type == "stage_error"
        assert classifier.classify(TerminalStageError("corrupt header")).type == "terminal_stage_error"

    def test_configured_patterns_take_precedence(self):
        classifier = ErrorClassifier.from_settings(
            retryable_patterns=["Invalid Token"],
            terminal_patterns=["checksum mismatch"],
        )

        assert classifier.classify(RuntimeError("checksum mismatch on chunk 3")).retryable is False
        assert classifier.classify(RuntimeError("invalid token, refresh needed")).retryable is True

    def test_add_rule_prepends(self, classifier):
        from mediaqueue.services.retry_manager import _rule

        classifier.add_rule(_rule("gpu", "system", True, "warning", patterns=("cuda",)))

        assert classifier.classify(RuntimeError("CUDA memory exhausted")).type == "gpu"


class TestBackoffPolicy:
    @pytest.mark.parametrize("retry_count, delay", [(0, 5), (1, 10), (3, 40), (7, 640), (8, 900), (20, 900)])
    def test_exponential_with_cap(self, retry_count, delay):
        assert BackoffPolicy(base_seconds=5, max_seconds=900).delay_for(retry_count) == delay


# ===== Job transitions =====

async def test_retry_budget_bounds_retry_count(service, submit, clock):
    job = await submit(config={"max_retries": 3})

    for attempt in range(4):
        claimed = await service.claim_next("worker-a")
        assert claimed is not None, f"attempt {attempt} was not claimable"
        updated = await service.report_stage_failure(job.id, "worker-a", StageExecutionError("flaky upstream"))
        clock.advance(1000)

    assert updated.status == JobStatus.FAILED.value
    assert updated.retry_count == 3
    assert updated.error_details["reason"] == "retry_budget_exhausted"
    assert updated.error_details["attempts"] == 4
    assert updated.error_details["message"] == "flaky upstream"
    assert "stack" in updated.error_details
    assert updated.performance_metrics["attempts"] == 4
    assert await service.claim_next("worker-a") is None


async def test_backoff_doubles_with_each_retry(service, submit, clock):
    job = await submit(config={"max_retries": 5})
    waits = []

    for _ in range(3):
        await service.claim_next("worker-a")
        now = clock()
        updated = await service.report_stage_failure(job.id, "worker-a", StageExecutionError("flaky upstream"))
        waits.append((updated.next_attempt_at - now).total_seconds())
        clock.advance(1000)

    assert waits == [5, 10, 20]


async def test_retry_records_error_details(service, submit, clock):
    job = await submit()
    await service.claim_next("worker-a")

    updated = await service.report_stage_failure(
        job.id, "worker-a", StageExecutionError("upstream hiccup", stage="transcription", provider="asr-1"),
    )

    assert updated.status == JobStatus.RETRYING.value
    assert updated.retry_count == 1
    details = updated.error_details
    assert details["message"] == "upstream hiccup"
    assert details["retry_count"] == 1
    assert details["stage"] == "transcription"
    assert details["timestamp"] == clock().isoformat()
    assert details["details"] == {"provider": "asr-1"}
    assert details["classification"]["retryable"] is True
    assert details["next_attempt_at"] == (clock() + timedelta(seconds=5)).isoformat()


async def test_terminal_error_fails_immediately(service, submit, clock):
    job = await submit()
    await service.claim_next("worker-a")
    clock.advance(2.5)

    failed = await service.report_stage_failure(job.id, "worker-a", ValueError("unsupported container"))

    assert failed.status == JobStatus.FAILED.value
    assert failed.retry_count == 0
    assert failed.completed_at == clock()
    assert failed.duration_ms == 2500
    assert failed.duration_ms == (failed.completed_at - failed.started_at) // timedelta(milliseconds=1)
    assert failed.error_details["reason"] == "terminal"
    assert failed.error_details["attempts"] == 1
    assert failed.error_details["classification"]["type"] == "validation"


async def test_duplicate_failure_report_is_ignored(service, submit):
    job = await submit()
    claimed = await service.claim_next("worker-a")

    first = await service.retries.handle_failure(claimed, StageExecutionError("flaky upstream"))
    second = await service.retries.handle_failure(claimed, StageExecutionError("flaky upstream"))

    assert first.retry_count == 1
    assert second.retry_count == 1
    assert second.status == JobStatus.RETRYING.value
    assert (await service.get_job(job.id)).retry_count == 1


async def test_failure_on_cancelled_job_keeps_it_cancelled(service, submit):
    job = await submit()
    claimed = await service.claim_next("worker-a")
    await service.cancel_job(job.id)

    result = await service.retries.handle_failure(claimed, StageExecutionError("flaky upstream"))

    assert result.status == JobStatus.CANCELLED.value
    assert result.retry_count == 0


async def test_stalled_job_error_is_retryable(service, submit):
    job = await submit()
    claimed = await service.claim_next("worker-a")

    updated = await service.retries.handle_failure(claimed, JobStalled(4000, 3600))

    assert updated.status == JobStatus.RETRYING.value
    assert updated.error_details["error_type"] == "JobStalled"
    assert updated.error_details["details"] == {"runtime_seconds": 4000, "limit_seconds": 3600}
    assert job.id == updated.id
