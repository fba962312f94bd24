"""
Scheduler error types.

All errors inherit from JobError. Validation errors are raised to the
submitter at creation time; everything that happens after a job exists is
recorded on the job row instead of being raised.
"""


class JobError(Exception):
    """Base exception for all scheduler failures."""
    pass


class JobValidationError(JobError):
    """A submission was rejected before any job was persisted."""

    code = "INVALID_JOB"


class InvalidJobType(JobValidationError):
    code = "INVALID_JOB_TYPE"

    def __init__(self, job_type: object):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type!r}")


class InvalidMediaType(JobValidationError):
    code = "INVALID_MEDIA_TYPE"

    def __init__(self, media_type: object):
        self.media_type = media_type
        super().__init__(f"Unknown media type: {media_type!r}")


class AmbiguousSource(JobValidationError):
    code = "AMBIGUOUS_SOURCE"

    def __init__(self, reason: str = "exactly one of content_id or file_id is required"):
        super().__init__(reason)


class InvalidJobConfig(JobValidationError):
    code = "INVALID_JOB_CONFIG"

    def __init__(self, key: str, value: object, expected: str):
        self.key = key
        self.value = value
        super().__init__(f"Invalid job config {key}={value!r}: expected {expected}")


class JobNotFound(JobError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: object):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidStateTransition(JobError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, current_state: str, target_state: str):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(f"Invalid job state transition: {current_state} -> {target_state}")


class CancellationConflict(JobError):
    """The job changed state under every cancellation attempt; nothing was cancelled."""

    code = "CANCELLATION_CONFLICT"

    def __init__(self, job_id: object, attempts: int):
        self.job_id = job_id
        super().__init__(f"Job {job_id} kept changing; not cancelled after {attempts} attempts")


class ClaimContention(JobError):
    """Another worker reserved the candidate first. Never leaves the claim engine."""

    def __init__(self, job_id: object):
        self.job_id = job_id
        super().__init__(f"Job {job_id} was claimed concurrently")


class StageExecutionError(JobError):
    """A stage executor failed in a way worth retrying."""

    retryable = True

    def __init__(self, message: str, stage: str | None = None, **details):
        self.stage = stage
        self.details = details
        super().__init__(message)


class TerminalStageError(StageExecutionError):
    """A stage executor failed in a way no retry can fix (bad input, unsupported media)."""

    retryable = False


class MissingStageExecutor(TerminalStageError):
    def __init__(self, stage: str):
        super().__init__(f"No executor registered for stage '{stage}'", stage=stage)


class JobStalled(StageExecutionError):
    """Raised on behalf of a job that exceeded its maximum runtime."""

    def __init__(self, runtime_seconds: float, limit_seconds: float):
        super().__init__(
            f"Job stalled: processing for {runtime_seconds:.0f}s exceeds limit of {limit_seconds:.0f}s",
            runtime_seconds=runtime_seconds,
            limit_seconds=limit_seconds,
        )
