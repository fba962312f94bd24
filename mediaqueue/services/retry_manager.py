"""
Retry / failure manager — decides whether a failed job is retried or failed.

Classification is rule based and pluggable: a rule matches an exception by
type or by a substring of its message and says whether the failure is worth
another attempt. Rules are consulted in order; explicit retryable flags on
StageExecutionError win over every rule, and anything no rule recognises is
treated as retryable.
"""

import logging
import traceback
from dataclasses import asdict, dataclass, replace
from typing import Iterable, Sequence

from mediaqueue.config import settings
from mediaqueue.models.job import JobStatus, ProcessingJob
from mediaqueue.services.errors import StageExecutionError
from mediaqueue.services.job_store import JobStore
from mediaqueue.services.state import can_transition
from mediaqueue.utils.timing import backoff_deadline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorClassification:
    retryable: bool
    type: str = "unknown"
    category: str = "general"
    severity: str = "warning"


@dataclass(frozen=True)
class ClassificationRule:
    classification: ErrorClassification
    patterns: tuple[str, ...] = ()
    exception_types: tuple[type[BaseException], ...] = ()
    status_codes: tuple[object, ...] = ()

    def matches(self, err: BaseException) -> bool:
        if self.exception_types and isinstance(err, self.exception_types):
            return True
        code = getattr(err, "status_code", None) or getattr(err, "code", None)
        if self.status_codes and code in self.status_codes:
            return True
        message = str(err).lower()
        return any(p in message for p in self.patterns)


def _rule(type_: str, category: str, retryable: bool, severity: str, patterns=(), exception_types=(), status_codes=()):
    return ClassificationRule(
        classification=ErrorClassification(retryable=retryable, type=type_, category=category, severity=severity),
        patterns=tuple(patterns),
        exception_types=tuple(exception_types),
        status_codes=tuple(status_codes),
    )


DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    _rule("network", "connectivity", True, "warning",
          patterns=("network", "connection"), exception_types=(ConnectionError,), status_codes=("ECONNREFUSED",)),
    _rule("timeout", "performance", True, "warning",
          patterns=("timeout", "timed out"), exception_types=(TimeoutError,)),
    _rule("auth", "security", False, "critical",
          patterns=("unauthorized", "authentication"), exception_types=(PermissionError,), status_codes=(401, 403)),
    _rule("rate_limit", "quota", True, "warning",
          patterns=("rate limit", "quota", "too many requests"), status_codes=(429,)),
    _rule("resource", "system", False, "critical",
          patterns=("memory", "disk", "resource"), exception_types=(MemoryError,)),
    _rule("validation", "input", False, "error",
          patterns=("invalid", "validation", "format", "unsupported", "malformed")),
    _rule("service_unavailable", "external", True, "critical",
          patterns=("unavailable", "service"), status_codes=(502, 503, 504)),
)

UNKNOWN = ErrorClassification(retryable=True)


class ErrorClassifier:
    def __init__(self, rules: Sequence[ClassificationRule] = DEFAULT_RULES):
        self._rules = list(rules)

    @classmethod
    def from_settings(
        cls,
        retryable_patterns: Iterable[str] = (),
        terminal_patterns: Iterable[str] = (),
    ) -> "ErrorClassifier":
        """Default rules, preceded by operator-configured message patterns."""
        extra: list[ClassificationRule] = []
        terminal = tuple(p.lower() for p in terminal_patterns)
        retryable = tuple(p.lower() for p in retryable_patterns)
        if terminal:
            extra.append(_rule("configured_terminal", "configured", False, "error", patterns=terminal))
        if retryable:
            extra.append(_rule("configured_retryable", "configured", True, "warning", patterns=retryable))
        return cls([*extra, *DEFAULT_RULES])

    def add_rule(self, rule: ClassificationRule, first: bool = True) -> None:
        if first:
            self._rules.insert(0, rule)
        else:
            self._rules.append(rule)

    def classify(self, err: BaseException) -> ErrorClassification:
        found = next((rule.classification for rule in self._rules if rule.matches(err)), None)
        explicit = err.retryable if isinstance(err, StageExecutionError) else None
        if explicit is None:
            return found or UNKNOWN
        if found is None:
            return ErrorClassification(
                retryable=explicit,
                type="stage_error" if explicit else "terminal_stage_error",
                category="stage",
                severity="warning" if explicit else "error",
            )
        if found.retryable == explicit:
            return found
        return replace(found, retryable=explicit)


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = settings.RETRY_BACKOFF_BASE_SECONDS
    max_seconds: float = settings.RETRY_BACKOFF_MAX_SECONDS

    def delay_for(self, retry_count: int) -> float:
        """Seconds to wait before the attempt that follows ``retry_count`` earlier retries."""
        return min(self.max_seconds, self.base_seconds * (2 ** retry_count))


@dataclass
class FailureDecision:
    retry: bool
    reason: str
    classification: ErrorClassification
    delay_seconds: float | None = None


class RetryManager:
    def __init__(
        self,
        store: JobStore,
        classifier: ErrorClassifier | None = None,
        backoff: BackoffPolicy | None = None,
    ):
        self._store = store
        self.classifier = classifier or ErrorClassifier.from_settings(
            settings.RETRYABLE_ERROR_PATTERNS, settings.TERMINAL_ERROR_PATTERNS,
        )
        self.backoff = backoff or BackoffPolicy()

    def decide(self, job: ProcessingJob, err: BaseException) -> FailureDecision:
        classification = self.classifier.classify(err)
        if not classification.retryable:
            return FailureDecision(retry=False, reason="terminal", classification=classification)
        if job.retry_count >= job.max_retries:
            return FailureDecision(retry=False, reason="retry_budget_exhausted", classification=classification)
        return FailureDecision(
            retry=True,
            reason="retryable",
            classification=classification,
            delay_seconds=self.backoff.delay_for(job.retry_count),
        )

    async def handle_failure(self, job: ProcessingJob, err: BaseException) -> ProcessingJob:
        """Record a stage failure on the job and move it to retrying or failed.

        The transition only applies while ``job`` is still processing under
        the same worker and retry count; otherwise (cancelled meanwhile, or a
        duplicate report) the current row is returned untouched.
        """
        if not can_transition(job.status, JobStatus.RETRYING):
            logger.warning("Ignoring failure for job %s in status %s: %s", job.id, job.status, err)
            return await self._store.require(job.id)

        decision = self.decide(job, err)
        now = self._store.clock()
        details = {
            "message": str(err) or type(err).__name__,
            "error_type": type(err).__name__,
            "timestamp": now.isoformat(),
            "stage": getattr(err, "stage", None) or job.current_stage,
            "classification": asdict(decision.classification),
        }
        if isinstance(err, StageExecutionError) and err.details:
            details["details"] = err.details

        if decision.retry:
            deadline = backoff_deadline(now, decision.delay_seconds)
            details["retry_count"] = job.retry_count + 1
            details["next_attempt_at"] = deadline.isoformat()
            updated = await self._store.schedule_retry(job, deadline, details)
            if updated is not None:
                logger.warning(
                    "Job %s failed (%s), retry %d/%d in %.1fs: %s",
                    job.id, decision.classification.type, updated.retry_count,
                    job.max_retries, decision.delay_seconds, details["message"],
                )
                return updated
        else:
            details["stack"] = "".join(traceback.format_exception(type(err), err, err.__traceback__))
            details["reason"] = decision.reason
            details["retry_count"] = job.retry_count
            details["attempts"] = job.retry_count + 1
            updated = await self._store.fail(job, details)
            if updated is not None:
                logger.warning(
                    "Job %s failed permanently after %d attempt(s) (%s): %s",
                    job.id, details["attempts"], decision.reason, details["message"],
                )
                return updated

        logger.info("Job %s changed underneath failure handling; leaving it as is", job.id)
        return await self._store.require(job.id)

    async def cancel(self, job_id) -> ProcessingJob | None:
        """Administrative cancellation; None when the job was already terminal."""
        job = await self._store.cancel(job_id)
        if job is not None:
            logger.info("Job %s cancelled", job_id)
        return job
