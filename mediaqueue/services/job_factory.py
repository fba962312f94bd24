"""Job factory — validates a submission and persists it as a pending job."""

import logging
from typing import Any, Mapping

from pydantic import TypeAdapter, ValidationError

from mediaqueue.config import settings
from mediaqueue.models.job import JobStatus, JobType, MediaType, ProcessingJob
from mediaqueue.schemas.job import ContentSource, FileSource, SourceRef
from mediaqueue.services.errors import AmbiguousSource, InvalidJobConfig, InvalidJobType, InvalidMediaType
from mediaqueue.services.job_store import JobStore

logger = logging.getLogger(__name__)

_source_adapter = TypeAdapter(SourceRef)

PRIORITY_MIN = 1
PRIORITY_MAX = 10


def clamp_priority(value: int) -> int:
    return max(PRIORITY_MIN, min(PRIORITY_MAX, int(value)))


def _config_int(config: Mapping[str, Any], key: str, default: int) -> int:
    """Integer config value; numeric strings are accepted, anything else is rejected."""
    value = config.get(key, default)
    if isinstance(value, bool) or value is None:
        raise InvalidJobConfig(key, value, "an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidJobConfig(key, value, "an integer") from None


def _config_stages(config: Mapping[str, Any]) -> list[str] | None:
    stages = config.get("stages")
    if stages is None:
        return None
    if not isinstance(stages, (list, tuple)) or not all(isinstance(s, str) and s for s in stages):
        raise InvalidJobConfig("stages", stages, "a list of stage labels")
    return list(stages)


def resolve_source(content_id: str | None = None, file_id: str | None = None) -> SourceRef:
    """Turn the two optional ids of an ingestion payload into a single SourceRef."""
    if content_id and file_id:
        raise AmbiguousSource("content_id and file_id are mutually exclusive")
    if content_id:
        return ContentSource(content_id=content_id)
    if file_id:
        return FileSource(file_id=file_id)
    raise AmbiguousSource("one of content_id or file_id is required")


def _coerce_source(source: SourceRef | Mapping[str, Any] | None) -> SourceRef:
    if isinstance(source, (ContentSource, FileSource)):
        return source
    if source is None:
        raise AmbiguousSource("one of content_id or file_id is required")
    if "kind" not in source:
        return resolve_source(source.get("content_id"), source.get("file_id"))
    try:
        return _source_adapter.validate_python(source)
    except ValidationError as exc:
        raise AmbiguousSource(f"invalid source reference: {exc.errors()[0]['msg']}") from exc


class JobFactory:
    def __init__(
        self,
        store: JobStore,
        default_priority: int = settings.JOB_DEFAULT_PRIORITY,
        default_max_retries: int = settings.JOB_DEFAULT_MAX_RETRIES,
    ):
        self._store = store
        self._default_priority = default_priority
        self._default_max_retries = default_max_retries

    async def create_job(
        self,
        user_id: str,
        job_type: JobType | str,
        media_type: MediaType | str,
        source: SourceRef | Mapping[str, Any] | None,
        config: Mapping[str, Any] | None = None,
        input_metadata: Mapping[str, Any] | None = None,
    ) -> ProcessingJob:
        """Validate a submission and insert it as a pending job.

        Raises InvalidJobType, InvalidMediaType, AmbiguousSource or
        InvalidJobConfig without persisting anything when the submission is
        malformed.
        """
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise InvalidJobType(job_type) from None
        try:
            media_type = MediaType(media_type)
        except ValueError:
            raise InvalidMediaType(media_type) from None
        source = _coerce_source(source)
        config = dict(config or {})

        priority = clamp_priority(_config_int(config, "priority", self._default_priority))
        max_retries = max(0, _config_int(config, "max_retries", self._default_max_retries))
        stages = _config_stages(config)
        if stages:
            total_stages = len(stages)
        elif config.get("total_stages") is not None:
            total_stages = max(0, _config_int(config, "total_stages", 0))
        else:
            total_stages = None

        job = ProcessingJob(
            user_id=str(user_id),
            content_id=source.content_id if isinstance(source, ContentSource) else None,
            file_id=source.file_id if isinstance(source, FileSource) else None,
            job_type=job_type.value,
            media_type=media_type.value,
            status=JobStatus.PENDING.value,
            priority=priority,
            retry_count=0,
            max_retries=max_retries,
            progress=0,
            total_stages=total_stages,
            stages_data=[],
            job_config=config,
            input_metadata=dict(input_metadata or {}),
            processing_results={},
            performance_metrics={},
        )
        job = await self._store.insert(job)
        logger.info(
            "Created job %s (%s/%s) for user %s priority=%d",
            job.id, job.job_type, job.media_type, job.user_id, job.priority,
        )
        return job
