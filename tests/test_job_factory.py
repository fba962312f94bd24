"""Job creation: validation, defaults and per-job overrides."""

import pytest

from mediaqueue.models.job import JobStatus
from mediaqueue.schemas.job import ContentSource, FileSource, JobFilter
from mediaqueue.services.errors import AmbiguousSource, InvalidJobConfig, InvalidJobType, InvalidMediaType
from mediaqueue.services.job_factory import clamp_priority, resolve_source


async def test_new_job_gets_defaults(submit):
    job = await submit()

    assert job.status == JobStatus.PENDING.value
    assert job.progress == 0
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.priority == 5
    assert job.total_stages is None
    assert job.source == {"kind": "content", "content_id": "content-1"}
    assert job.started_at is None
    assert job.duration_ms is None


async def test_config_overrides_priority_retries_and_stage_count(submit):
    job = await submit(config={"priority": 8, "max_retries": 1, "stages": ["metadata", "ocr_extraction"]})

    assert job.priority == 8
    assert job.max_retries == 1
    assert job.total_stages == 2
    assert job.job_config["stages"] == ["metadata", "ocr_extraction"]


@pytest.mark.parametrize("requested, stored", [(0, 1), (-4, 1), (11, 10), (99, 10), (7, 7)])
async def test_priority_is_clamped(submit, requested, stored):
    job = await submit(config={"priority": requested})
    assert job.priority == stored


async def test_file_source_is_stored_as_file_reference(submit):
    job = await submit(source=FileSource(file_id="file-9"))

    assert job.file_id == "file-9"
    assert job.content_id is None
    assert job.source == {"kind": "file", "file_id": "file-9"}


async def test_unknown_job_type_is_rejected_and_not_persisted(service, submit):
    with pytest.raises(InvalidJobType):
        await submit(job_type="hologram_analysis")

    _, total = await service.list_jobs(JobFilter())
    assert total == 0


async def test_unknown_media_type_is_rejected(submit):
    with pytest.raises(InvalidMediaType):
        await submit(media_type="vinyl")


@pytest.mark.parametrize(
    "config",
    [
        {"priority": "high"},
        {"priority": None},
        {"max_retries": None},
        {"max_retries": True},
        {"stages": "ocr_extraction"},
        {"stages": [1, 2]},
        {"stages": ["metadata", ""]},
        {"total_stages": "x"},
    ],
)
async def test_malformed_config_is_rejected_and_not_persisted(service, submit, config):
    with pytest.raises(InvalidJobConfig) as excinfo:
        await submit(config=config)

    assert excinfo.value.code == "INVALID_JOB_CONFIG"
    _, total = await service.list_jobs(JobFilter())
    assert total == 0


async def test_numeric_string_config_values_are_accepted(submit):
    job = await submit(config={"priority": "4", "max_retries": "1", "total_stages": "6"})

    assert job.priority == 4
    assert job.max_retries == 1
    assert job.total_stages == 6


@pytest.mark.parametrize(
    "source",
    [
        None,
        {},
        {"content_id": "c-1", "file_id": "f-1"},
        {"kind": "content"},
    ],
)
async def test_source_must_name_exactly_one_reference(service, submit, source):
    with pytest.raises(AmbiguousSource):
        await submit(source=source)

    _, total = await service.list_jobs(JobFilter())
    assert total == 0


class TestResolveSource:
    def test_content_id(self):
        assert resolve_source(content_id="c-1") == ContentSource(content_id="c-1")

    def test_file_id(self):
        assert resolve_source(file_id="f-1") == FileSource(file_id="f-1")

    def test_both_is_ambiguous(self):
        with pytest.raises(AmbiguousSource):
            resolve_source("c-1", "f-1")

    def test_neither_is_ambiguous(self):
        with pytest.raises(AmbiguousSource):
            resolve_source()


def test_clamp_priority_accepts_numeric_strings():
    assert clamp_priority("12") == 10
