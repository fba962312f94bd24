"""
Stage executor registry.

The analysis algorithms themselves (transcription, detection, OCR, ...) live
outside the scheduler. Deployments register one callable per stage label;
the registry turns a claimed job into the ordered ``label -> executor``
mapping the stage runner consumes.
"""

import importlib
from typing import Mapping

from mediaqueue.models.job import JobType, ProcessingJob
from mediaqueue.services.stage_runner import StageExecutor

DEFAULT_STAGE_PLANS: dict[str, list[str]] = {
    JobType.VIDEO_ANALYSIS.value: [
        "metadata",
        "audio_extraction",
        "frame_extraction",
        "thumbnail_generation",
        "ocr_extraction",
        "quality_analysis",
    ],
    JobType.AUDIO_ANALYSIS.value: ["metadata", "transcription", "speaker_diarization", "sentiment", "summarization"],
    JobType.IMAGE_ANALYSIS.value: ["metadata", "object_detection", "face_detection", "ocr_extraction"],
    JobType.URL_ANALYSIS.value: ["fetch", "content_extraction", "summarization"],
    JobType.BATCH_PROCESSING.value: ["batch_dispatch"],
}


class ExecutorRegistry:
    def __init__(self, plans: Mapping[str, list[str]] | None = None):
        self._executors: dict[str, StageExecutor] = {}
        self._plans = {k: list(v) for k, v in (plans if plans is not None else DEFAULT_STAGE_PLANS).items()}

    def register(self, stage: str, executor: StageExecutor | None = None):
        """Register ``executor`` for ``stage``; usable as a decorator when executor is omitted."""
        if executor is None:
            def decorator(fn: StageExecutor) -> StageExecutor:
                self._executors[stage] = fn
                return fn
            return decorator
        self._executors[stage] = executor
        return executor

    def set_plan(self, job_type: str, stages: list[str]) -> None:
        self._plans[JobType(job_type).value] = list(stages)

    def plan_for(self, job: ProcessingJob) -> list[str]:
        configured = (job.job_config or {}).get("stages")
        if configured:
            return [str(s) for s in configured]
        return list(self._plans.get(job.job_type, []))

    def executors_for(self, job: ProcessingJob) -> dict[str, StageExecutor | None]:
        """Executors in plan order; a stage nobody registered maps to None."""
        return {stage: self._executors.get(stage) for stage in self.plan_for(job)}

    @property
    def stages(self) -> list[str]:
        return sorted(self._executors)


def load_registry(path: str) -> ExecutorRegistry:
    """Import an ExecutorRegistry given as ``package.module:attribute``."""
    module_name, _, attribute = path.partition(":")
    module = importlib.import_module(module_name)
    found = getattr(module, attribute or "registry")
    if not isinstance(found, ExecutorRegistry):
        raise TypeError(f"{path} is {type(found).__name__}, expected ExecutorRegistry")
    return found


registry = ExecutorRegistry()
