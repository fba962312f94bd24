from mediaqueue.models.job import JobStatus, JobType, MediaType, ProcessingJob, TERMINAL_STATUSES

__all__ = ["ProcessingJob", "JobStatus", "JobType", "MediaType", "TERMINAL_STATUSES"]
