from asset_pipeline.workers.jobs import Job, JobPriority, JobQueue, JobType, RetryPolicy
from asset_pipeline.workers.processor import JobFailure, JobProcessor, ProcessResult

__all__ = [
    "Job",
    "JobPriority",
    "JobQueue",
    "JobType",
    "RetryPolicy",
    "JobFailure",
    "JobProcessor",
    "ProcessResult",
]
