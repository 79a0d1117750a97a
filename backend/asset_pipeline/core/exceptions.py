"""
Pipeline error taxonomy.

Where each error stops:
  ExtractionError        recorded on the asset (extractionFailed), never leaves the job
  ChunkingError          recorded on the asset (vectorizationFailed), never leaves the job
  EmbeddingError         propagates to the job processor and consumes a retry attempt
  VectorStoreUnavailable converted to a no-op / empty result inside VectorStoreService
  JobRetryExhausted      built and logged when a job is dropped; never raised
"""

from __future__ import annotations


class AssetPipelineError(Exception):
    """Base class for every error raised by the asset pipeline."""


class ExtractionError(AssetPipelineError):
    """A source file is missing, oversized, empty, unreachable or unparsable."""

    def __init__(self, message: str, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


class ChunkingError(AssetPipelineError):
    """Extracted content could not be turned into chunks."""


class EmbeddingError(AssetPipelineError):
    """The embedding service failed or returned a vector of the wrong size."""


class VectorStoreUnavailable(AssetPipelineError):
    """The vector index was never initialised or is unreachable."""


class JobRetryExhausted(AssetPipelineError):
    """A job failed on every allowed attempt and has been dropped."""

    def __init__(self, job_id: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(
            f"Job {job_id} failed after {attempts} attempts: {last_error}"
        )
        self.job_id     = job_id
        self.attempts   = attempts
        self.last_error = last_error
