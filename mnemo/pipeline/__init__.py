"""Asynchronous enrichment: job queue, worker and reconciliation sweep."""

from mnemo.pipeline.jobs import Job, JobKind, JobQueue, JobState
from mnemo.pipeline.reconciler import ReconciliationSweep
from mnemo.pipeline.worker import EnrichmentPipeline, chunk_text

__all__ = [
    "EnrichmentPipeline",
    "Job",
    "JobKind",
    "JobQueue",
    "JobState",
    "ReconciliationSweep",
    "chunk_text",
]
