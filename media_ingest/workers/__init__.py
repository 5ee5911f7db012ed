"""Worker package exports."""

from media_ingest.workers.pipeline import MediaGroupRecheckWorker

__all__ = ["MediaGroupRecheckWorker"]
