"""Ingestion orchestration: progress tracking, pipelines, resampling and run control."""

from perpdata.ingestion.fetcher import DataFetcherService
from perpdata.ingestion.progress import (
    DONE,
    FetchRun,
    ProgressBroadcaster,
    ProgressSubscription,
    StageProgressTracker,
)
from perpdata.ingestion.registry import FetcherRegistry
from perpdata.ingestion.resample import FundingResampler, resample_hourly_to_8h
from perpdata.ingestion.scheduler import IncrementalScheduler

__all__ = [
    "DONE",
    "DataFetcherService",
    "FetchRun",
    "FetcherRegistry",
    "FundingResampler",
    "IncrementalScheduler",
    "ProgressBroadcaster",
    "ProgressSubscription",
    "StageProgressTracker",
    "resample_hourly_to_8h",
]
