"""Scan execution: worker pool, batches, ticks, scheduling and lifecycle."""

from panelscan.services.batch import BatchRunner, BatchSummary
from panelscan.services.collaborators import (
    CommandPresetGenerator,
    JsonlSampleSink,
    JsonRosterProvider,
    PresetGenerator,
    RosterProvider,
    SampleSink,
    ScoreProvider,
    StaticRosterProvider,
    SummaryScoreReader,
)
from panelscan.services.scanner import DomainScanner, ScanResult
from panelscan.services.scanner_manager import ScannerManager
from panelscan.services.scheduler import RoundRobinScheduler, default_step, plan_round_robin
from panelscan.services.worker_pool import FetchWorkerPool, PoolRun, WorkerState

__all__ = [
    "BatchRunner",
    "BatchSummary",
    "CommandPresetGenerator",
    "DomainScanner",
    "FetchWorkerPool",
    "JsonRosterProvider",
    "JsonlSampleSink",
    "PoolRun",
    "PresetGenerator",
    "RosterProvider",
    "RoundRobinScheduler",
    "SampleSink",
    "ScanResult",
    "ScannerManager",
    "ScoreProvider",
    "StaticRosterProvider",
    "SummaryScoreReader",
    "WorkerState",
    "default_step",
    "plan_round_robin",
]
