"""Bounded-concurrency, resumable analysis of call transcripts."""

from .analysis_client import AnalysisClient, degraded_payload, parse_envelope
from .config import ConfigurationError, PipelineConfig
from .models import AnalysisResult, RunSummary, SourceRecord
from .normalizer import normalize
from .orchestrator import BatchOrchestrator
from .reconciler import ReconcileError, StateReconciler
from .selector import ReanalysisFilter, RecordSelector, SelectionError, SelectionMode
from .task_runner import BoundedTaskRunner, run_bounded

__all__ = [
    "AnalysisClient",
    "AnalysisResult",
    "BatchOrchestrator",
    "BoundedTaskRunner",
    "ConfigurationError",
    "PipelineConfig",
    "ReanalysisFilter",
    "ReconcileError",
    "RecordSelector",
    "RunSummary",
    "SelectionError",
    "SelectionMode",
    "SourceRecord",
    "StateReconciler",
    "degraded_payload",
    "normalize",
    "parse_envelope",
    "run_bounded",
]
