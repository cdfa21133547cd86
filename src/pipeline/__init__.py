"""Pipeline orchestration components for the CutIntake ingestion pipeline."""

from src.pipeline.intake_pipeline import IntakePipeline
from src.pipeline.orchestrator import ResilientOrchestrator
from src.pipeline.progress_store import ProgressSessionStore

__all__ = [
    "IntakePipeline",
    "ProgressSessionStore",
    "ResilientOrchestrator",
]
