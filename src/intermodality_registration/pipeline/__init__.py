"""Pipeline orchestration entry points."""

from .orchestrator import PipelineResult, run_pipeline
from .run_log import write_outputs_table, write_run_summary

__all__ = [
    "PipelineResult",
    "run_pipeline",
    "write_outputs_table",
    "write_run_summary",
]
