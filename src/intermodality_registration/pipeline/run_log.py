"""Persisted record of a run: JSON summary plus a CSV table of outputs."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict

import pandas as pd

if TYPE_CHECKING:
    from .orchestrator import PipelineResult

logger = logging.getLogger(__name__)

SUMMARY_ROLE = "RunSummary.json"
OUTPUTS_TABLE_ROLE = "RunOutputs.csv"


def summary_path(output_prefix: str) -> Path:
    return Path(f"{output_prefix}{SUMMARY_ROLE}")


def outputs_table_path(output_prefix: str) -> Path:
    return Path(f"{output_prefix}{OUTPUTS_TABLE_ROLE}")


def build_summary(result: "PipelineResult") -> Dict[str, Any]:
    config = result.config
    return {
        "status": result.status,
        "failed_outputs": result.failed_count,
        "elapsed_seconds": round(result.elapsed_seconds, 3),
        "dimensionality": config.dimensionality,
        "transform_class": {
            "value": int(config.transform_class),
            "label": config.transform_class.label,
        },
        "stages": [stage.summary() for stage in config.stages()],
        "inputs": {
            "subject_image": str(config.subject_image.path),
            "t1_image": str(config.t1_image.path),
            "t1_mask": str(config.t1_mask.path),
            "template_transform_prefix": config.template_transform_prefix,
            "template_image": str(config.template_image.path) if config.template_image else None,
        },
        "transforms": {
            "subject_to_t1": [str(path) for path in result.transform_files],
            "forward": result.composed.forward.describe() if result.composed else None,
            "inverse": result.composed.inverse.describe() if result.composed else None,
        },
        "outputs": result.to_records(),
        "qc": str(result.qc_path) if result.qc_path else None,
        "registration_settings": asdict(config.registration),
        "resampler": config.resampler,
    }


def write_run_summary(result: "PipelineResult") -> Path:
    path = summary_path(result.config.output_prefix)
    path.write_text(json.dumps(build_summary(result), indent=2))
    logger.info("Wrote run summary %s", path)
    return path


def write_outputs_table(result: "PipelineResult") -> Path:
    path = outputs_table_path(result.config.output_prefix)
    frame = result.to_dataframe()
    if frame.empty:
        frame = pd.DataFrame(columns=["role", "status", "output", "message"])
    frame.to_csv(path, index=False)
    return path
