"""End-to-end run: register subject to T1, compose with T1->template, apply."""

from __future__ import annotations

import logging
import shutil
import socket
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

import pandas as pd

from ..errors import PipelineCancelled
from ..metadata.config import PipelineConfig
from ..metadata.models import ImageRef
from ..registration.ants import (
    AntsRegistrationService,
    AntsResamplingService,
    discover_binaries,
)
from ..registration.auxiliary import (
    AuxiliaryOutcome,
    apply_auxiliary,
    build_auxiliary_jobs,
    resolve_template_reference,
)
from ..registration.executor import run_registration
from ..registration.qc import write_registration_qc
from ..registration.services import RegistrationService, ResamplingService, RunContext
from ..registration.sitk_resample import SimpleITKResamplingService
from ..registration.transforms import (
    ComposedTransform,
    LinearTransformFile,
    PairedTransformFiles,
    TransformHandle,
    compose,
    locate_template_transform,
)
from .run_log import write_outputs_table, write_run_summary

logger = logging.getLogger(__name__)

RunStatus = Literal["success", "partial", "failed"]

QC_ROLE = "RegistrationQC.png"
_RULE = "-" * 86


@dataclass
class PipelineResult:
    """Outcome of one run."""

    config: PipelineConfig
    composed: Optional[ComposedTransform]
    outcomes: list[AuxiliaryOutcome] = field(default_factory=list)
    transform_files: list[Path] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    qc_path: Optional[Path] = None
    summary_path: Optional[Path] = None
    outputs_table_path: Optional[Path] = None

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.failed)

    @property
    def status(self) -> RunStatus:
        if not self.failed_count:
            return "success"
        if self.failed_count == len(self.outcomes):
            return "failed"
        return "partial"

    @property
    def outputs(self) -> list[ImageRef]:
        """Successfully written volumes, one per input label/auxiliary/tensor volume."""

        refs = []
        for outcome in self.outcomes:
            if outcome.failed:
                continue
            refs.append(
                ImageRef(
                    path=outcome.job.output,
                    dimensionality=self.config.dimensionality,
                    image_class=outcome.job.source.image_class,
                )
            )
        return refs

    def to_records(self) -> list[dict[str, object]]:
        return [outcome.to_record() for outcome in self.outcomes]

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.to_records())


def _format_elapsed(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 3600}h {total % 3600 // 60}m {total % 60}s"


def _echo_parameters(config: PipelineConfig) -> None:
    width = max(len(name) for name, _ in config.parameter_block())
    for name, value in config.parameter_block():
        logger.info("  %s = %s", name.ljust(width), value)


def _default_services(
    config: PipelineConfig,
    workdir: Path,
    registration_service: Optional[RegistrationService],
    resampling_service: Optional[ResamplingService],
) -> tuple[RegistrationService, ResamplingService]:
    ants_resampling = resampling_service is None and config.resampler == "ants"
    if registration_service is None or ants_resampling:
        binaries = discover_binaries(need_tensor=ants_resampling and config.tensor_image is not None)
        if registration_service is None:
            registration_service = AntsRegistrationService(
                binaries, config.registration, threads=config.threads
            )
        if ants_resampling:
            resampling_service = AntsResamplingService(binaries, workdir, threads=config.threads)
    if resampling_service is None:
        resampling_service = SimpleITKResamplingService(threads=config.threads)
    return registration_service, resampling_service


def _chain_transform_files(handle: Optional[TransformHandle]) -> list[Path]:
    if handle is None:
        return []
    files: list[Path] = []
    for step in handle.steps:
        if isinstance(step, LinearTransformFile):
            files.append(step.path)
        elif isinstance(step, PairedTransformFiles):
            files.extend([step.pull_path, step.push_path])
    return files


def run_pipeline(
    config: PipelineConfig,
    *,
    registration_service: Optional[RegistrationService] = None,
    resampling_service: Optional[ResamplingService] = None,
    context: Optional[RunContext] = None,
) -> PipelineResult:
    """Execute one run described by ``config``.

    Services default to the ANTs command-line tools (or SimpleITK for
    resampling when ``config.resampler == "simpleitk"``). The temporary
    working directory next to the output prefix is removed on success and on
    failure unless ``config.keep_intermediates`` is set.
    """

    context = context or RunContext.with_budget(config.time_budget)
    stages = config.stages()

    logger.info(
        "run_started",
        extra={
            "transform_class": config.transform_class.label,
            "dimensionality": config.dimensionality,
            "output_prefix": config.output_prefix,
        },
    )
    _echo_parameters(config)
    logger.info(
        "---------------------  Running intermodality registration on %s  ---------------------",
        socket.gethostname(),
    )

    out_dir = config.output_directory
    out_dir.mkdir(parents=True, exist_ok=True)
    workdir = Path(tempfile.mkdtemp(prefix="tmp", dir=out_dir))
    logger.debug("Working directory %s", workdir)

    subject_to_t1: Optional[TransformHandle] = None
    template: Optional[TransformHandle] = None
    composed: Optional[ComposedTransform] = None
    try:
        registration_service, resampling_service = _default_services(
            config, workdir, registration_service, resampling_service
        )

        # Resolve the external transform before spending time on registration.
        template = locate_template_transform(config.template_transform_prefix, config.dimensionality)

        subject_to_t1 = run_registration(
            registration_service,
            fixed=config.t1_image.path,
            moving=config.subject_image.path,
            stages=stages,
            dimensionality=config.dimensionality,
            output_prefix=config.output_prefix,
            workdir=workdir,
            mask=config.t1_mask.path,
            context=context,
        )
        composed = compose(subject_to_t1, template)

        qc_path = None
        if config.write_qc:
            qc_path = write_registration_qc(
                fixed=config.t1_image.path,
                moving=config.subject_image.path,
                subject_to_t1=subject_to_t1,
                output_path=Path(config.output_prefix + QC_ROLE),
            )

        jobs = build_auxiliary_jobs(config, resolve_template_reference(config))
        outcomes = apply_auxiliary(
            jobs,
            composed,
            resampling_service,
            dimensionality=config.dimensionality,
            max_workers=config.max_workers,
            context=context,
        )
    except KeyboardInterrupt:
        context.cancel()
        raise PipelineCancelled("interrupted by user") from None
    finally:
        for handle in (subject_to_t1, template):
            if handle is not None:
                handle.release()
        if composed is not None:
            composed.release()
        if config.keep_intermediates:
            logger.info("Keeping intermediate files in %s", workdir)
        else:
            shutil.rmtree(workdir, ignore_errors=True)

    result = PipelineResult(
        config=config,
        composed=composed,
        outcomes=outcomes,
        transform_files=_chain_transform_files(subject_to_t1),
        elapsed_seconds=context.elapsed(),
        qc_path=qc_path,
    )
    result.summary_path = write_run_summary(result)
    result.outputs_table_path = write_outputs_table(result)

    logger.info(
        "run_finished",
        extra={
            "status": result.status,
            "failed_outputs": result.failed_count,
            "outputs": [str(o.job.output) for o in outcomes if not o.failed],
        },
    )
    logger.info(_RULE)
    logger.info(" Done with intermodality registration pipeline")
    logger.info(_RULE)
    logger.info(" Script executed in %d seconds", int(result.elapsed_seconds))
    logger.info(" %s", _format_elapsed(result.elapsed_seconds))
    logger.info(_RULE)
    return result
