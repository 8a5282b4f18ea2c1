"""Application of the composed transform to labels, auxiliary scalars and tensors.

Every volume is an independent job: a failure is recorded in that job's
outcome and the remaining jobs carry on. Only cancellation and the run's
wall-clock budget stop the whole batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Optional, Sequence

import SimpleITK as sitk

from ..errors import PerImageResampleFailure, PipelineCancelled, TimeoutExceeded
from ..metadata.models import ImageClass, ImageRef
from .services import InterpolationMode, ResampleRequest, ResamplingService, RunContext
from .transforms import ComposedTransform, template_warp_grid

if TYPE_CHECKING:
    from ..metadata.config import PipelineConfig

logger = logging.getLogger(__name__)

LABEL_ROLE = "TemplateLabelsToSubject"
TENSOR_ROLE = "TensorToTemplate"

OutcomeStatus = Literal["success", "failed"]

INTERPOLATION_BY_CLASS = {
    ImageClass.INTENSITY: InterpolationMode.LINEAR,
    ImageClass.PROBABILITY: InterpolationMode.LINEAR,
    ImageClass.LABEL: InterpolationMode.NEAREST_NEIGHBOR,
    ImageClass.TENSOR: InterpolationMode.TENSOR,
}


def auxiliary_role(index: int) -> str:
    return f"Auxiliary{index:02d}ToTemplate"


def interpolation_for(image_class: ImageClass) -> InterpolationMode:
    return INTERPOLATION_BY_CLASS[ImageClass(image_class)]


class Direction(str, Enum):
    TO_TEMPLATE = "to_template"
    TO_SUBJECT = "to_subject"


@dataclass(frozen=True)
class AuxiliaryJob:
    role: str
    source: ImageRef
    output: Path
    direction: Direction
    reference: Path

    @property
    def interpolation(self) -> InterpolationMode:
        return interpolation_for(self.source.image_class)


@dataclass
class AuxiliaryOutcome:
    job: AuxiliaryJob
    status: OutcomeStatus
    message: Optional[str] = None
    error: Optional[PerImageResampleFailure] = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def to_record(self) -> dict[str, object]:
        return {
            "role": self.job.role,
            "image_class": self.job.source.image_class.value,
            "direction": self.job.direction.value,
            "interpolation": self.job.interpolation.value,
            "source": str(self.job.source.path),
            "output": str(self.job.output),
            "reference": str(self.job.reference),
            "status": self.status,
            "message": self.message,
        }


def resolve_template_reference(config: "PipelineConfig") -> Path:
    """Grid for template-space outputs: template image, template warp, else the T1."""

    if config.template_image is not None:
        return config.template_image.path
    warp = template_warp_grid(config.template_transform_prefix)
    if warp is not None:
        return warp
    logger.warning(
        "No template image given and no %s*1Warp field found; template-space "
        "outputs are written on the T1 grid",
        config.template_transform_prefix,
    )
    return config.t1_image.path


def build_auxiliary_jobs(config: "PipelineConfig", template_reference: Path) -> list[AuxiliaryJob]:
    jobs: list[AuxiliaryJob] = []
    if config.label_image is not None:
        jobs.append(
            AuxiliaryJob(
                role=LABEL_ROLE,
                source=config.label_image,
                output=config.output_path(LABEL_ROLE),
                direction=Direction.TO_SUBJECT,
                reference=config.subject_image.path,
            )
        )
    for index, aux in enumerate(config.auxiliary_images):
        role = auxiliary_role(index)
        jobs.append(
            AuxiliaryJob(
                role=role,
                source=aux,
                output=config.output_path(role),
                direction=Direction.TO_TEMPLATE,
                reference=template_reference,
            )
        )
    if config.tensor_image is not None:
        jobs.append(
            AuxiliaryJob(
                role=TENSOR_ROLE,
                source=config.tensor_image,
                output=config.output_path(TENSOR_ROLE),
                direction=Direction.TO_TEMPLATE,
                reference=template_reference,
            )
        )
    return jobs


def _check_source(job: AuxiliaryJob, dimensionality: int) -> None:
    path = job.source.path
    if not path.is_file():
        raise FileNotFoundError(f"{path} does not exist")
    reader = sitk.ImageFileReader()
    reader.SetFileName(str(path))
    reader.ReadImageInformation()
    found = reader.GetDimension()
    if found != dimensionality:
        raise ValueError(f"image is {found}D but the run is {dimensionality}D")


def _remove_partial(path: Path) -> None:
    if path.exists():
        logger.warning("Removing partial output %s", path)
        path.unlink()


def _run_job(
    job: AuxiliaryJob,
    composed: ComposedTransform,
    service: ResamplingService,
    dimensionality: int,
    context: RunContext,
) -> AuxiliaryOutcome:
    transform = composed.forward if job.direction is Direction.TO_TEMPLATE else composed.inverse
    try:
        context.check()
        _check_source(job, dimensionality)
        service.resample(
            ResampleRequest(
                input=job.source.path,
                output=job.output,
                reference=job.reference,
                transform=transform,
                interpolation=job.interpolation,
                dimensionality=dimensionality,
            ),
            context,
        )
    except (PipelineCancelled, TimeoutExceeded):
        _remove_partial(job.output)
        raise
    except Exception as exc:
        _remove_partial(job.output)
        failure = PerImageResampleFailure(job.role, job.source.path, exc)
        logger.error("Resampling failed for %s", failure)
        return AuxiliaryOutcome(job=job, status="failed", message=str(failure), error=failure)

    logger.info(
        "Wrote %s (%s, %s, %s)",
        job.output,
        job.role,
        job.direction.value,
        job.interpolation.value,
    )
    return AuxiliaryOutcome(job=job, status="success")


def apply_auxiliary(
    jobs: Sequence[AuxiliaryJob],
    composed: ComposedTransform,
    service: ResamplingService,
    *,
    dimensionality: int,
    max_workers: int = 1,
    context: Optional[RunContext] = None,
) -> list[AuxiliaryOutcome]:
    """Resample every job; outcomes are returned in job order."""

    context = context or RunContext()
    if not jobs:
        return []
    workers = max(1, min(int(max_workers), len(jobs)))
    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="auxiliary")
    try:
        futures = [
            pool.submit(_run_job, job, composed, service, dimensionality, context)
            for job in jobs
        ]
        outcomes = [future.result() for future in futures]
    except BaseException:
        context.cancel()
        pool.shutdown(wait=True, cancel_futures=True)
        raise
    pool.shutdown(wait=True)

    failed = sum(1 for outcome in outcomes if outcome.failed)
    if failed:
        logger.error("%d of %d auxiliary output(s) failed", failed, len(outcomes))
    return outcomes
