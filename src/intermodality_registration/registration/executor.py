"""Sequential execution of the planned registration stages."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from ..errors import PipelineCancelled, RegistrationFailure, TimeoutExceeded
from .services import RegistrationRequest, RegistrationService, RunContext
from .stages import StageDescriptor
from .transforms import TransformHandle

logger = logging.getLogger(__name__)


def stage_prefix(index: int, total: int, output_prefix: str, workdir: Path) -> str:
    """Final stage writes under the output prefix, earlier ones in the working dir."""

    if index == total - 1:
        return output_prefix
    return str(Path(workdir) / f"stage{index}_")


def run_registration(
    service: RegistrationService,
    *,
    fixed: Path,
    moving: Path,
    stages: Sequence[StageDescriptor],
    dimensionality: int,
    output_prefix: str,
    workdir: Path,
    mask: Optional[Path] = None,
    context: Optional[RunContext] = None,
) -> TransformHandle:
    """Register ``moving`` to ``fixed`` stage by stage.

    Each stage is seeded with the chain returned by the previous one and the
    service returns the whole moving->fixed chain, so the handle of the last
    stage is the result. Any stage failure abandons the chain; cancellation
    and timeouts propagate untouched.
    """

    if not stages:
        raise RegistrationFailure(0, "no stages planned")
    context = context or RunContext()
    handle: Optional[TransformHandle] = None
    total = len(stages)

    for stage in stages:
        context.check()
        request = RegistrationRequest(
            fixed=Path(fixed),
            moving=Path(moving),
            stage=stage,
            dimensionality=dimensionality,
            output_prefix=stage_prefix(stage.index, total, output_prefix, workdir),
            mask=Path(mask) if mask is not None else None,
            initial_transform=handle,
            workdir=Path(workdir),
        )
        logger.info("Registration %s", stage.summary())
        try:
            result = service.register(request, context)
        except (PipelineCancelled, TimeoutExceeded, KeyboardInterrupt):
            raise
        except Exception as exc:
            logger.error("Registration stage %d failed: %s", stage.index, exc)
            raise RegistrationFailure(stage.index, exc) from exc
        if result.dimensionality != dimensionality:
            raise RegistrationFailure(
                stage.index,
                f"service returned a {result.dimensionality}D transform for a {dimensionality}D run",
            )
        handle = result

    logger.info("Subject->T1 registration finished: %s", handle.describe())
    return handle
