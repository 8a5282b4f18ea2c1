"""Contracts between the pipeline and the external registration/resampling engines.

The pipeline never talks to ANTs or SimpleITK directly; it builds a request,
hands it to an injected service and gets a transform chain (registration) or
a written image (resampling) back. Tests substitute deterministic fakes.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from ..errors import PipelineCancelled, TimeoutExceeded
from .stages import StageDescriptor
from .transforms import TransformHandle


class InterpolationMode(str, Enum):
    LINEAR = "Linear"
    NEAREST_NEIGHBOR = "NearestNeighbor"
    TENSOR = "Tensor"


@dataclass
class RunContext:
    """Cooperative cancellation flag plus an optional wall-clock deadline."""

    cancel_event: threading.Event = field(default_factory=threading.Event)
    deadline: Optional[float] = None
    started: float = field(default_factory=time.monotonic)

    @classmethod
    def with_budget(cls, seconds: Optional[float]) -> "RunContext":
        ctx = cls()
        if seconds is not None:
            ctx.deadline = ctx.started + float(seconds)
        return ctx

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def check(self) -> None:
        """Raise if the run was cancelled or ran out of time."""

        if self.cancel_event.is_set():
            raise PipelineCancelled("run cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise TimeoutExceeded(
                f"wall-clock budget exhausted after {self.elapsed():.1f} s"
            )


@dataclass(frozen=True)
class RegistrationRequest:
    """One stage of moving->fixed registration.

    ``initial_transform`` is the chain produced by the previous stage; when it
    is ``None`` the service initialises by aligning centres of mass. Scratch
    files the service needs go to ``workdir``.
    """

    fixed: Path
    moving: Path
    stage: StageDescriptor
    dimensionality: int
    output_prefix: str
    mask: Optional[Path] = None
    initial_transform: Optional[TransformHandle] = None
    workdir: Optional[Path] = None


@dataclass(frozen=True)
class ResampleRequest:
    """Resample ``input`` onto the ``reference`` grid through ``transform``."""

    input: Path
    output: Path
    reference: Path
    transform: TransformHandle
    interpolation: InterpolationMode
    dimensionality: int


class RegistrationService(Protocol):
    def register(self, request: RegistrationRequest, context: RunContext) -> TransformHandle:
        """Run one stage and return the full moving->fixed chain so far."""


class ResamplingService(Protocol):
    def resample(self, request: ResampleRequest, context: RunContext) -> Path:
        """Write the resampled image and return its path."""
