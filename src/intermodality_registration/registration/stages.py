"""Registration stage planning.

A requested :class:`~intermodality_registration.metadata.models.TransformClass`
maps to a short, ordered list of stage descriptors. The defaults below are the
ANTs parameters of the intermodality intrasubject recipe: a mutual-information
linear stage on an ``8x4x2x1`` pyramid, optionally followed by a
cross-correlation SyN stage on ``6x4x2x1`` seeded with the linear result.
Deformable stages are never planned without a preceding linear stage because
SyN started from an unaligned pair is unstable.
"""

from __future__ import annotations

from dataclasses import dataclass, field, is_dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence

from ..errors import ConfigurationError
from ..metadata.models import TransformClass


class TransformFamily(str, Enum):
    RIGID = "Rigid"
    AFFINE = "Affine"
    SYN = "SyN"

    @property
    def is_deformable(self) -> bool:
        return self is TransformFamily.SYN


def _fmt(value: float | int | str) -> str:
    if isinstance(value, str):
        return value
    return f"{value:g}"


@dataclass
class LinearStageSettings:
    """Parameters of the rigid/affine stage.

    Mutual information (32 bins, regular sampling of 25% of the voxels) is
    used because the subject image and the T1 differ in contrast. The
    convergence schedule ``[1000x500x250x100,1e-8,10]`` runs one level per
    shrink factor; smoothing sigmas are given in voxels.
    """

    metric: str = "MI"
    metric_weight: float = 1.0
    metric_bins: int = 32
    sampling_strategy: str = "Regular"
    sampling_percentage: float = 0.25
    iterations: tuple[int, ...] = (1000, 500, 250, 100)
    convergence_threshold: float = 1e-8
    convergence_window: int = 10
    shrink_factors: tuple[int, ...] = (8, 4, 2, 1)
    smoothing_sigmas: tuple[float, ...] = (4.0, 2.0, 1.0, 0.0)
    smoothing_units: str = "vox"
    gradient_step: float = 0.1


@dataclass
class DeformableStageSettings:
    """Parameters of the symmetric diffeomorphic (SyN) stage.

    Neighbourhood cross-correlation with radius 4 drives ``SyN[0.1,3,0]``:
    gradient step 0.1, update-field variance 3 and no total-field smoothing.
    The schedule is shorter per level but finishes at full resolution.
    """

    metric: str = "CC"
    metric_weight: float = 1.0
    metric_radius: int = 4
    iterations: tuple[int, ...] = (100, 100, 70, 20)
    convergence_threshold: float = 1e-9
    convergence_window: int = 15
    shrink_factors: tuple[int, ...] = (6, 4, 2, 1)
    smoothing_sigmas: tuple[float, ...] = (3.0, 2.0, 1.0, 0.0)
    smoothing_units: str = "vox"
    gradient_step: float = 0.1
    update_field_variance: float = 3.0
    total_field_variance: float = 0.0


@dataclass
class RegistrationSettings:
    """Top-level registration configuration with embedded defaults."""

    linear: LinearStageSettings = field(default_factory=LinearStageSettings)
    deformable: DeformableStageSettings = field(default_factory=DeformableStageSettings)
    winsorize_lower_quantile: float = 0.005
    winsorize_upper_quantile: float = 0.995
    use_histogram_matching: bool = False
    interpolation: str = "Linear"
    use_float: bool = True
    collapse_output_transforms: bool = True

    @classmethod
    def with_overrides(
        cls, overrides: Optional[Mapping[str, Any]] = None
    ) -> "RegistrationSettings":
        cfg = cls()
        if overrides:
            _apply_overrides(cfg, overrides)
        return cfg


def _apply_overrides(target: Any, overrides: Mapping[str, Any]) -> None:
    """Recursively apply dictionary overrides to (nested) dataclasses."""

    for key, value in overrides.items():
        if not hasattr(target, key):
            raise ConfigurationError(f"Unknown registration setting '{key}'")
        current = getattr(target, key)
        if is_dataclass(current) and isinstance(value, Mapping):
            _apply_overrides(current, value)
        elif isinstance(current, tuple) and isinstance(value, (list, tuple)):
            setattr(target, key, tuple(value))
        else:
            setattr(target, key, value)


@dataclass(frozen=True)
class MetricSpec:
    name: str
    weight: float = 1.0
    parameters: tuple[float | int | str, ...] = ()

    def render(self, fixed: str, moving: str) -> str:
        args = [fixed, moving, _fmt(self.weight), *(_fmt(p) for p in self.parameters)]
        return f"{self.name}[{','.join(args)}]"


@dataclass(frozen=True)
class ConvergenceSpec:
    iterations: tuple[int, ...]
    threshold: float
    window: int

    def render(self) -> str:
        schedule = "x".join(str(int(i)) for i in self.iterations)
        return f"[{schedule},{_fmt(self.threshold)},{int(self.window)}]"


@dataclass(frozen=True)
class TransformSpec:
    family: TransformFamily
    parameters: tuple[float, ...]

    def render(self) -> str:
        return f"{self.family.value}[{','.join(_fmt(p) for p in self.parameters)}]"


@dataclass(frozen=True)
class StageDescriptor:
    """One registration stage: metric, schedule, pyramid, and transform family.

    The fixed image is always the T1 (reference space) and the moving image
    the subject scalar image; the roles are carried for logging and so that a
    service never has to guess which input is which.
    """

    index: int
    metric: MetricSpec
    convergence: ConvergenceSpec
    shrink_factors: tuple[int, ...]
    smoothing_sigmas: tuple[float, ...]
    transform: TransformSpec
    smoothing_units: str = "vox"
    fixed_role: str = "t1"
    moving_role: str = "subject"

    def __post_init__(self) -> None:
        levels = {
            "shrink factors": len(self.shrink_factors),
            "smoothing sigmas": len(self.smoothing_sigmas),
            "iterations": len(self.convergence.iterations),
        }
        if len(set(levels.values())) != 1:
            raise ConfigurationError(
                f"stage {self.index}: resolution levels disagree ({levels})"
            )
        if not self.shrink_factors:
            raise ConfigurationError(f"stage {self.index}: empty multi-resolution schedule")

    @property
    def levels(self) -> int:
        return len(self.shrink_factors)

    @property
    def family(self) -> TransformFamily:
        return self.transform.family

    def render_shrink_factors(self) -> str:
        return "x".join(str(int(f)) for f in self.shrink_factors)

    def render_smoothing_sigmas(self) -> str:
        sigmas = "x".join(_fmt(s) for s in self.smoothing_sigmas)
        return f"{sigmas}{self.smoothing_units}" if self.smoothing_units != "vox" else sigmas

    def summary(self) -> str:
        return (
            f"stage {self.index}: {self.transform.render()} "
            f"{self.metric.render(self.fixed_role, self.moving_role)} "
            f"-c {self.convergence.render()} -f {self.render_shrink_factors()} "
            f"-s {self.render_smoothing_sigmas()}"
        )


_STAGE_FAMILIES: Dict[TransformClass, tuple[TransformFamily, ...]] = {
    TransformClass.RIGID: (TransformFamily.RIGID,),
    TransformClass.AFFINE: (TransformFamily.AFFINE,),
    TransformClass.RIGID_PLUS_DEFORMABLE: (TransformFamily.RIGID, TransformFamily.SYN),
    TransformClass.AFFINE_PLUS_DEFORMABLE: (TransformFamily.AFFINE, TransformFamily.SYN),
}


def coerce_transform_class(value: TransformClass | int | str) -> TransformClass:
    """Return a :class:`TransformClass` or raise :class:`ConfigurationError`."""

    if isinstance(value, TransformClass):
        return value
    try:
        return TransformClass(int(value))
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"unknown transform type {value!r}; expected 0=rigid, 1=affine, "
            "2=rigid+small_def, 3=affine+small_def"
        ) from None


def _linear_stage(index: int, family: TransformFamily, cfg: LinearStageSettings) -> StageDescriptor:
    return StageDescriptor(
        index=index,
        metric=MetricSpec(
            cfg.metric,
            cfg.metric_weight,
            (cfg.metric_bins, cfg.sampling_strategy, cfg.sampling_percentage),
        ),
        convergence=ConvergenceSpec(
            tuple(cfg.iterations), cfg.convergence_threshold, cfg.convergence_window
        ),
        shrink_factors=tuple(cfg.shrink_factors),
        smoothing_sigmas=tuple(float(s) for s in cfg.smoothing_sigmas),
        smoothing_units=cfg.smoothing_units,
        transform=TransformSpec(family, (cfg.gradient_step,)),
    )


def _deformable_stage(index: int, cfg: DeformableStageSettings) -> StageDescriptor:
    return StageDescriptor(
        index=index,
        metric=MetricSpec(cfg.metric, cfg.metric_weight, (cfg.metric_radius,)),
        convergence=ConvergenceSpec(
            tuple(cfg.iterations), cfg.convergence_threshold, cfg.convergence_window
        ),
        shrink_factors=tuple(cfg.shrink_factors),
        smoothing_sigmas=tuple(float(s) for s in cfg.smoothing_sigmas),
        smoothing_units=cfg.smoothing_units,
        transform=TransformSpec(
            TransformFamily.SYN,
            (cfg.gradient_step, cfg.update_field_variance, cfg.total_field_variance),
        ),
    )


def plan_stages(
    transform_class: TransformClass | int | str,
    dimensionality: int,
    settings: Optional[RegistrationSettings] = None,
) -> tuple[StageDescriptor, ...]:
    """Return the ordered stages needed for ``transform_class``.

    Raises :class:`ConfigurationError` for an unknown class or dimensionality
    before anything is executed.
    """

    tclass = coerce_transform_class(transform_class)
    if dimensionality not in (2, 3):
        raise ConfigurationError(f"ImageDimension must be 2 or 3, got {dimensionality}")
    cfg = settings or RegistrationSettings()

    stages: list[StageDescriptor] = []
    for index, family in enumerate(_STAGE_FAMILIES[tclass]):
        if family.is_deformable:
            stages.append(_deformable_stage(index, cfg.deformable))
        else:
            stages.append(_linear_stage(index, family, cfg.linear))
    return tuple(stages)


def stage_families(stages: Sequence[StageDescriptor]) -> list[TransformFamily]:
    return [stage.family for stage in stages]
