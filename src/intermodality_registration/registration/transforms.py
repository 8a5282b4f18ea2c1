"""Transform chains and their composition.

A :class:`TransformHandle` is an ordered sequence of opaque steps mapping
points from a source space to a target space. Every step offers the same
small capability set:

``apply(point)``
    map a point from the step's source space to its target space;
``inverse()``
    the step going the other way;
``pullback()``
    a SimpleITK transform mapping *target* points back to *source* points,
    which is what a resampler needs to fill a target-space grid;
``ants_argument(workdir)``
    the ``-t`` argument understood by ``antsApplyTransforms``.

Composition only concatenates steps; nothing is re-estimated or resampled, so
``A.then(B)`` keeps references to the very same step objects as ``A`` and
``B``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Sequence, runtime_checkable

import numpy as np
import SimpleITK as sitk

from ..errors import CompositionFailure, MissingTemplateTransform

logger = logging.getLogger(__name__)

SUBJECT_SPACE = "subject"
T1_SPACE = "t1"
TEMPLATE_SPACE = "template"

AFFINE_SUFFIX = "0GenericAffine.mat"
WARP_SUFFIX = "1Warp.nii.gz"
INVERSE_WARP_SUFFIX = "1InverseWarp.nii.gz"
COMPOSITE_SUFFIX = "Composite.h5"
INVERSE_COMPOSITE_SUFFIX = "InverseComposite.h5"

_FIELD_SUFFIXES = (".nii", ".nii.gz", ".nrrd", ".nhdr", ".mha", ".mhd")

Point = tuple[float, ...]


@runtime_checkable
class TransformStep(Protocol):
    dimensionality: int

    def apply(self, point: Sequence[float]) -> Point: ...

    def inverse(self) -> "TransformStep": ...

    def pullback(self) -> sitk.Transform: ...

    def ants_argument(self, workdir: Path) -> str: ...

    def release(self) -> None: ...


def _as_point(point: Sequence[float], dimensionality: int) -> Point:
    values = tuple(float(v) for v in point)
    if len(values) != dimensionality:
        raise ValueError(f"expected a {dimensionality}D point, got {len(values)} coordinates")
    return values


def _is_field_file(path: Path) -> bool:
    name = path.name.lower()
    return any(name.endswith(suffix) for suffix in _FIELD_SUFFIXES)


def _load_transform(path: Path) -> sitk.Transform:
    if _is_field_file(path):
        field_image = sitk.ReadImage(str(path), sitk.sitkVectorFloat64)
        return sitk.DisplacementFieldTransform(field_image)
    return sitk.ReadTransform(str(path))


@dataclass(eq=False)
class AffineStep:
    """In-memory affine map ``p -> matrix @ p + translation``."""

    matrix: np.ndarray
    translation: np.ndarray
    name: str = "affine"

    def __post_init__(self) -> None:
        self.matrix = np.asarray(self.matrix, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64)
        dim = self.matrix.shape[0]
        if self.matrix.shape != (dim, dim) or self.translation.shape != (dim,):
            raise ValueError("matrix must be DxD and translation length D")

    @classmethod
    def identity(cls, dimensionality: int) -> "AffineStep":
        return cls(np.eye(dimensionality), np.zeros(dimensionality), name="identity")

    @property
    def dimensionality(self) -> int:
        return int(self.matrix.shape[0])

    @property
    def is_identity(self) -> bool:
        return bool(
            np.allclose(self.matrix, np.eye(self.dimensionality))
            and np.allclose(self.translation, 0.0)
        )

    def apply(self, point: Sequence[float]) -> Point:
        p = np.asarray(_as_point(point, self.dimensionality))
        return tuple(float(v) for v in self.matrix @ p + self.translation)

    def inverse(self) -> "AffineStep":
        inv = np.linalg.inv(self.matrix)
        return AffineStep(inv, -inv @ self.translation, name=f"{self.name}_inverse")

    def pullback(self) -> sitk.Transform:
        inv = self.inverse()
        tx = sitk.AffineTransform(self.dimensionality)
        tx.SetMatrix(inv.matrix.ravel().tolist())
        tx.SetTranslation(inv.translation.tolist())
        return tx

    def ants_argument(self, workdir: Path) -> str:
        if self.is_identity:
            return "identity"
        path = Path(workdir) / f"{self.name}_{uuid.uuid4().hex[:8]}.mat"
        sitk.WriteTransform(self.pullback(), str(path))
        return str(path)

    def release(self) -> None:
        return None


@dataclass(eq=False)
class LinearTransformFile:
    """ITK linear transform file as written by ``antsRegistration``.

    The file stores the pull-back map (fixed -> moving); the step maps
    moving -> fixed unless ``inverted``.
    """

    path: Path
    dimensionality: int
    inverted: bool = False
    _cache: Optional[sitk.Transform] = field(default=None, init=False, repr=False)
    _cache_inverse: Optional[sitk.Transform] = field(default=None, init=False, repr=False)

    def _stored(self) -> sitk.Transform:
        if self._cache is None:
            self._cache = sitk.ReadTransform(str(self.path))
        return self._cache

    def _stored_inverse(self) -> sitk.Transform:
        if self._cache_inverse is None:
            self._cache_inverse = self._stored().GetInverse()
        return self._cache_inverse

    def apply(self, point: Sequence[float]) -> Point:
        p = _as_point(point, self.dimensionality)
        tx = self._stored() if self.inverted else self._stored_inverse()
        return tuple(tx.TransformPoint(p))

    def inverse(self) -> "LinearTransformFile":
        return LinearTransformFile(Path(self.path), self.dimensionality, not self.inverted)

    def pullback(self) -> sitk.Transform:
        return self._stored_inverse() if self.inverted else self._stored()

    def ants_argument(self, workdir: Path) -> str:
        return f"[{self.path},1]" if self.inverted else str(self.path)

    def release(self) -> None:
        self._cache = None
        self._cache_inverse = None


@dataclass(eq=False)
class PairedTransformFiles:
    """A non-invertible-in-closed-form transform stored as two files.

    ``pull_path`` resamples source images into the target grid (``1Warp`` or
    ``Composite.h5``); ``push_path`` is its stored inverse (``1InverseWarp``
    or ``InverseComposite.h5``) and is what maps source points forward.
    """

    pull_path: Path
    push_path: Path
    dimensionality: int
    _pull: Optional[sitk.Transform] = field(default=None, init=False, repr=False)
    _push: Optional[sitk.Transform] = field(default=None, init=False, repr=False)

    def apply(self, point: Sequence[float]) -> Point:
        p = _as_point(point, self.dimensionality)
        if self._push is None:
            self._push = _load_transform(Path(self.push_path))
        return tuple(self._push.TransformPoint(p))

    def inverse(self) -> "PairedTransformFiles":
        return PairedTransformFiles(Path(self.push_path), Path(self.pull_path), self.dimensionality)

    def pullback(self) -> sitk.Transform:
        if self._pull is None:
            self._pull = _load_transform(Path(self.pull_path))
        return self._pull

    def ants_argument(self, workdir: Path) -> str:
        return str(self.pull_path)

    def release(self) -> None:
        self._pull = None
        self._push = None


@dataclass(frozen=True)
class TransformHandle:
    """Ordered chain of steps from ``source`` space to ``target`` space."""

    steps: tuple[TransformStep, ...]
    source: str
    target: str
    dimensionality: int

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError("a transform handle needs at least one step")
        for step in self.steps:
            if step.dimensionality != self.dimensionality:
                raise CompositionFailure(
                    f"{step!r} is {step.dimensionality}D inside a {self.dimensionality}D chain"
                )

    def apply_point(self, point: Sequence[float]) -> Point:
        current = _as_point(point, self.dimensionality)
        for step in self.steps:
            current = step.apply(current)
        return current

    def inverse(self) -> "TransformHandle":
        return TransformHandle(
            steps=tuple(step.inverse() for step in reversed(self.steps)),
            source=self.target,
            target=self.source,
            dimensionality=self.dimensionality,
        )

    def then(self, other: "TransformHandle") -> "TransformHandle":
        """Chain ``self`` (applied first) with ``other`` (applied second)."""

        if other.dimensionality != self.dimensionality:
            raise CompositionFailure(
                f"cannot chain a {self.dimensionality}D transform with a "
                f"{other.dimensionality}D transform"
            )
        if other.source != self.target:
            raise CompositionFailure(
                f"cannot chain {self.source}->{self.target} with {other.source}->{other.target}"
            )
        return TransformHandle(
            steps=self.steps + other.steps,
            source=self.source,
            target=other.target,
            dimensionality=self.dimensionality,
        )

    def pullback(self) -> sitk.CompositeTransform:
        # The most recently added transform is applied first, so adding in
        # chain order pulls a target point back through the last step first.
        composite = sitk.CompositeTransform(self.dimensionality)
        for step in self.steps:
            composite.AddTransform(step.pullback())
        return composite

    def ants_transform_list(self, workdir: Path) -> list[str]:
        """``-t`` arguments for ``antsApplyTransforms`` (first listed is applied first)."""

        return [step.ants_argument(workdir) for step in reversed(self.steps)]

    def release(self) -> None:
        for step in self.steps:
            step.release()

    def describe(self) -> str:
        return f"{self.source}->{self.target} ({len(self.steps)} step(s))"


def identity_transform(dimensionality: int, source: str, target: str) -> TransformHandle:
    return TransformHandle(
        steps=(AffineStep.identity(dimensionality),),
        source=source,
        target=target,
        dimensionality=dimensionality,
    )


@dataclass(frozen=True)
class ComposedTransform:
    """Subject->template mapping built from the two constituent chains."""

    subject_to_t1: TransformHandle
    t1_to_template: TransformHandle
    forward: TransformHandle
    inverse: TransformHandle

    def release(self) -> None:
        self.forward.release()
        self.inverse.release()


def compose(subject_to_t1: TransformHandle, t1_to_template: TransformHandle) -> ComposedTransform:
    """Chain subject->T1 with T1->template; subject points see subject->T1 first."""

    forward = subject_to_t1.then(t1_to_template)
    logger.info(
        "Composed %s with %s into %s",
        subject_to_t1.describe(),
        t1_to_template.describe(),
        forward.describe(),
    )
    return ComposedTransform(
        subject_to_t1=subject_to_t1,
        t1_to_template=t1_to_template,
        forward=forward,
        inverse=forward.inverse(),
    )


def _check_nonempty(path: Path) -> None:
    if not path.is_file():
        raise FileNotFoundError(f"{path} not found")
    if path.stat().st_size == 0:
        raise ValueError(f"{path} is empty")


def _check_field(path: Path, dimensionality: int) -> None:
    _check_nonempty(path)
    reader = sitk.ImageFileReader()
    reader.SetFileName(str(path))
    reader.ReadImageInformation()
    if reader.GetNumberOfComponents() != dimensionality:
        raise ValueError(
            f"{path} has {reader.GetNumberOfComponents()} components, expected {dimensionality}"
        )


def _check_transform_file(path: Path) -> None:
    _check_nonempty(path)
    try:
        sitk.ReadTransform(str(path))
    except RuntimeError as exc:
        raise ValueError(f"{path} is not a readable transform: {exc}") from exc


def collect_prefix_steps(
    prefix: str, dimensionality: int, deformable: Optional[bool] = None
) -> tuple[TransformStep, ...]:
    """Collect the ANTs transform files written under ``prefix``.

    Recognised layouts are a ``Composite.h5``/``InverseComposite.h5`` pair, or
    ``0GenericAffine.mat`` followed by an optional ``1Warp``/``1InverseWarp``
    pair. Steps are returned in chain order (moving -> fixed).

    ``deformable`` pins the expected layout for freshly written registration
    outputs: ``False`` collects the affine file alone, ``True`` requires the
    warp pair. ``None`` accepts whatever layout is on disk.
    """

    if deformable is None:
        composite = Path(prefix + COMPOSITE_SUFFIX)
        inverse_composite = Path(prefix + INVERSE_COMPOSITE_SUFFIX)
        if composite.exists() or inverse_composite.exists():
            _check_transform_file(composite)
            _check_transform_file(inverse_composite)
            return (PairedTransformFiles(composite, inverse_composite, dimensionality),)

    affine = Path(prefix + AFFINE_SUFFIX)
    _check_transform_file(affine)
    steps: list[TransformStep] = [LinearTransformFile(affine, dimensionality)]
    if deformable is False:
        return tuple(steps)

    warp = Path(prefix + WARP_SUFFIX)
    inverse_warp = Path(prefix + INVERSE_WARP_SUFFIX)
    if deformable or warp.exists() or inverse_warp.exists():
        try:
            _check_field(warp, dimensionality)
            _check_field(inverse_warp, dimensionality)
        except RuntimeError as exc:
            raise ValueError(f"unreadable displacement field: {exc}") from exc
        steps.append(PairedTransformFiles(warp, inverse_warp, dimensionality))
    return tuple(steps)


def locate_template_transform(prefix: str, dimensionality: int) -> TransformHandle:
    """Resolve the pre-existing T1->template transform from its prefix."""

    try:
        steps = collect_prefix_steps(prefix, dimensionality)
    except (FileNotFoundError, ValueError) as exc:
        raise MissingTemplateTransform(prefix, str(exc)) from exc
    handle = TransformHandle(
        steps=steps,
        source=T1_SPACE,
        target=TEMPLATE_SPACE,
        dimensionality=dimensionality,
    )
    logger.info("Located T1->template transform %s: %s", prefix, handle.describe())
    return handle


def template_warp_grid(prefix: str) -> Optional[Path]:
    """Deformation field whose grid is the template grid, if the prefix has one."""

    warp = Path(prefix + WARP_SUFFIX)
    return warp if warp.is_file() else None
