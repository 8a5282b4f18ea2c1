"""Run configuration: one validated, immutable value passed to every component."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Literal, Mapping, Optional, Sequence

import SimpleITK as sitk
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ConfigurationError, MissingInputError
from ..registration.stages import RegistrationSettings, coerce_transform_class, plan_stages
from .models import ImageClass, ImageRef, TransformClass
from .paths import normalise_pathlike, normalise_prefix, prefix_directory

logger = logging.getLogger(__name__)

_LOGGING_CONFIGURED = False

DEFAULT_OUTPUT_SUFFIX = "nii.gz"

ResamplerName = Literal["ants", "simpleitk"]


def configure_logging(level: str | int = "INFO") -> None:
    """Install the root handler once per process."""

    global _LOGGING_CONFIGURED
    if isinstance(level, str):
        level_name = level.upper()
        resolved = getattr(logging, level_name, None)
        if not isinstance(resolved, int):
            try:
                resolved = int(level_name)
            except ValueError:
                resolved = logging.INFO
    else:
        resolved = int(level)

    if not _LOGGING_CONFIGURED:
        logging.basicConfig(
            level=resolved,
            format='%(asctime)s %(levelname)s %(name)s: %(message)s',
            force=True,
        )
        _LOGGING_CONFIGURED = True
    logging.getLogger().setLevel(resolved)


def load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping document."""

    from ruamel.yaml import YAML

    yaml = YAML(typ="safe")
    data = yaml.load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, Mapping):
        raise TypeError(f"Expected mapping at {path}, found {type(data).__name__}")
    return dict(data)


def _deep_update(base: Dict[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in updates.items():
        if (
            key in base
            and isinstance(base[key], Mapping)
            and isinstance(value, Mapping)
        ):
            base[key] = _deep_update(dict(base[key]), value)
        else:
            base[key] = value
    return base


def load_registration_settings(
    settings_file: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RegistrationSettings:
    """Build registration settings from defaults, a YAML file, then explicit overrides.

    The YAML document may either hold the settings at top level or under a
    ``registration:`` key.
    """

    merged: Dict[str, Any] = {}
    if settings_file is not None:
        path = normalise_pathlike(settings_file)
        try:
            document = load_yaml_mapping(path)
        except FileNotFoundError:
            raise MissingInputError([("settings file", path)]) from None
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc
        section = document.get("registration", document)
        if not isinstance(section, Mapping):
            raise ConfigurationError(f"'registration' in {path} must be a mapping")
        _deep_update(merged, section)
    if overrides:
        _deep_update(merged, overrides)
    return RegistrationSettings.with_overrides(merged)


class PipelineConfig(BaseModel):
    """Everything one run needs, validated once and then treated as read-only."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    dimensionality: int = Field(..., description="Spatial dimension of every volume (2 or 3).")
    subject_image: ImageRef = Field(..., description="Subject scalar image (moving).")
    t1_image: ImageRef = Field(..., description="Subject T1 image (fixed).")
    t1_mask: ImageRef = Field(..., description="T1 brain-probability mask used as fixed mask.")
    template_transform_prefix: str = Field(
        ...,
        description="Prefix of the pre-existing T1->template transform files.",
    )
    transform_class: TransformClass = Field(
        default=TransformClass.AFFINE,
        description="Requested subject->T1 transform class.",
    )
    output_prefix: str = Field(..., description="Prefix for every file written by the run.")
    label_image: Optional[ImageRef] = Field(
        default=None,
        description="Template-space label volume mapped into subject space.",
    )
    auxiliary_images: tuple[ImageRef, ...] = Field(
        default=(),
        description="Subject-space scalar volumes mapped into template space.",
    )
    tensor_image: Optional[ImageRef] = Field(
        default=None,
        description="Subject-space diffusion tensor volume mapped into template space.",
    )
    template_image: Optional[ImageRef] = Field(
        default=None,
        description="Template image defining the grid of template-space outputs.",
    )
    output_suffix: str = Field(
        default=DEFAULT_OUTPUT_SUFFIX,
        description="File extension (without dot) of resampled outputs.",
    )
    keep_intermediates: bool = Field(
        default=False,
        description="Keep the run's temporary working directory.",
    )
    max_workers: int = Field(default=1, ge=1, description="Auxiliary resampling workers.")
    time_budget: Optional[float] = Field(
        default=None,
        gt=0,
        description="Overall wall-clock budget in seconds.",
    )
    threads: Optional[int] = Field(
        default=None,
        ge=1,
        description="ITK thread count handed to external tools.",
    )
    resampler: ResamplerName = Field(default="ants", description="Resampling backend.")
    write_qc: bool = Field(default=False, description="Write a registration QC figure.")
    registration: RegistrationSettings = Field(
        default_factory=RegistrationSettings,
        description="Stage parameters and shared antsRegistration options.",
    )

    @field_validator("dimensionality")
    @classmethod
    def _check_dimensionality(cls, value: int) -> int:
        if value not in (2, 3):
            raise ValueError(f"ImageDimension must be 2 or 3, got {value}")
        return value

    @field_validator("template_transform_prefix", "output_prefix", mode="before")
    @classmethod
    def _normalise_prefix(cls, value):
        return normalise_prefix(value)

    @field_validator("output_suffix", mode="before")
    @classmethod
    def _strip_suffix_dot(cls, value):
        return str(value).lstrip(".")

    @property
    def output_directory(self) -> Path:
        return prefix_directory(self.output_prefix)

    def output_path(self, role: str) -> Path:
        return Path(f"{self.output_prefix}{role}.{self.output_suffix}")

    def stages(self):
        return plan_stages(self.transform_class, self.dimensionality, self.registration)

    def parameter_block(self) -> list[tuple[str, str]]:
        """Run parameters in the order they are echoed at start-up."""

        rows = [
            ("Dimensionality", str(self.dimensionality)),
            ("Subject image", str(self.subject_image.path)),
            ("T1 image", str(self.t1_image.path)),
            ("T1 brain probability mask", str(self.t1_mask.path)),
            ("T1->template transform prefix", self.template_transform_prefix),
            ("Transform type", f"{int(self.transform_class)} ({self.transform_class.label})"),
            ("Output prefix", self.output_prefix),
            ("Output suffix", self.output_suffix),
            ("Template labels", str(self.label_image.path) if self.label_image else "none"),
        ]
        for index, aux in enumerate(self.auxiliary_images):
            rows.append((f"Auxiliary image {index}", str(aux.path)))
        rows.append(("Tensor image", str(self.tensor_image.path) if self.tensor_image else "none"))
        rows.append(("Resampler", self.resampler))
        rows.append(("Keep intermediates", str(int(self.keep_intermediates))))
        return rows


def probe_dimensionality(path: Path) -> int:
    """Spatial dimension from the image header; raises ``RuntimeError`` if unreadable."""

    reader = sitk.ImageFileReader()
    reader.SetFileName(str(path))
    reader.ReadImageInformation()
    return int(reader.GetDimension())


def _collect_required(
    entries: Sequence[tuple[str, Optional[Path]]],
    dimensionality: int,
) -> tuple[list[tuple[str, Path]], list[tuple[str, Path]]]:
    """Missing or unreadable inputs, and readable inputs of the wrong dimension."""

    problems: list[tuple[str, Path]] = []
    mismatched: list[tuple[str, Path]] = []
    for label, path in entries:
        if path is None or str(path) == "":
            problems.append((label, Path("<not given>")))
            continue
        if not path.is_file():
            problems.append((label, path))
            continue
        try:
            found = probe_dimensionality(path)
        except RuntimeError:
            problems.append((f"{label} (unreadable)", path))
            continue
        if found != dimensionality:
            mismatched.append((f"{label} (is {found}D, expected {dimensionality}D)", path))
    return problems, mismatched


def build_pipeline_config(
    *,
    dimensionality: int | str,
    subject_image: str | Path,
    t1_image: str | Path,
    t1_mask: str | Path,
    template_transform_prefix: str | Path,
    output_prefix: str | Path,
    transform_class: TransformClass | int | str = TransformClass.AFFINE,
    label_image: str | Path | None = None,
    auxiliary_images: Iterable[str | Path] = (),
    tensor_image: str | Path | None = None,
    template_image: str | Path | None = None,
    settings_file: str | Path | None = None,
    registration_overrides: Optional[Mapping[str, Any]] = None,
    create_output_directory: bool = True,
    **options: Any,
) -> PipelineConfig:
    """Validate raw inputs and return the immutable run configuration.

    Checks run in the order a user can act on them: dimensionality and
    transform class first (:class:`ConfigurationError`), then every required
    input file at once (:class:`MissingInputError`). Auxiliary, label and
    tensor volumes are only normalised here; they are checked per image when
    applied so one bad volume cannot block the others.
    """

    try:
        dim = int(dimensionality)
    except (TypeError, ValueError):
        raise ConfigurationError(f"ImageDimension must be 2 or 3, got {dimensionality!r}") from None
    if dim not in (2, 3):
        raise ConfigurationError(f"ImageDimension must be 2 or 3, got {dim}")
    tclass = coerce_transform_class(transform_class)

    settings = load_registration_settings(
        normalise_pathlike(settings_file) if settings_file is not None else None,
        registration_overrides,
    )
    # Re-checks per-stage level lengths after overrides.
    plan_stages(tclass, dim, settings)

    subject = normalise_pathlike(subject_image)
    t1 = normalise_pathlike(t1_image)
    mask = normalise_pathlike(t1_mask)
    template = normalise_pathlike(template_image) if template_image else None

    required = [("subject image (-i)", subject), ("T1 image (-r)", t1), ("T1 mask (-x)", mask)]
    if template is not None:
        required.append(("template image (-T)", template))
    problems, mismatched = _collect_required(required, dim)
    if problems:
        raise MissingInputError(problems + mismatched)
    if mismatched:
        raise ConfigurationError("; ".join(f"{label}: {path}" for label, path in mismatched))

    try:
        config = PipelineConfig(
            dimensionality=dim,
            subject_image=ImageRef(path=subject, dimensionality=dim),
            t1_image=ImageRef(path=t1, dimensionality=dim),
            t1_mask=ImageRef(path=mask, dimensionality=dim, image_class=ImageClass.PROBABILITY),
            template_transform_prefix=template_transform_prefix,
            transform_class=tclass,
            output_prefix=output_prefix,
            label_image=(
                ImageRef(path=label_image, dimensionality=dim, image_class=ImageClass.LABEL)
                if label_image
                else None
            ),
            auxiliary_images=tuple(
                ImageRef(path=aux, dimensionality=dim) for aux in auxiliary_images
            ),
            tensor_image=(
                ImageRef(path=tensor_image, dimensionality=dim, image_class=ImageClass.TENSOR)
                if tensor_image
                else None
            ),
            template_image=ImageRef(path=template, dimensionality=dim) if template else None,
            registration=settings,
            **options,
        )
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

    if create_output_directory:
        out_dir = config.output_directory
        if not out_dir.exists():
            logger.info("Creating output directory %s", out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
    return config
