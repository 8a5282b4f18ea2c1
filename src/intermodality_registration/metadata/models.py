"""Domain models describing the volumes and transform classes of one run.

Models are immutable: a run is described once, validated, and then passed
explicitly to every component so that no stage can alter what another stage
sees.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .paths import normalise_pathlike


class ImageClass(str, Enum):
    """Semantic class of a volume; selects the interpolation used on it."""

    INTENSITY = "intensity"
    PROBABILITY = "probability"
    LABEL = "label"
    TENSOR = "tensor"


class TransformClass(IntEnum):
    """Requested subject->T1 transform class, numbered as on the command line."""

    RIGID = 0
    AFFINE = 1
    RIGID_PLUS_DEFORMABLE = 2
    AFFINE_PLUS_DEFORMABLE = 3

    @property
    def is_deformable(self) -> bool:
        return self in (TransformClass.RIGID_PLUS_DEFORMABLE, TransformClass.AFFINE_PLUS_DEFORMABLE)

    @property
    def linear_family(self) -> str:
        """ANTs name of the linear transform estimated first."""

        if self in (TransformClass.RIGID, TransformClass.RIGID_PLUS_DEFORMABLE):
            return "Rigid"
        return "Affine"

    @property
    def label(self) -> str:
        return {
            TransformClass.RIGID: "rigid",
            TransformClass.AFFINE: "affine",
            TransformClass.RIGID_PLUS_DEFORMABLE: "rigid+small_def",
            TransformClass.AFFINE_PLUS_DEFORMABLE: "affine+small_def",
        }[self]


class ImageRef(BaseModel):
    """A volume on disk together with its dimensionality and semantic class."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: Path = Field(..., description="Location of the volume.")
    dimensionality: int = Field(..., description="Spatial dimension (2 or 3).")
    image_class: ImageClass = Field(
        default=ImageClass.INTENSITY,
        description="Semantic class used to select interpolation.",
    )

    @field_validator("path", mode="before")
    @classmethod
    def _normalise_path(cls, value):
        return normalise_pathlike(value)

    @field_validator("dimensionality")
    @classmethod
    def _check_dimensionality(cls, value: int) -> int:
        if value not in (2, 3):
            raise ValueError(f"ImageDimension must be 2 or 3, got {value}")
        return value

    @property
    def name(self) -> str:
        return self.path.name
