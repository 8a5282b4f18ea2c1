"""Shared fixtures: tiny volumes on disk and deterministic fake services."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Optional

import numpy as np
import pytest
import SimpleITK as sitk

from intermodality_registration.metadata.config import build_pipeline_config
from intermodality_registration.registration.transforms import AffineStep, TransformHandle


def write_volume(path: Path, array: np.ndarray, *, vector: bool = False, spacing=None) -> Path:
    image = sitk.GetImageFromArray(array, isVector=vector)
    if spacing is not None:
        image.SetSpacing(spacing)
    sitk.WriteImage(image, str(path))
    return path


def rotation_matrix(dimensionality: int, degrees: float, scale: float = 1.0) -> np.ndarray:
    theta = math.radians(degrees)
    c, s = math.cos(theta), math.sin(theta)
    matrix = np.eye(dimensionality)
    matrix[0, 0], matrix[0, 1] = c, -s
    matrix[1, 0], matrix[1, 1] = s, c
    return matrix * scale


def stage_step(dimensionality: int, index: int) -> AffineStep:
    """Small, non-commuting affine produced by the fake for stage ``index``."""

    matrix = rotation_matrix(dimensionality, 4.0 * (index + 1), scale=1.0 + 0.02 * index)
    translation = np.linspace(0.5, -0.5, dimensionality) * (index + 1)
    return AffineStep(matrix, translation, name=f"stage{index}")


class FakeRegistrationService:
    """Returns the initial chain extended by one in-memory affine per stage."""

    def __init__(self, fail_at: Optional[int] = None, error: Optional[BaseException] = None):
        self.fail_at = fail_at
        self.error = error
        self.requests = []

    def register(self, request, context):
        self.requests.append(request)
        index = request.stage.index
        if self.fail_at == index:
            raise self.error or RuntimeError("optimizer did not converge")
        previous = request.initial_transform.steps if request.initial_transform else ()
        return TransformHandle(
            steps=previous + (stage_step(request.dimensionality, index),),
            source=request.stage.moving_role,
            target=request.stage.fixed_role,
            dimensionality=request.dimensionality,
        )


class RecordingResampler:
    """Writes a marker file per request; fails for roles listed in ``fail_for``."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.requests = []

    def resample(self, request, context):
        self.requests.append(request)
        Path(request.output).write_text("partial")
        if any(role in Path(request.output).name for role in self.fail_for):
            raise RuntimeError("resampler crashed")
        return Path(request.output)


@pytest.fixture
def fake_registration():
    return FakeRegistrationService()


@pytest.fixture
def volumes(tmp_path):
    """Subject, T1, mask, template labels and two auxiliary scalars (3D, 12^3)."""

    rng = np.random.default_rng(0)
    shape = (12, 12, 12)
    zz, yy, xx = np.mgrid[: shape[0], : shape[1], : shape[2]]
    blob = np.exp(-((xx - 6) ** 2 + (yy - 6) ** 2 + (zz - 6) ** 2) / 18.0).astype(np.float32)

    labels = np.zeros(shape, dtype=np.uint8)
    labels[2:6, 2:10, 2:10] = 1
    labels[6:10, 2:10, 2:10] = 4

    data = tmp_path / "data"
    data.mkdir()
    paths = {
        "subject": write_volume(data / "avgBold.nii.gz", blob + 0.01 * rng.random(shape, dtype=np.float32)),
        "t1": write_volume(data / "t1.nii.gz", blob),
        "mask": write_volume(data / "t1BrainProb.nii.gz", (blob > 0.2).astype(np.float32)),
        "labels": write_volume(data / "templateLabels.nii.gz", labels),
        "aux0": write_volume(data / "cbf.nii.gz", 2.0 * blob),
        "aux1": write_volume(data / "md.nii.gz", blob ** 2),
    }
    return paths


@pytest.fixture
def template_prefix(tmp_path):
    """ANTs-style T1->template prefix holding only ``0GenericAffine.mat``."""

    directory = tmp_path / "template"
    directory.mkdir()
    prefix = str(directory / "t1ToTemplate")
    affine = sitk.AffineTransform(3)
    affine.SetMatrix(rotation_matrix(3, -6.0).ravel().tolist())
    affine.SetTranslation((0.4, 0.2, -0.3))
    sitk.WriteTransform(affine, prefix + "0GenericAffine.mat")
    return prefix


@pytest.fixture
def make_config(tmp_path, volumes, template_prefix):
    """Factory for a 3D run writing under ``tmp_path/out/run_``."""

    def _make(**overrides):
        kwargs = dict(
            dimensionality=3,
            subject_image=volumes["subject"],
            t1_image=volumes["t1"],
            t1_mask=volumes["mask"],
            template_transform_prefix=template_prefix,
            output_prefix=str(tmp_path / "out" / "run_"),
            transform_class=3,
            label_image=volumes["labels"],
            auxiliary_images=[volumes["aux0"], volumes["aux1"]],
            resampler="simpleitk",
        )
        kwargs.update(overrides)
        return build_pipeline_config(**kwargs)

    return _make
