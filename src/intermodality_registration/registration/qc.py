"""Quick-look figure of the subject->T1 alignment."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import SimpleITK as sitk

from .transforms import TransformHandle

logger = logging.getLogger(__name__)


def _middle_slice(image: sitk.Image, plane: Optional[int]) -> np.ndarray:
    array = sitk.GetArrayFromImage(image).astype(np.float32)
    if array.ndim == 2:
        return array
    index = plane if plane is not None else array.shape[0] // 2
    index = int(np.clip(index, 0, array.shape[0] - 1))
    return array[index]


def _norm(slice_2d: np.ndarray, percentiles: tuple[float, float]) -> np.ndarray:
    lo, hi = np.percentile(slice_2d, percentiles)
    if hi <= lo:
        hi = lo + 1.0
    return np.clip((slice_2d - lo) / (hi - lo), 0.0, 1.0)


def write_registration_qc(
    *,
    fixed: Path,
    moving: Path,
    subject_to_t1: TransformHandle,
    output_path: Path,
    percentiles: tuple[float, float] = (1.0, 99.0),
    middle_plane: Optional[int] = None,
    figsize: tuple[int, int] = (12, 4),
) -> Path:
    """Show the T1, the subject image and the subject image resampled onto the T1."""

    reference = sitk.ReadImage(str(fixed), sitk.sitkFloat32)
    moving_image = sitk.ReadImage(str(moving), sitk.sitkFloat32)
    warped = sitk.Resample(
        moving_image,
        reference,
        subject_to_t1.pullback(),
        sitk.sitkLinear,
        0.0,
        sitk.sitkFloat32,
    )

    panels = (
        ("T1 (fixed)", _middle_slice(reference, middle_plane)),
        ("Subject (pre)", _middle_slice(moving_image, None)),
        ("Subject in T1 (post)", _middle_slice(warped, middle_plane)),
    )
    fig, axes = plt.subplots(1, 3, figsize=figsize)
    for ax, (title, panel) in zip(axes, panels):
        ax.imshow(_norm(panel, percentiles), cmap="gray")
        ax.set_title(title)
        ax.axis("off")
    fig.tight_layout()
    fig.savefig(output_path, dpi=150)
    plt.close(fig)
    logger.info("Wrote registration QC figure %s", output_path)
    return Path(output_path)
