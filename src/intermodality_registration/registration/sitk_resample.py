"""In-process resampling with SimpleITK.

Scalar and label volumes are resampled through the composite pull-back
transform of a chain. Tensor volumes are resampled component-wise and then
reoriented with the finite-strain rotation of the local Jacobian, which is
what ``ReorientTensorImage`` does for the ANTs backend.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import numpy as np
import SimpleITK as sitk

from .services import InterpolationMode, ResampleRequest, RunContext

logger = logging.getLogger(__name__)

_INTERPOLATORS = {
    InterpolationMode.LINEAR: sitk.sitkLinear,
    InterpolationMode.NEAREST_NEIGHBOR: sitk.sitkNearestNeighbor,
    InterpolationMode.TENSOR: sitk.sitkLinear,
}

# Upper-triangular component order of ITK symmetric tensors.
_TENSOR_INDICES = {
    2: ((0, 0), (0, 1), (1, 1)),
    3: ((0, 0), (0, 1), (0, 2), (1, 1), (1, 2), (2, 2)),
}


def _read_reference(path: Path) -> sitk.Image:
    return sitk.ReadImage(str(path))


def tensor_components_to_matrices(components: np.ndarray, dimensionality: int) -> np.ndarray:
    """``(..., n)`` upper-triangular components to ``(..., D, D)`` symmetric matrices."""

    indices = _TENSOR_INDICES[dimensionality]
    matrices = np.zeros(components.shape[:-1] + (dimensionality, dimensionality))
    for channel, (row, col) in enumerate(indices):
        matrices[..., row, col] = components[..., channel]
        matrices[..., col, row] = components[..., channel]
    return matrices


def tensor_matrices_to_components(matrices: np.ndarray, dimensionality: int) -> np.ndarray:
    indices = _TENSOR_INDICES[dimensionality]
    return np.stack([matrices[..., row, col] for row, col in indices], axis=-1)


def pullback_jacobian(transform: sitk.Transform, reference: sitk.Image) -> np.ndarray:
    """Jacobian of the pull-back map at every reference voxel, shape ``(..., D, D)``.

    The displacement field of the transform is sampled on the reference grid
    and differentiated numerically along each image axis; the result is
    rotated into physical coordinates with the grid direction.
    """

    dim = reference.GetDimension()
    displacement = sitk.TransformToDisplacementField(
        transform,
        sitk.sitkVectorFloat64,
        reference.GetSize(),
        reference.GetOrigin(),
        reference.GetSpacing(),
        reference.GetDirection(),
    )
    field = sitk.GetArrayFromImage(displacement)
    spacing = reference.GetSpacing()

    # numpy axis n is image axis dim - 1 - n
    per_axis = []
    for axis in range(dim):
        np_axis = dim - 1 - axis
        if field.shape[np_axis] < 2:
            per_axis.append(np.zeros_like(field))
        else:
            per_axis.append(np.gradient(field, spacing[axis], axis=np_axis))
    gradient = np.stack(per_axis, axis=-1)

    direction = np.asarray(reference.GetDirection(), dtype=np.float64).reshape(dim, dim)
    return np.eye(dim) + gradient @ direction.T


def finite_strain_rotation(jacobian: np.ndarray) -> np.ndarray:
    """Rotation part ``U @ Vt`` of the polar decomposition of each Jacobian."""

    u, _, vt = np.linalg.svd(jacobian)
    return u @ vt


def reorient_tensors(
    tensors: sitk.Image,
    transform: sitk.Transform,
    dimensionality: int,
) -> sitk.Image:
    """Rotate tensors already resampled onto the grid of ``tensors``.

    ``transform`` is the pull-back (target -> source). The push-forward
    Jacobian is its inverse, whose rotation part is the transpose of the
    pull-back rotation, so each tensor becomes ``R_pull.T @ D @ R_pull``.
    """

    rotation = finite_strain_rotation(pullback_jacobian(transform, tensors))
    components = sitk.GetArrayFromImage(tensors).astype(np.float64)
    matrices = tensor_components_to_matrices(components, dimensionality)
    rotated = np.einsum("...ji,...jk,...kl->...il", rotation, matrices, rotation)
    out = sitk.GetImageFromArray(
        tensor_matrices_to_components(rotated, dimensionality).astype(np.float32),
        isVector=True,
    )
    out.CopyInformation(tensors)
    return out


class SimpleITKResamplingService:
    """Resampling service that never leaves the Python process."""

    def __init__(self, threads: Optional[int] = None) -> None:
        if threads:
            sitk.ProcessObject.SetGlobalDefaultNumberOfThreads(int(threads))

    def resample(self, request: ResampleRequest, context: RunContext) -> Path:
        context.check()
        image = sitk.ReadImage(str(request.input))
        if image.GetDimension() != request.dimensionality:
            raise ValueError(
                f"{request.input} is {image.GetDimension()}D, expected {request.dimensionality}D"
            )
        tensor = request.interpolation is InterpolationMode.TENSOR
        expected = len(_TENSOR_INDICES[request.dimensionality])
        if tensor and image.GetNumberOfComponentsPerPixel() != expected:
            raise ValueError(
                f"{request.input} has {image.GetNumberOfComponentsPerPixel()} components; "
                f"a {request.dimensionality}D tensor needs {expected}"
            )

        reference = _read_reference(request.reference)
        transform = request.transform.pullback()
        resampled = sitk.Resample(
            image,
            reference,
            transform,
            _INTERPOLATORS[request.interpolation],
            0.0,
            image.GetPixelID(),
        )
        if tensor:
            context.check()
            resampled = reorient_tensors(resampled, transform, request.dimensionality)

        sitk.WriteImage(resampled, str(request.output))
        logger.debug("Resampled %s -> %s (%s)", request.input, request.output, request.interpolation.value)
        return Path(request.output)
