import numpy as np
import pytest
import SimpleITK as sitk

from conftest import rotation_matrix, write_volume
from intermodality_registration.registration.services import (
    InterpolationMode,
    ResampleRequest,
    RunContext,
)
from intermodality_registration.registration.sitk_resample import (
    SimpleITKResamplingService,
    finite_strain_rotation,
    tensor_components_to_matrices,
    tensor_matrices_to_components,
)
from intermodality_registration.registration.transforms import AffineStep, TransformHandle


def _rotation_about_centre(dim, degrees, centre):
    matrix = rotation_matrix(dim, degrees)
    centre = np.asarray(centre, dtype=float)
    step = AffineStep(matrix, centre - matrix @ centre)
    return TransformHandle(steps=(step,), source="subject", target="template", dimensionality=dim)


def test_tensor_component_order_round_trip():
    components = np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
    matrix = tensor_components_to_matrices(components, 3)
    assert matrix[0, 2] == matrix[2, 0] == 3.0
    assert matrix[1, 1] == 4.0
    np.testing.assert_allclose(tensor_matrices_to_components(matrix, 3), components)


def test_finite_strain_rotation_drops_scaling():
    jacobian = rotation_matrix(3, 30.0) @ np.diag([2.0, 0.5, 1.5])
    np.testing.assert_allclose(finite_strain_rotation(jacobian), rotation_matrix(3, 30.0), atol=1e-9)


def test_tensor_rotated_by_pure_rotation(tmp_path):
    # xx=3, xy=0, yy=1 everywhere
    tensors = np.zeros((9, 9, 3), dtype=np.float32)
    tensors[..., 0] = 3.0
    tensors[..., 2] = 1.0
    source = write_volume(tmp_path / "tensor.mha", tensors, vector=True)
    output = tmp_path / "tensor_rotated.mha"

    SimpleITKResamplingService().resample(
        ResampleRequest(
            input=source,
            output=output,
            reference=source,
            transform=_rotation_about_centre(2, 90.0, (4.0, 4.0)),
            interpolation=InterpolationMode.TENSOR,
            dimensionality=2,
        ),
        RunContext(),
    )

    result = sitk.GetArrayFromImage(sitk.ReadImage(str(output)))
    xx, xy, yy = result[4, 4]
    assert xx == pytest.approx(1.0, abs=1e-4)
    assert yy == pytest.approx(3.0, abs=1e-4)
    assert xy == pytest.approx(0.0, abs=1e-4)
    eigenvalues = np.linalg.eigvalsh(tensor_components_to_matrices(result[4, 4].astype(float), 2))
    np.testing.assert_allclose(eigenvalues, [1.0, 3.0], atol=1e-4)


def test_nearest_neighbour_keeps_label_values(tmp_path):
    labels = np.zeros((10, 10, 10), dtype=np.uint8)
    labels[2:5, :, :] = 3
    labels[5:8, :, :] = 7
    source = write_volume(tmp_path / "labels.nii.gz", labels)
    output = tmp_path / "labels_out.nii.gz"

    SimpleITKResamplingService().resample(
        ResampleRequest(
            input=source,
            output=output,
            reference=source,
            transform=_rotation_about_centre(3, 17.0, (4.5, 4.5, 4.5)),
            interpolation=InterpolationMode.NEAREST_NEIGHBOR,
            dimensionality=3,
        ),
        RunContext(),
    )
    written = sitk.ReadImage(str(output))
    assert written.GetPixelID() == sitk.sitkUInt8
    assert set(np.unique(sitk.GetArrayFromImage(written))) <= {0, 3, 7}


def test_linear_resampling_moves_intensity(tmp_path):
    image = np.zeros((8, 8, 8), dtype=np.float32)
    image[4, 4, 2] = 1.0
    source = write_volume(tmp_path / "dot.nii.gz", image)
    output = tmp_path / "dot_out.nii.gz"
    shift = AffineStep(np.eye(3), np.array([2.0, 0.0, 0.0]))
    handle = TransformHandle(steps=(shift,), source="subject", target="template", dimensionality=3)

    SimpleITKResamplingService().resample(
        ResampleRequest(source, output, source, handle, InterpolationMode.LINEAR, 3),
        RunContext(),
    )
    moved = sitk.GetArrayFromImage(sitk.ReadImage(str(output)))
    assert moved[4, 4, 4] == pytest.approx(1.0)
    assert moved[4, 4, 2] == pytest.approx(0.0)


def test_dimension_mismatch_raises(tmp_path):
    source = write_volume(tmp_path / "flat.nii.gz", np.ones((5, 5), dtype=np.float32))
    handle = TransformHandle(
        steps=(AffineStep.identity(3),), source="subject", target="template", dimensionality=3
    )
    with pytest.raises(ValueError, match="2D"):
        SimpleITKResamplingService().resample(
            ResampleRequest(source, tmp_path / "o.nii.gz", source, handle, InterpolationMode.LINEAR, 3),
            RunContext(),
        )
