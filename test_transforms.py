from pathlib import Path

import numpy as np
import pytest
import SimpleITK as sitk

from conftest import FakeRegistrationService, rotation_matrix, stage_step
from intermodality_registration.errors import CompositionFailure, MissingTemplateTransform
from intermodality_registration.metadata.models import TransformClass
from intermodality_registration.registration.executor import run_registration
from intermodality_registration.registration.stages import plan_stages
from intermodality_registration.registration.transforms import (
    AffineStep,
    LinearTransformFile,
    PairedTransformFiles,
    TransformHandle,
    compose,
    identity_transform,
    locate_template_transform,
)

POINTS = [(0.0, 0.0, 0.0), (3.5, -2.0, 7.25), (10.0, 11.0, -4.0)]


def _handle(steps, source="subject", target="t1", dim=3):
    return TransformHandle(steps=tuple(steps), source=source, target=target, dimensionality=dim)


def _write_displacement(path: Path, vector) -> Path:
    array = np.zeros((6, 6, 6, 3), dtype=np.float64)
    array[...] = vector
    image = sitk.GetImageFromArray(array, isVector=True)
    sitk.WriteImage(image, str(path))
    return path


def test_affine_step_inverse_round_trip():
    step = stage_step(3, 1)
    for point in POINTS:
        np.testing.assert_allclose(step.inverse().apply(step.apply(point)), point, atol=1e-9)


def test_affine_pullback_maps_target_to_source():
    step = stage_step(3, 0)
    for point in POINTS:
        moved = step.apply(point)
        np.testing.assert_allclose(step.pullback().TransformPoint(moved), point, atol=1e-9)


def test_identity_ants_argument(tmp_path):
    assert AffineStep.identity(3).ants_argument(tmp_path) == "identity"
    written = stage_step(3, 0).ants_argument(tmp_path)
    assert written.endswith(".mat") and Path(written).is_file()


def test_compose_with_identity_equals_subject_to_t1():
    subject_to_t1 = _handle([stage_step(3, 0), stage_step(3, 1)])
    composed = compose(subject_to_t1, identity_transform(3, "t1", "template"))
    for point in POINTS:
        np.testing.assert_allclose(
            composed.forward.apply_point(point), subject_to_t1.apply_point(point), atol=1e-9
        )
    assert composed.forward.source == "subject"
    assert composed.forward.target == "template"


def test_compose_applies_subject_to_t1_first():
    a = _handle([AffineStep(rotation_matrix(3, 90.0), np.zeros(3))])
    b = _handle([AffineStep(np.eye(3), np.array([5.0, 0.0, 0.0]))], source="t1", target="template")
    composed = compose(a, b)
    point = (1.0, 0.0, 0.0)
    # rotate (1,0,0) -> (0,1,0), then translate
    np.testing.assert_allclose(composed.forward.apply_point(point), (5.0, 1.0, 0.0), atol=1e-9)
    wrong_order = b.steps[0].apply(point)
    assert not np.allclose(composed.forward.apply_point(point), a.apply_point(wrong_order))


def test_inverse_applies_template_inverse_first():
    a = _handle([AffineStep(rotation_matrix(3, 90.0), np.zeros(3))])
    b = _handle([AffineStep(np.eye(3), np.array([5.0, 0.0, 0.0]))], source="t1", target="template")
    composed = compose(a, b)
    np.testing.assert_allclose(composed.inverse.apply_point((5.0, 1.0, 0.0)), (1.0, 0.0, 0.0), atol=1e-9)
    assert composed.inverse.source == "template"


def test_composition_keeps_constituent_steps():
    a = _handle([stage_step(3, 0)])
    b = _handle([stage_step(3, 1)], source="t1", target="template")
    composed = compose(a, b)
    assert composed.forward.steps[0] is a.steps[0]
    assert composed.forward.steps[1] is b.steps[0]


def test_then_rejects_dimension_mismatch():
    a = _handle([stage_step(3, 0)])
    b = _handle([stage_step(2, 0)], source="t1", target="template", dim=2)
    with pytest.raises(CompositionFailure):
        a.then(b)


def test_then_rejects_space_mismatch():
    a = _handle([stage_step(3, 0)])
    with pytest.raises(CompositionFailure):
        a.then(_handle([stage_step(3, 1)], source="subject", target="template"))


@pytest.mark.parametrize("tclass", list(TransformClass))
def test_round_trip_for_every_transform_class(tmp_path, template_prefix, tclass):
    stages = plan_stages(tclass, 3)
    subject_to_t1 = run_registration(
        FakeRegistrationService(),
        fixed=tmp_path / "t1.nii.gz",
        moving=tmp_path / "bold.nii.gz",
        stages=stages,
        dimensionality=3,
        output_prefix=str(tmp_path / "run_"),
        workdir=tmp_path,
    )
    assert len(subject_to_t1.steps) == len(stages)
    composed = compose(subject_to_t1, locate_template_transform(template_prefix, 3))
    for point in POINTS:
        there = composed.forward.apply_point(point)
        np.testing.assert_allclose(composed.inverse.apply_point(there), point, atol=1e-6)


def test_linear_file_maps_with_inverse_of_stored_transform(tmp_path):
    stored = sitk.AffineTransform(3)
    stored.SetMatrix(rotation_matrix(3, 20.0).ravel().tolist())
    stored.SetTranslation((1.0, 2.0, 3.0))
    path = tmp_path / "x0GenericAffine.mat"
    sitk.WriteTransform(stored, str(path))

    step = LinearTransformFile(path, 3)
    for point in POINTS:
        np.testing.assert_allclose(step.apply(point), stored.GetInverse().TransformPoint(point), atol=1e-6)
        np.testing.assert_allclose(step.inverse().apply(point), stored.TransformPoint(point), atol=1e-6)
    assert step.ants_argument(tmp_path) == str(path)
    assert step.inverse().ants_argument(tmp_path) == f"[{path},1]"


def test_paired_files_push_forward_and_swap_on_inverse(tmp_path):
    pull = _write_displacement(tmp_path / "x1Warp.nii.gz", (-1.0, 0.0, 0.0))
    push = _write_displacement(tmp_path / "x1InverseWarp.nii.gz", (1.0, 0.0, 0.0))
    step = PairedTransformFiles(pull, push, 3)
    np.testing.assert_allclose(step.apply((2.0, 2.0, 2.0)), (3.0, 2.0, 2.0), atol=1e-6)
    np.testing.assert_allclose(step.inverse().apply((3.0, 2.0, 2.0)), (2.0, 2.0, 2.0), atol=1e-6)
    assert step.inverse().ants_argument(tmp_path) == str(push)


def test_ants_transform_list_reverses_chain(tmp_path):
    first = LinearTransformFile(tmp_path / "a0GenericAffine.mat", 3)
    second = PairedTransformFiles(tmp_path / "a1Warp.nii.gz", tmp_path / "a1InverseWarp.nii.gz", 3)
    handle = _handle([first, second])
    assert handle.ants_transform_list(tmp_path) == [str(second.pull_path), str(first.path)]
    assert handle.inverse().ants_transform_list(tmp_path) == [
        f"[{first.path},1]",
        str(second.push_path),
    ]


def test_locate_template_affine_only(template_prefix):
    handle = locate_template_transform(template_prefix, 3)
    assert len(handle.steps) == 1
    assert (handle.source, handle.target) == ("t1", "template")


def test_locate_template_with_warp_pair(template_prefix):
    _write_displacement(Path(template_prefix + "1Warp.nii.gz"), (0.5, 0.0, 0.0))
    _write_displacement(Path(template_prefix + "1InverseWarp.nii.gz"), (-0.5, 0.0, 0.0))
    handle = locate_template_transform(template_prefix, 3)
    assert isinstance(handle.steps[1], PairedTransformFiles)


def test_locate_template_missing_prefix(tmp_path):
    with pytest.raises(MissingTemplateTransform) as info:
        locate_template_transform(str(tmp_path / "nothing_"), 3)
    assert isinstance(info.value, CompositionFailure)


def test_locate_template_half_warp_pair(template_prefix):
    _write_displacement(Path(template_prefix + "1Warp.nii.gz"), (0.5, 0.0, 0.0))
    with pytest.raises(MissingTemplateTransform):
        locate_template_transform(template_prefix, 3)


def test_locate_template_empty_affine(tmp_path):
    prefix = str(tmp_path / "empty_")
    Path(prefix + "0GenericAffine.mat").write_bytes(b"")
    with pytest.raises(MissingTemplateTransform, match="empty"):
        locate_template_transform(prefix, 3)


def _write_composite(path: Path, offset) -> Path:
    composite = sitk.CompositeTransform(3)
    composite.AddTransform(sitk.TranslationTransform(3, offset))
    sitk.WriteTransform(composite, str(path))
    return path


def test_locate_template_composite_pair(tmp_path):
    prefix = str(tmp_path / "comp_")
    _write_composite(Path(prefix + "Composite.h5"), (1.0, 0.0, 0.0))
    _write_composite(Path(prefix + "InverseComposite.h5"), (-1.0, 0.0, 0.0))
    handle = locate_template_transform(prefix, 3)
    assert handle.ants_transform_list(tmp_path) == [prefix + "Composite.h5"]
    assert handle.inverse().ants_transform_list(tmp_path) == [prefix + "InverseComposite.h5"]
    np.testing.assert_allclose(handle.apply_point((0.0, 0.0, 0.0)), (-1.0, 0.0, 0.0), atol=1e-9)


def test_locate_template_malformed_composite(tmp_path):
    """Garbage composites must stop the run before any auxiliary image is touched."""
    prefix = str(tmp_path / "comp_")
    Path(prefix + "Composite.h5").write_bytes(b"h5")
    Path(prefix + "InverseComposite.h5").write_bytes(b"h5")
    with pytest.raises(MissingTemplateTransform, match="not a readable transform"):
        locate_template_transform(prefix, 3)
