"""Tests for the transformation models."""
import numpy as np
import pytest

from ...errors import IllConditionedFitError, InsufficientDataError, NonInvertibleTransformError
from ...parameters import ModelKind
from ...testutil import affine_model, rotation_matrix
from .._models import (
    AffineModel,
    InterpolatedModel,
    RigidModel,
    TranslationModel,
    create_model,
    create_regularized_model,
)
from .._point_match import point_matches_from_arrays


@pytest.fixture
def local_points():
    """Eight non-coplanar points."""
    rng = np.random.default_rng(42)
    return rng.uniform(-50, 50, size=(8, 3))


def test_translation_fit(local_points):
    shift = np.array([3.0, -7.5, 12.25])
    model = TranslationModel(3)
    model.fit(point_matches_from_arrays(local_points, local_points + shift))
    np.testing.assert_allclose(model.translation, shift)
    np.testing.assert_allclose(model.linear, np.eye(3))
    assert model.cost == pytest.approx(0.0, abs=1e-18)


def test_weighted_translation_fit():
    local = np.zeros((2, 2))
    target = np.array([[0.0, 0.0], [4.0, 0.0]])
    model = TranslationModel(2)
    model.fit(point_matches_from_arrays(local, target, weights=[0.25, 0.75]))
    np.testing.assert_allclose(model.translation, [3.0, 0.0])


def test_rigid_fit_recovers_rotation(local_points):
    R = rotation_matrix("z", 30) @ rotation_matrix("x", -12)
    t = np.array([10.0, -4.0, 2.5])
    model = RigidModel(3)
    model.fit(point_matches_from_arrays(local_points, local_points @ R.T + t))
    np.testing.assert_allclose(model.linear, R, atol=1e-10)
    np.testing.assert_allclose(model.translation, t, atol=1e-10)


def test_rigid_fit_never_reflects(local_points):
    mirrored = local_points * np.array([-1.0, 1.0, 1.0])
    model = RigidModel(3)
    model.fit(point_matches_from_arrays(local_points, mirrored))
    assert np.linalg.det(model.linear) == pytest.approx(1.0)


def test_affine_fit_recovers_matrix(local_points):
    A = np.array([[1.1, 0.05, -0.02], [0.0, 0.95, 0.1], [0.03, -0.01, 1.2]])
    t = np.array([-3.0, 8.0, 0.5])
    model = AffineModel(3)
    model.fit(point_matches_from_arrays(local_points, local_points @ A.T + t))
    np.testing.assert_allclose(model.linear, A, atol=1e-10)
    np.testing.assert_allclose(model.translation, t, atol=1e-10)


def test_minimum_number_of_matches():
    assert TranslationModel(3).min_num_matches == 1
    assert RigidModel(2).min_num_matches == 2
    assert RigidModel(3).min_num_matches == 3
    assert AffineModel(2).min_num_matches == 3
    assert AffineModel(3).min_num_matches == 4


def test_insufficient_data(local_points):
    model = AffineModel(3)
    with pytest.raises(InsufficientDataError) as excinfo:
        model.fit(point_matches_from_arrays(local_points[:3], local_points[:3]))
    assert excinfo.value.required == 4
    assert excinfo.value.available == 3
    np.testing.assert_array_equal(model.matrix, np.eye(4))


def test_colinear_points_are_ill_conditioned():
    line = np.outer(np.arange(6, dtype=float), [1.0, 2.0, 3.0])
    with pytest.raises(IllConditionedFitError):
        AffineModel(3).fit(point_matches_from_arrays(line, line + 1))
    with pytest.raises(IllConditionedFitError):
        RigidModel(3).fit(point_matches_from_arrays(line, line + 1))


def test_inverse(local_points):
    model = affine_model(rotation_matrix("y", 20) * 1.5, [1.0, 2.0, 3.0])
    world = model.apply(local_points)
    np.testing.assert_allclose(model.apply_inverse(world), local_points, atol=1e-10)
    np.testing.assert_allclose(model.inverse().matrix @ model.matrix, np.eye(4), atol=1e-12)


def test_singular_inverse():
    model = affine_model(np.diag([1.0, 1.0, 0.0]), [0.0, 0.0, 0.0])
    with pytest.raises(NonInvertibleTransformError):
        model.inverse()
    with pytest.raises(NonInvertibleTransformError):
        model.apply_inverse(np.zeros(3))


def test_copy_and_set():
    model = affine_model(rotation_matrix("z", 45), [1.0, 0.0, 0.0])
    copied = model.copy()
    copied.matrix[0, 3] = 5.0
    assert model.matrix[0, 3] == 1.0

    other = AffineModel(3)
    other.set(model)
    np.testing.assert_array_equal(other.matrix, model.matrix)
    with pytest.raises(ValueError):
        AffineModel(2).set(model)


def test_interpolated_model(local_points):
    A = np.diag([1.2, 0.8, 1.0])
    target = local_points @ A.T
    matches = point_matches_from_arrays(local_points, target)

    unregularized = InterpolatedModel(AffineModel(3), RigidModel(3), 0.0)
    unregularized.fit(matches)
    np.testing.assert_allclose(unregularized.linear, A, atol=1e-10)

    regularized = create_regularized_model(ModelKind.affine, ModelKind.rigid, 0.5)
    regularized.fit(matches)
    expected = 0.5 * regularized.model.matrix + 0.5 * regularized.regularizer.matrix
    np.testing.assert_allclose(regularized.matrix, expected)
    assert regularized.min_num_matches == 4


def test_create_model():
    assert isinstance(create_model(ModelKind.translation), TranslationModel)
    assert isinstance(create_model(ModelKind.rigid, 2), RigidModel)
    assert isinstance(create_model("Affine"), AffineModel)
    with pytest.raises(ValueError):
        create_model(ModelKind.affine, ndim=4)


def test_model_error(local_points):
    shift = np.array([1.0, 2.0, 2.0])
    matches = point_matches_from_arrays(local_points, local_points + shift)

    model = TranslationModel(3)
    assert model.error(matches) == pytest.approx(3.0)
    assert model.error([]) == 0.0

    model.fit(matches)
    assert model.error(matches) == pytest.approx(0.0, abs=1e-12)
