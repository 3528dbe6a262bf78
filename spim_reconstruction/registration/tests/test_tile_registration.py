"""Tests for the high-level registration entry point and the CLI."""
import numpy as np
import pandas as pd
import pytest

from ... import registration_cli
from ...parameters import ModelKind, RegistrationParameters
from ...testutil import affine_model, correspondence_table, rotation_matrix
from .._models import AffineModel, InterpolatedModel
from ..tile_registration import (
    models_to_frame,
    read_point_matches_csv,
    register_views,
    write_models_csv,
)


@pytest.fixture
def world_points():
    rng = np.random.default_rng(3)
    return rng.uniform(0, 200, size=(10, 3))


@pytest.fixture
def true_models():
    return {
        0: AffineModel(3),
        1: affine_model(rotation_matrix("z", 5), [20.0, -3.0, 1.0]),
        2: affine_model(rotation_matrix("x", -10), [-5.0, 12.0, 7.0]),
    }


def test_register_rigid_views(world_points, true_models):
    matches = correspondence_table(true_models, [(0, 1), (1, 2), (0, 2)], world_points)
    params = RegistrationParameters(
        model=ModelKind.rigid, max_allowed_error=0.01, max_plateau_width=10, max_iterations=500
    )

    result = register_views(matches, params)

    assert result.unaligned_views == []
    assert result.error < 0.01
    for view, model in true_models.items():
        np.testing.assert_allclose(result.models[view].matrix, model.matrix, atol=1e-4)
    assert result.statistics.max_error < 0.01
    assert len(result.statistics.to_frame()) == 3


def test_register_with_explicit_fixed_view(world_points, true_models):
    matches = correspondence_table(true_models, [(0, 1), (1, 2)], world_points)
    params = RegistrationParameters(model=ModelKind.affine, max_allowed_error=0.01)

    result = register_views(matches, params, fixed_views=[1])

    np.testing.assert_array_equal(result.models[1].matrix, np.eye(4))
    # every model is expressed relative to view 1
    expected = true_models[1].inverse().matrix @ true_models[2].matrix
    np.testing.assert_allclose(result.models[2].matrix, expected, atol=1e-3)


def test_register_regularized(world_points, true_models):
    matches = correspondence_table(true_models, [(0, 1)], world_points)
    params = RegistrationParameters(regularize=True, regularize_lambda=0.3, max_allowed_error=0.01)
    result = register_views(matches, params)
    assert isinstance(result.models[1], InterpolatedModel)


def test_register_disconnected_views(world_points):
    models = {
        "a": AffineModel(3),
        "b": affine_model(np.eye(3), [10.0, 0.0, 0.0]),
        "c": affine_model(np.eye(3), [0.0, 10.0, 0.0]),
        "d": affine_model(np.eye(3), [0.0, 0.0, 10.0]),
    }
    matches = correspondence_table(models, [("a", "b"), ("c", "d")], world_points)
    params = RegistrationParameters(pre_align=True, max_allowed_error=0.01)

    result = register_views(matches, params, fixed_views=["a"])

    assert result.unaligned_views == ["c", "d"]
    np.testing.assert_allclose(result.models["b"].matrix, models["b"].matrix, atol=1e-6)


def test_register_underdetermined_view(world_points, true_models):
    matches = correspondence_table(true_models, [(0, 1)], world_points)
    extra = correspondence_table(true_models, [(0, 2)], world_points[:2])
    params = RegistrationParameters(max_allowed_error=0.01)

    result = register_views(pd.concat([matches, extra], ignore_index=True), params)

    assert result.unaligned_views == [2]
    np.testing.assert_array_equal(result.models[2].matrix, np.eye(4))


def test_underdetermined_view_does_not_distort_neighbours(world_points, true_models):
    matches = correspondence_table(true_models, [(0, 1)], world_points)
    extra = correspondence_table(true_models, [(1, 2)], world_points[:2])
    params = RegistrationParameters(max_allowed_error=0.01)

    result = register_views(pd.concat([matches, extra], ignore_index=True), params)

    assert result.unaligned_views == [2]
    np.testing.assert_array_equal(result.models[2].matrix, np.eye(4))
    np.testing.assert_allclose(result.models[1].matrix, true_models[1].matrix, atol=1e-3)
    frame = result.statistics.to_frame().set_index("view")
    assert frame.loc[2, "num_matches"] == 0
    assert frame.loc[1, "num_matches"] == len(world_points)


def test_views_left_short_by_dropped_neighbours_are_unaligned(world_points, true_models):
    models = {**true_models, 3: affine_model(np.eye(3), [0.0, 0.0, 30.0])}
    matches = pd.concat(
        [
            correspondence_table(models, [(0, 1)], world_points),
            correspondence_table(models, [(2, 3)], world_points[:3]),
            correspondence_table(models, [(1, 3)], world_points[:2]),
        ],
        ignore_index=True,
    )
    result = register_views(matches, RegistrationParameters(max_allowed_error=0.01))

    # once view 2 drops out, view 3 is left with only its two matches to view 1
    assert result.unaligned_views == [2, 3]
    np.testing.assert_allclose(result.models[1].matrix, true_models[1].matrix, atol=1e-3)


def test_register_validation(world_points, true_models):
    matches = correspondence_table(true_models, [(0, 1)], world_points)
    with pytest.raises(ValueError):
        register_views(matches.drop(columns=["bz"]), RegistrationParameters())
    with pytest.raises(ValueError):
        register_views(matches, RegistrationParameters(), fixed_views=[7])


def test_statistics_worst_view(world_points, true_models):
    matches = correspondence_table(true_models, [(0, 1), (1, 2)], world_points)
    noise = np.random.default_rng(1).normal(0, 2.0, (len(world_points), 3))
    matches.loc[matches["view_a"] == 1, ["bx", "by", "bz"]] += noise
    params = RegistrationParameters(model=ModelKind.translation, max_allowed_error=100.0, max_iterations=500)

    result = register_views(matches, params)

    frame = result.statistics.to_frame()
    assert result.statistics.worst_view == frame.loc[frame["distance"].idxmax(), "view"]
    assert result.statistics.min_error <= result.statistics.avg_error <= result.statistics.max_error
    assert result.statistics.max_error > 0
    assert "worst view" in result.statistics.summary()


def test_statistics_correspondence_ratios(world_points, true_models):
    matches = correspondence_table(true_models, [(0, 1), (1, 2)], world_points)
    params = RegistrationParameters(max_allowed_error=0.01)

    result = register_views(matches, params, candidates={0: (20, 10), 1: (40, 20), 2: (10, 8)})

    assert result.statistics.min_ratio == pytest.approx(0.5)
    assert result.statistics.avg_ratio == pytest.approx(0.6)
    assert result.statistics.max_ratio == pytest.approx(0.8)
    assert "correspondence ratio" in result.statistics.summary()
    assert "correspondence ratio" not in register_views(matches, params).statistics.summary()


def test_models_csv_roundtrip(tmp_path, true_models):
    path = tmp_path / "models.csv"
    write_models_csv(path, true_models)
    frame = pd.read_csv(path)
    assert list(frame.columns[:2]) == ["view", "model"]
    assert len(frame.columns) == 2 + 12
    np.testing.assert_allclose(frame.loc[1, "m03"], 20.0)
    pd.testing.assert_frame_equal(frame, models_to_frame(true_models), check_dtype=False)


def test_read_point_matches_csv_default_weight(tmp_path, world_points, true_models):
    path = tmp_path / "matches.csv"
    correspondence_table(true_models, [(0, 1)], world_points).drop(columns=["weight"]).to_csv(
        path, index=False
    )
    matches = read_point_matches_csv(path)
    assert (matches["weight"] == 1.0).all()


def test_cli(tmp_path, world_points, true_models):
    matches_path = tmp_path / "matches.csv"
    output_path = tmp_path / "models.csv"
    correspondence_table(true_models, [(0, 1), (1, 2)], world_points).to_csv(
        matches_path, index=False
    )

    registration_cli.main(
        [
            "--point-matches-csv", str(matches_path),
            "--output-csv", str(output_path),
            "--max-allowed-error", "0.01",
        ]
    )

    models = pd.read_csv(output_path)
    assert list(models["view"]) == [0, 1, 2]
    np.testing.assert_allclose(models.loc[1, "m03"], 20.0, atol=1e-3)
