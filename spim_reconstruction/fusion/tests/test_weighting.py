"""Tests for the weighting strategies."""
import logging
from types import SimpleNamespace

import numpy as np
import pytest

from ...errors import ResourceExhaustionError
from ...testutil import make_view, random_volume
from .. import weighting
from ..weighting import (
    BlendingWeight,
    ContentBasedWeight,
    DistanceBlending,
    IsolatedWeight,
    VoxelScratch,
    cosine_ramp,
    prepare_isolated_weights,
)


@pytest.fixture
def cube():
    return np.zeros((64, 64, 64), dtype=np.float32)


def test_cosine_ramp():
    np.testing.assert_allclose(cosine_ramp(np.array([0.0, 0.5, 1.0, 2.0])), [0.0, 0.5, 1.0, 1.0], atol=1e-12)


def test_blending_weight(cube):
    weight_map = BlendingWeight(border=0, blending_range=10).prepare(make_view(cube), cube)

    center = weight_map.lookup(np.array([[32.0, 32.0, 32.0]]))
    np.testing.assert_allclose(center, [1.0])

    ramp = weight_map.lookup(np.array([[x, 32.0, 32.0] for x in range(12)]))
    assert 0 < ramp[0] < 0.1
    assert np.all(np.diff(ramp) >= 0)
    assert ramp[-1] == pytest.approx(1.0)


def test_blending_weight_outside_image(cube):
    weight_map = BlendingWeight(border=0, blending_range=10).prepare(make_view(cube), cube)
    outside = weight_map.lookup(np.array([[-1.0, 32.0, 32.0], [64.0, 32.0, 32.0], [32.0, 32.0, 64.0]]))
    np.testing.assert_array_equal(outside, [0.0, 0.0, 0.0])
    assert weight_map.lookup(np.array([[63.0, 32.0, 32.0]]))[0] > 0


def test_negative_blending_border(cube):
    inner = BlendingWeight(border=0, blending_range=12).prepare(make_view(cube), cube)
    outer = BlendingWeight(border=-8, blending_range=12).prepare(make_view(cube), cube)
    edge = np.array([[0.0, 32.0, 32.0]])
    assert outer.lookup(edge)[0] > inner.lookup(edge)[0]


def test_blending_weight_per_axis(cube):
    # no ramp along x and y, a 10 px ramp along z
    weight_map = BlendingWeight(border=0, blending_range=(0.0, 0.0, 10.0)).prepare(make_view(cube), cube)
    np.testing.assert_allclose(weight_map.lookup(np.array([[0.0, 0.0, 32.0]])), [1.0])
    assert weight_map.lookup(np.array([[32.0, 32.0, 0.0]]))[0] < 0.1
    with pytest.raises(ValueError):
        BlendingWeight(blending_range=(10.0, -1.0, 10.0))


def test_blending_weight_per_channel(cube):
    layer = BlendingWeight(border=0, blending_range=10, channels={1: (0.0, 0.0)})
    edge = np.array([[0.0, 32.0, 32.0]])
    assert layer.prepare(make_view(cube), cube).lookup(edge)[0] < 0.1
    assert layer.prepare(make_view(cube, channel=1), cube).lookup(edge)[0] == 1.0


def test_content_based_weight_prefers_structure():
    image = np.full((16, 32, 32), 100.0, dtype=np.float32)
    image[:, :, :16] += random_volume((16, 32, 16), seed=1)
    weight_map = ContentBasedWeight(sigma1=1.0, sigma2=2.0).prepare(make_view(image), image)

    textured, flat = weight_map.lookup(np.array([[8.0, 16.0, 8.0], [28.0, 16.0, 8.0]]))
    assert textured > flat
    assert 0.0 <= flat <= textured <= 1.0
    # lookups are rounded and clamped to the image
    assert weight_map.lookup(np.array([[-0.4, 0.0, 31.6]])).shape == (1,)


def test_content_based_weight_of_constant_image():
    image = np.full((8, 8, 8), 5.0, dtype=np.float32)
    weight_map = ContentBasedWeight(1.0, 2.0).prepare(make_view(image), image)
    np.testing.assert_array_equal(weight_map.lookup(np.array([[1.0, 2.0, 3.0]])), [1.0])


def test_content_based_weight_resource_exhaustion(monkeypatch):
    monkeypatch.setattr(weighting.psutil, "virtual_memory", lambda: SimpleNamespace(available=0))
    image = np.zeros((8, 8, 8), dtype=np.float32)
    with pytest.raises(ResourceExhaustionError):
        ContentBasedWeight().prepare(make_view(image), image)


def test_distance_blending():
    image = np.zeros((40, 40, 40), dtype=np.float32)
    views = [make_view(image, angle=0), make_view(image, angle=1)]
    instance = DistanceBlending(blending_range=40).prepare(views)

    scratch = VoxelScratch.empty(3, 2)
    # near the border of view 0, in the center of view 1
    scratch.locations[0] = [[2.0, 20.0, 20.0], [20.0, 20.0, 20.0]]
    scratch.use[0] = [True, True]
    # only view 0
    scratch.locations[1] = [[20.0, 20.0, 20.0], [50.0, 20.0, 20.0]]
    scratch.use[1] = [True, False]
    # on the border of both
    scratch.locations[2] = [[0.0, 20.0, 20.0], [39.0, 20.0, 20.0]]
    scratch.use[2] = [True, True]

    instance.update_weights(scratch)

    np.testing.assert_allclose(scratch.weights.sum(axis=1), [1.0, 1.0, 1.0])
    assert instance.weight(scratch, 1)[0] > instance.weight(scratch, 0)[0]
    np.testing.assert_allclose(scratch.weights[1], [1.0, 0.0])
    np.testing.assert_allclose(scratch.weights[2], [0.5, 0.5])


class _ExhaustedWeight(IsolatedWeight):
    name = "exhausted"

    def prepare(self, view, image):
        raise ResourceExhaustionError("no memory left")


def test_prepare_isolated_weights():
    images = [np.zeros((8, 8, 8), dtype=np.float32) for _ in range(3)]
    views = [make_view(image, angle=i) for i, image in enumerate(images)]
    maps = prepare_isolated_weights([BlendingWeight(), BlendingWeight(-8, 12)], views, images, 2)
    assert len(maps) == 3
    assert all(len(view_maps) == 2 for view_maps in maps)
    assert prepare_isolated_weights([], views, images, 2) == []


def test_isolated_weights_disabled_on_exhaustion(caplog):
    images = [np.zeros((8, 8, 8), dtype=np.float32) for _ in range(3)]
    views = [make_view(image, angle=i) for i, image in enumerate(images)]
    with caplog.at_level(logging.WARNING):
        maps = prepare_isolated_weights([BlendingWeight(), _ExhaustedWeight()], views, images, 2)
    assert maps == []
    assert "Disabling isolated weights" in caplog.text
