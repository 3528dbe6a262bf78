import math
import pathlib
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .fusion import ViewData, ViewId
from .registration import AbstractModel, AffineModel, TranslationModel

FIXTURES_DIR = pathlib.Path(__file__).parent.parent / "test_fixtures" / "parameters_test"
REGISTRATION_PARAMETERS_FIXTURE_FILE = FIXTURES_DIR / "registration.json"
FUSION_PARAMETERS_FIXTURE_FILE = FIXTURES_DIR / "fusion.json"


def rotation_matrix(axis: str, degrees: float) -> np.ndarray:
    """3x3 rotation about the x, y or z axis."""
    a = math.radians(degrees)
    c, s = math.cos(a), math.sin(a)
    if axis == "x":
        return np.array([[1, 0, 0], [0, c, -s], [0, s, c]])
    elif axis == "y":
        return np.array([[c, 0, s], [0, 1, 0], [-s, 0, c]])
    elif axis == "z":
        return np.array([[c, -s, 0], [s, c, 0], [0, 0, 1]])
    raise ValueError(f"Unknown axis: {axis}")


def affine_model(linear: np.ndarray, translation: Sequence[float]) -> AffineModel:
    model = AffineModel(3)
    model.matrix[:3, :3] = linear
    model.matrix[:3, 3] = translation
    return model


def translation_model(shift: Sequence[float]) -> TranslationModel:
    model = TranslationModel(len(shift))
    model.matrix[: len(shift), len(shift)] = shift
    return model


def random_volume(shape: Tuple[int, int, int], seed: int = 0, low: float = 0, high: float = 1000) -> np.ndarray:
    """A (z, y, x) float32 volume of uniform noise."""
    rng = np.random.default_rng(seed)
    return rng.uniform(low, high, size=shape).astype(np.float32)


def make_view(
    image: np.ndarray,
    model: Optional[AbstractModel] = None,
    angle: int = 0,
    timepoint: int = 0,
    channel: int = 0,
    beads: Optional[np.ndarray] = None,
) -> ViewData:
    return ViewData(
        view_id=ViewId(timepoint=timepoint, channel=channel, angle=angle),
        model=model if model is not None else AffineModel(3),
        image=image,
        beads=beads,
    )


def correspondence_table(
    models: dict,
    pairs: Sequence[Tuple[object, object]],
    points: np.ndarray,
) -> pd.DataFrame:
    """Correspondences between views whose true models map local to world.

    `points` are world xyz coordinates seen by every view; each view's local
    coordinate of a point is the inverse of its model applied to it.
    """
    rows = []
    for view_a, view_b in pairs:
        local_a = models[view_a].apply_inverse(points)
        local_b = models[view_b].apply_inverse(points)
        for a, b in zip(local_a, local_b):
            rows.append(
                {
                    "view_a": view_a,
                    "view_b": view_b,
                    "ax": a[0], "ay": a[1], "az": a[2],
                    "bx": b[0], "by": b[1], "bz": b[2],
                    "weight": 1.0,
                }
            )
    return pd.DataFrame(rows)
