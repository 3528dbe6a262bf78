"""Transformation models for multi-view registration.

Every model is an affine map stored as a homogeneous ``(n+1, n+1)`` matrix
acting on ``n``-dimensional xyz coordinates. The concrete models differ in
how they are fitted to a set of weighted point matches:

- TranslationModel: shift only
- RigidModel: rotation and shift (weighted Kabsch)
- AffineModel: full linear map and shift (weighted least squares)
- InterpolatedModel: a model blended with a simpler regularizer

A fit maps the local coordinates of ``match.p1`` onto the world coordinates
of ``match.p2``.
"""
import copy
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Sequence, Tuple

import numpy as np

from ..errors import IllConditionedFitError, InsufficientDataError, NonInvertibleTransformError
from ..parameters import ModelKind
from ._typing_utils import FloatArray

if TYPE_CHECKING:
    from ._point_match import PointMatch


# Relative tolerance below which a determinant counts as singular
SINGULAR_TOLERANCE = 1e-12


def _match_arrays(
    matches: Sequence["PointMatch"], ndim: int
) -> Tuple[FloatArray, FloatArray, FloatArray]:
    """Stack local source, world target and weight arrays from point matches."""
    p = np.array([m.p1.l for m in matches], dtype=np.float64).reshape(-1, ndim)
    q = np.array([m.p2.w for m in matches], dtype=np.float64).reshape(-1, ndim)
    w = np.array([m.weight for m in matches], dtype=np.float64)
    return p, q, w


def _weighted_centroids(
    p: FloatArray, q: FloatArray, w: FloatArray
) -> Tuple[FloatArray, FloatArray]:
    ws = w.sum()
    if ws <= 0:
        raise IllConditionedFitError("Sum of match weights is zero")
    return (w[:, None] * p).sum(axis=0) / ws, (w[:, None] * q).sum(axis=0) / ws


class AbstractModel(ABC):
    """Base class for all transformation models."""

    def __init__(self, ndim: int = 3):
        if ndim not in (2, 3):
            raise ValueError(f"Only 2-D and 3-D models are supported, got ndim={ndim}")
        self.ndim = ndim
        self.matrix: FloatArray = np.eye(ndim + 1, dtype=np.float64)
        self.cost = float("inf")

    @property
    @abstractmethod
    def min_num_matches(self) -> int:
        """Minimal number of point matches required by `fit`."""

    @abstractmethod
    def _estimate(self, p: FloatArray, q: FloatArray, w: FloatArray) -> FloatArray:
        """Return the homogeneous matrix mapping `p` onto `q` under weights `w`."""

    @property
    def linear(self) -> FloatArray:
        return self.matrix[: self.ndim, : self.ndim]

    @property
    def translation(self) -> FloatArray:
        return self.matrix[: self.ndim, self.ndim]

    def fit(self, matches: Sequence["PointMatch"]) -> None:
        """Fit the model to the matches, minimizing the weighted squared residual.

        Args:
            matches: Point matches; `p1.l` is mapped onto `p2.w`

        Raises:
            InsufficientDataError: If there are fewer matches than `min_num_matches`
            IllConditionedFitError: If the matches do not determine the model
        """
        if len(matches) < self.min_num_matches:
            raise InsufficientDataError(self.min_num_matches, len(matches))
        p, q, w = _match_arrays(matches, self.ndim)
        self.matrix = self._estimate(p, q, w)
        residual = np.linalg.norm(self.apply(p) - q, axis=1)
        self.cost = float((w * residual**2).sum() / w.sum())

    def apply(self, points: FloatArray) -> FloatArray:
        """Apply the model to one point of shape (n,) or many of shape (N, n)."""
        pts = np.asarray(points, dtype=np.float64)
        return pts @ self.linear.T + self.translation

    def inverse(self) -> "AffineModel":
        """Return the inverse transformation as an affine model.

        Raises:
            NonInvertibleTransformError: If the linear part is singular
        """
        det = np.linalg.det(self.linear)
        scale = max(1.0, float(np.abs(self.linear).max()) ** self.ndim)
        if not np.isfinite(det) or abs(det) <= SINGULAR_TOLERANCE * scale:
            raise NonInvertibleTransformError(
                f"{type(self).__name__} is not invertible (det={det})"
            )
        inverse = AffineModel(self.ndim)
        inverse.matrix = np.linalg.inv(self.matrix)
        return inverse

    def apply_inverse(self, points: FloatArray) -> FloatArray:
        """Map world coordinates back into the local frame of this model."""
        return self.inverse().apply(points)

    def error(self, matches: Sequence["PointMatch"]) -> float:
        """Mean distance between transformed `p1.l` and `p2.w` over the matches."""
        if not matches:
            return 0.0
        p, q, _ = _match_arrays(matches, self.ndim)
        return float(np.linalg.norm(self.apply(p) - q, axis=1).mean())

    def set(self, other: "AbstractModel") -> None:
        """Copy the transformation of another model of the same dimensionality."""
        if other.ndim != self.ndim:
            raise ValueError(f"Cannot set a {self.ndim}-D model from a {other.ndim}-D model")
        self.matrix = other.matrix.copy()
        self.cost = other.cost

    def copy(self) -> "AbstractModel":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        rows = "; ".join(" ".join(f"{v:.6g}" for v in row) for row in self.matrix[: self.ndim])
        return f"{type(self).__name__}({self.ndim}D, [{rows}])"


class TranslationModel(AbstractModel):
    """Translation only; needs a single match."""

    @property
    def min_num_matches(self) -> int:
        return 1

    def _estimate(self, p: FloatArray, q: FloatArray, w: FloatArray) -> FloatArray:
        pc, qc = _weighted_centroids(p, q, w)
        matrix = np.eye(self.ndim + 1)
        matrix[: self.ndim, self.ndim] = qc - pc
        return matrix


class RigidModel(AbstractModel):
    """Rotation plus translation, fitted with the weighted Kabsch method."""

    @property
    def min_num_matches(self) -> int:
        return self.ndim

    def _estimate(self, p: FloatArray, q: FloatArray, w: FloatArray) -> FloatArray:
        pc, qc = _weighted_centroids(p, q, w)
        P = p - pc
        Q = q - qc
        spread = (w[:, None] * P).T @ P
        # a rotation is determined up to the axis through colinear points
        if np.linalg.matrix_rank(spread) < self.ndim - 1:
            raise IllConditionedFitError("Point matches are degenerate for a rigid fit")
        H = (w[:, None] * P).T @ Q
        U, _, Vt = np.linalg.svd(H)
        D = np.eye(self.ndim)
        D[-1, -1] = np.sign(np.linalg.det(Vt.T @ U.T)) or 1.0
        R = Vt.T @ D @ U.T
        matrix = np.eye(self.ndim + 1)
        matrix[: self.ndim, : self.ndim] = R
        matrix[: self.ndim, self.ndim] = qc - R @ pc
        return matrix


class AffineModel(AbstractModel):
    """General affine map, fitted by weighted least squares."""

    @property
    def min_num_matches(self) -> int:
        return self.ndim + 1

    def _estimate(self, p: FloatArray, q: FloatArray, w: FloatArray) -> FloatArray:
        pc, qc = _weighted_centroids(p, q, w)
        P = p - pc
        Q = q - qc
        spread = (w[:, None] * P).T @ P
        if np.linalg.matrix_rank(spread) < self.ndim:
            raise IllConditionedFitError("Point matches are degenerate for an affine fit")
        cross = (w[:, None] * Q).T @ P
        A = np.linalg.solve(spread.T, cross.T).T
        matrix = np.eye(self.ndim + 1)
        matrix[: self.ndim, : self.ndim] = A
        matrix[: self.ndim, self.ndim] = qc - A @ pc
        return matrix


class InterpolatedModel(AbstractModel):
    """A model regularized towards a simpler one.

    Both models are fitted to the same matches and their matrices blended as
    ``(1 - lambda) * model + lambda * regularizer``.
    """

    def __init__(self, model: AbstractModel, regularizer: AbstractModel, lambda_: float):
        if model.ndim != regularizer.ndim:
            raise ValueError("Model and regularizer must have the same dimensionality")
        if not 0.0 <= lambda_ <= 1.0:
            raise ValueError(f"lambda must be within [0, 1], got {lambda_}")
        super().__init__(model.ndim)
        self.model = model
        self.regularizer = regularizer
        self.lambda_ = lambda_

    @property
    def min_num_matches(self) -> int:
        return max(self.model.min_num_matches, self.regularizer.min_num_matches)

    def _estimate(self, p: FloatArray, q: FloatArray, w: FloatArray) -> FloatArray:
        self.model.matrix = self.model._estimate(p, q, w)
        self.regularizer.matrix = self.regularizer._estimate(p, q, w)
        return (1.0 - self.lambda_) * self.model.matrix + self.lambda_ * self.regularizer.matrix


_MODEL_CLASSES = {
    ModelKind.translation: TranslationModel,
    ModelKind.rigid: RigidModel,
    ModelKind.affine: AffineModel,
}


def create_model(kind: ModelKind, ndim: int = 3) -> AbstractModel:
    """Create an identity model of the given kind."""
    try:
        return _MODEL_CLASSES[ModelKind(kind)](ndim)
    except KeyError:
        raise ValueError(f"Unknown model kind: {kind}")


def create_regularized_model(
    kind: ModelKind, regularizer: ModelKind, lambda_: float, ndim: int = 3
) -> InterpolatedModel:
    """Create an identity model of `kind` regularized towards `regularizer`."""
    return InterpolatedModel(create_model(kind, ndim), create_model(regularizer, ndim), lambda_)
