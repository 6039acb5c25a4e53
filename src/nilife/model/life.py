# emacs: -*- mode: python; py-indent-offset: 4; indent-tabs-mode: nil -*-
# vi: set ft=python sts=4 ts=4 sw=4 et:
#
# Copyright The NiPreps Developers <nipreps@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# We support and encourage derived works from this project, please read
# about our expectations at
#
#     https://www.nipreps.org/community/licensing/
#
"""
Linear fascicle evaluation models.

The evaluation runs through immutable stages::

    ForwardModel  --fit-->  FittedModel  --reduce-->  FittedModel (reduced)

Every stage is a new value; none of them is updated in place, so fascicle indices,
weights and matrix columns stay aligned at all times.

"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from warnings import warn

import attrs
import numpy as np
import numpy.typing as npt
from scipy import sparse

from nilife.data.base import ImageGrid, _data_repr, _readonly
from nilife.data.dmri import DWI
from nilife.data.tractogram import Connectome, as_fascicle_indices
from nilife.exceptions import GeometryMismatch, IndexOutOfRange
from nilife.model.solver import FitResult, SolverConfig, solve_nnls

MODEL_SHAPE_ERROR_MSG = """\
Inconsistent forward model: matrix {matrix}, {n_voxels} voxels x {n_directions} directions, \
{n_fascicles} fascicles, incidence {incidence}."""
"""Forward model consistency error message."""

FIT_SHAPE_ERROR_MSG = "Inconsistent fitted model: {what}."
"""Fitted model consistency error message."""

GRADIENTS_MISMATCH_ERROR_MSG = (
    "The gradient table of the DWI dataset does not match that of the forward model."
)
"""Acquisition mismatch error message."""


def _readonly_int(value: npt.ArrayLike) -> np.ndarray:
    return _readonly(np.asarray(value, dtype=np.intp))


def _to_csc(value: sparse.spmatrix) -> sparse.csc_matrix:
    return sparse.csc_matrix(value)


@attrs.frozen(eq=False)
class ForwardModel:
    """
    The sparse forward model of a connectome (design matrix plus its bookkeeping).

    Row ``v * n_directions + d`` of :attr:`matrix` corresponds to voxel
    ``voxel_coords[v]`` and diffusion-weighted direction ``d``; column ``f`` corresponds
    to fascicle ``f`` of :attr:`connectome`.
    The matrix must be treated as read-only.

    """

    connectome: Connectome
    """The modeled fascicles (without weights)."""
    matrix: sparse.csc_matrix = attrs.field(converter=_to_csc, repr=_data_repr)
    """The ``(V * D, F)`` design matrix."""
    voxel_coords: np.ndarray = attrs.field(converter=_readonly_int, repr=_data_repr)
    """The ``(V, 3)`` voxel indices grouping the rows of the matrix."""
    incidence: sparse.csc_matrix = attrs.field(converter=_to_csc, repr=_data_repr)
    """The ``(V, F)`` boolean matrix flagging the voxels traversed by each fascicle."""
    gradients: np.ndarray = attrs.field(converter=_readonly, repr=_data_repr)
    """The ``(D, 4)`` gradient table of the diffusion-weighted volumes."""
    evals: tuple[float, float, float] = attrs.field(converter=tuple)
    """Eigenvalues of the node response tensor."""
    grid: ImageGrid
    """The image grid of the signal."""

    def __attrs_post_init__(self) -> None:
        n_voxels = self.voxel_coords.shape[0]
        n_fascicles = len(self.connectome)
        if (
            self.matrix.shape != (n_voxels * self.n_directions, n_fascicles)
            or self.incidence.shape != (n_voxels, n_fascicles)
        ):
            raise ValueError(
                MODEL_SHAPE_ERROR_MSG.format(
                    matrix=self.matrix.shape,
                    n_voxels=n_voxels,
                    n_directions=self.n_directions,
                    n_fascicles=n_fascicles,
                    incidence=self.incidence.shape,
                )
            )

    @property
    def n_directions(self) -> int:
        return int(self.gradients.shape[0])

    @property
    def n_voxels(self) -> int:
        return int(self.voxel_coords.shape[0])

    @property
    def n_fascicles(self) -> int:
        return len(self.connectome)

    def voxel_rows(self, voxels: npt.ArrayLike) -> np.ndarray:
        """Matrix rows of the given voxel positions (indices into :attr:`voxel_coords`)."""
        voxels = np.asarray(voxels, dtype=np.intp).ravel()
        return (voxels[:, np.newaxis] * self.n_directions + np.arange(self.n_directions)).ravel()

    def traversed_voxels(self, fascicles: npt.ArrayLike) -> np.ndarray:
        """Positions (into :attr:`voxel_coords`) of the voxels traversed by ``fascicles``."""
        fascicles = np.asarray(fascicles, dtype=np.intp).ravel()
        if fascicles.size == 0:
            return np.zeros(0, dtype=np.intp)
        hits = np.asarray(self.incidence[:, fascicles].sum(axis=1)).ravel()
        return np.flatnonzero(hits)

    def select(self, indices: npt.ArrayLike) -> ForwardModel:
        """
        Subset the model to the fascicles at (sorted, unique) ``indices``.

        Rows are kept, so that the reduced model predicts the same samples.

        """
        idx = np.unique(self.connectome.check_indices(indices))
        return attrs.evolve(
            self,
            connectome=self.connectome.subset(idx),
            matrix=self.matrix[:, idx],
            incidence=self.incidence[:, idx],
        )

    def fit(
        self,
        signal: DWI,
        config: SolverConfig | None = None,
        normalize: bool = True,
        x0: npt.ArrayLike | None = None,
        progress: bool = False,
    ) -> FittedModel:
        """
        Fit the fascicle weights to the demeaned signal.

        Parameters
        ----------
        signal : :obj:`~nilife.data.dmri.DWI`
            The DWI dataset the model was built for.
        config : :obj:`~nilife.model.solver.SolverConfig`, optional
            Solver settings.
        normalize : :obj:`bool`, optional
            Fit the signal relative to :math:`S_0`.
        x0 : :obj:`~numpy.ndarray`, optional
            Initial weights.
        progress : :obj:`bool`, optional
            Show a progress bar.

        Returns
        -------
        :obj:`~nilife.model.life.FittedModel`
            The fitted model.

        """
        if tuple(signal.shape3d) != tuple(self.grid.shape) or not np.allclose(
            signal.affine, self.grid.affine, atol=1e-4
        ):
            raise GeometryMismatch("The DWI grid does not match the grid of the forward model.")

        if signal.gradients.shape != self.gradients.shape or not np.allclose(
            signal.gradients, self.gradients
        ):
            raise ValueError(GRADIENTS_MISMATCH_ERROR_MSG)

        demeaned, mean, S0 = signal.demeaned_signal(self.voxel_coords, normalize=normalize)
        result = solve_nnls(self.matrix, demeaned.ravel(), config=config, x0=x0, progress=progress)
        return FittedModel(
            forward=self,
            signal=demeaned.ravel(),
            mean_signal=mean,
            S0=S0,
            fit=result,
            kept_indices=np.arange(self.n_fascicles),
            n_original=self.n_fascicles,
        )


@attrs.frozen(eq=False)
class FittedModel:
    """A forward model together with the signal it was fit to and the estimated weights."""

    forward: ForwardModel
    """The forward model."""
    signal: np.ndarray = attrs.field(converter=_readonly, repr=_data_repr)
    """The ``(V * D,)`` demeaned signal, in the row order of the matrix."""
    mean_signal: np.ndarray = attrs.field(converter=_readonly, repr=_data_repr)
    """The ``(V,)`` mean (relative) signal removed by demeaning."""
    S0: np.ndarray = attrs.field(converter=_readonly, repr=_data_repr)
    """The ``(V,)`` reference signal used for normalization."""
    fit: FitResult
    """Weights and solver diagnostics."""
    kept_indices: np.ndarray = attrs.field(converter=_readonly_int, repr=_data_repr)
    """Indices of the modeled fascicles in the original (unreduced) connectome."""
    n_original: int = attrs.field(converter=int)
    """Number of fascicles of the original (unreduced) connectome."""

    def __attrs_post_init__(self) -> None:
        n_fascicles = self.forward.n_fascicles
        n_voxels = self.forward.n_voxels
        if self.fit.weights.shape != (n_fascicles,):
            raise ValueError(FIT_SHAPE_ERROR_MSG.format(what="weights vs. fascicles"))
        if self.kept_indices.shape != (n_fascicles,):
            raise ValueError(FIT_SHAPE_ERROR_MSG.format(what="kept indices vs. fascicles"))
        if self.signal.shape != (self.forward.matrix.shape[0],):
            raise ValueError(FIT_SHAPE_ERROR_MSG.format(what="signal vs. matrix rows"))
        if self.mean_signal.shape != (n_voxels,) or self.S0.shape != (n_voxels,):
            raise ValueError(FIT_SHAPE_ERROR_MSG.format(what="per-voxel arrays vs. voxels"))

    @property
    def weights(self) -> np.ndarray:
        return self.fit.weights

    @property
    def converged(self) -> bool:
        return self.fit.converged

    @property
    def connectome(self) -> Connectome:
        """The modeled connectome, carrying the fitted weights."""
        return self.forward.connectome.with_weights(self.weights)

    @property
    def is_reduced(self) -> bool:
        return self.forward.n_fascicles != self.n_original

    def _check_weights(self, weights: npt.ArrayLike | None) -> np.ndarray:
        if weights is None:
            return self.weights
        weights = np.asarray(weights, dtype=float).ravel()
        if weights.shape != (self.forward.n_fascicles,):
            raise ValueError(
                f"Expected {self.forward.n_fascicles} weights; got {weights.shape[0]}."
            )
        return weights

    def predict(self, weights: npt.ArrayLike | None = None) -> np.ndarray:
        """Predict the demeaned signal (flattened, in the row order of the matrix)."""
        return np.asarray(self.forward.matrix @ self._check_weights(weights)).ravel()

    def predict_signal(self, weights: npt.ArrayLike | None = None) -> np.ndarray:
        """Predict the diffusion-weighted signal, restoring the mean and :math:`S_0`."""
        shape = (self.forward.n_voxels, self.forward.n_directions)
        demeaned = self.predict(weights).reshape(shape)
        return (demeaned + self.mean_signal[:, np.newaxis]) * self.S0[:, np.newaxis]

    def residuals(self, weights: npt.ArrayLike | None = None) -> np.ndarray:
        """Prediction error (prediction minus signal) for every sample."""
        return self.predict(weights) - self.signal

    def voxel_rmse(self, weights: npt.ArrayLike | None = None) -> np.ndarray:
        """Root-mean-squared prediction error of each voxel across directions."""
        errors = self.residuals(weights).reshape(self.forward.n_voxels, self.forward.n_directions)
        return np.sqrt(np.mean(errors**2, axis=-1))

    def r2(self, weights: npt.ArrayLike | None = None) -> float:
        """Fraction of the demeaned signal variance explained by the model."""
        total = float(self.signal @ self.signal)
        if total == 0:
            return float("nan")
        residuals = self.residuals(weights)
        return 1.0 - float(residuals @ residuals) / total

    def rmse_map(self, weights: npt.ArrayLike | None = None, fill: float = np.nan) -> np.ndarray:
        """Write :meth:`voxel_rmse` into a volume defined on the signal grid."""
        volume = np.full(self.forward.grid.shape, fill, dtype=float)
        coords = self.forward.voxel_coords
        volume[coords[:, 0], coords[:, 1], coords[:, 2]] = self.voxel_rmse(weights)
        return volume

    def reduce(
        self,
        threshold: float = 0.0,
        predicate: Callable[[np.ndarray], np.ndarray] | None = None,
    ) -> FittedModel:
        """Shorthand for :func:`reduce_model`."""
        return reduce_model(self, threshold=threshold, predicate=predicate)

    def summary(self) -> dict:
        """Diagnostics of the fit, suitable for serialization."""
        r2 = self.r2()
        return self.fit.to_dict() | {
            "n_fascicles": self.forward.n_fascicles,
            "n_original": self.n_original,
            "n_voxels": self.forward.n_voxels,
            "n_directions": self.forward.n_directions,
            "r2": r2 if np.isfinite(r2) else None,
        }


def reduce_model(
    fitted: FittedModel,
    threshold: float = 0.0,
    predicate: Callable[[np.ndarray], np.ndarray] | None = None,
) -> FittedModel:
    """
    Keep only the fascicles whose weight satisfies a predicate.

    By default, fascicles with ``w > threshold`` are retained.
    The filter is stable: retained fascicles keep their relative order and are re-indexed
    contiguously from 0.
    Fascicles, weights, matrix columns and incidence columns are subset consistently, and the
    rows of the model are preserved.
    The input model is not modified.

    Parameters
    ----------
    fitted : :obj:`~nilife.model.life.FittedModel`
        A fitted model.
    threshold : :obj:`float`, optional
        Weight threshold.
    predicate : :obj:`callable`, optional
        A function mapping the weights to a boolean mask; overrides ``threshold``.

    Returns
    -------
    :obj:`~nilife.model.life.FittedModel`
        The reduced model. Its ``kept_indices`` map back to the original connectome.

    """
    if not fitted.converged:
        warn(
            "Reducing a connectome whose weights did not converge; the selection is provisional.",
            UserWarning,
            stacklevel=2,
        )

    _, kept = fitted.connectome.reduce(threshold=threshold, predicate=predicate)
    return attrs.evolve(
        fitted,
        forward=fitted.forward.select(kept),
        fit=attrs.evolve(fitted.fit, weights=fitted.weights[kept]),
        kept_indices=fitted.kept_indices[kept],
    )


def to_original_indices(fitted: FittedModel, indices: Sequence[int]) -> np.ndarray:
    """Translate fascicle indices of a (reduced) model into indices of the original connectome."""
    return fitted.kept_indices[fitted.forward.connectome.check_indices(indices)]


def to_model_indices(fitted: FittedModel, indices: npt.ArrayLike) -> tuple[np.ndarray, np.ndarray]:
    """
    Translate indices of the original connectome into indices of a (reduced) model.

    Returns
    -------
    model_indices : :obj:`~numpy.ndarray`
        Positions of the retained fascicles in the model.
    pruned : :obj:`~numpy.ndarray`
        Original indices that were removed by reduction.

    Raises
    ------
    :exc:`~nilife.exceptions.InvalidIndex`
        If any value is not an integer.
    :exc:`~nilife.exceptions.IndexOutOfRange`
        If an index falls outside the original connectome.

    """
    idx = as_fascicle_indices(indices)
    if idx.size and (np.any(idx < 0) or np.any(idx >= fitted.n_original)):
        invalid = idx[(idx < 0) | (idx >= fitted.n_original)]
        raise IndexOutOfRange(
            f"Fascicle indices {sorted(set(invalid.tolist()))} are out of range for the "
            f"original connectome of {fitted.n_original} fascicles."
        )

    pos = np.searchsorted(fitted.kept_indices, idx)
    pos = np.clip(pos, 0, max(fitted.kept_indices.shape[0] - 1, 0))
    found = (
        fitted.kept_indices[pos] == idx
        if fitted.kept_indices.size
        else np.zeros(idx.shape, dtype=bool)
    )
    return pos[found], idx[~found]
