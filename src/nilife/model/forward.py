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
r"""
Forward matrix construction.

The forward model predicts the demeaned diffusion signal :math:`y` of a set of voxels as a
non-negative combination of fascicle contributions, :math:`y = M w`.
Each node of a fascicle is modeled as a cylindrical (stick-like) tensor compartment aligned
with the local tangent of the polyline, with eigenvalues :data:`DEFAULT_EVALS`:

.. math::

    s(\mathbf{g}) = \exp\left(-b \left(\lambda_\perp + (\lambda_\parallel - \lambda_\perp)
    (\mathbf{g} \cdot \mathbf{t})^2 \right) \right),

which is demeaned across diffusion-weighted directions before being accumulated into the
column of the fascicle, at the row block of the voxel the node falls in.

The matrix has one row per voxel-direction pair (``row = voxel * n_directions + direction``)
and one column per fascicle.
Fascicles are processed independently, in chunks that may be dispatched to parallel
workers, and their partial columns are merged by voxel key.

"""

from __future__ import annotations

from collections.abc import Sequence

import nibabel as nb
import numpy as np
import numpy.typing as npt
from joblib import Parallel, delayed
from scipy import sparse
from tqdm import tqdm

from nilife.data.dmri import DWI
from nilife.data.dmri.utils import check_voxel_coords
from nilife.data.tractogram import Connectome
from nilife.exceptions import GeometryMismatch
from nilife.model.life import ForwardModel

DEFAULT_EVALS = (0.001, 0.0, 0.0)
"""Eigenvalues (mm²/s) of the stick-like tensor modeling each fascicle node."""

DEFAULT_CHUNK_SIZE = 500
"""Number of fascicles processed by each parallel task."""

GEOMETRY_ATOL = 1e-4
"""Absolute tolerance when comparing reference frames."""

GEOMETRY_AFFINE_MISMATCH_MSG = """\
The connectome reference affine does not match the affine of the DWI dataset:
{connectome}
vs.
{signal}"""
"""Reference affine mismatch error message."""

GEOMETRY_SHAPE_MISMATCH_MSG = (
    "The connectome reference grid {connectome} does not match the DWI grid {signal}."
)
"""Reference grid mismatch error message."""

GEOMETRY_NONFINITE_MSG = "Fascicle {index} contains non-finite coordinates."
"""Non-finite coordinates error message."""

EVALS_ERROR_MSG = "Fascicle response eigenvalues must be axially symmetric (λ2 == λ3) and >= 0."
"""Unsupported response tensor error message."""


def check_geometry(connectome: Connectome, signal: DWI) -> None:
    """
    Ensure the fascicles and the signal share the same reference frame.

    Raises
    ------
    :exc:`~nilife.exceptions.GeometryMismatch`
        If the grids differ, or if any coordinate is not finite.

    """
    if tuple(connectome.shape) != tuple(signal.shape3d):
        raise GeometryMismatch(
            GEOMETRY_SHAPE_MISMATCH_MSG.format(connectome=connectome.shape, signal=signal.shape3d)
        )

    if not np.allclose(connectome.affine, signal.affine, atol=GEOMETRY_ATOL):
        raise GeometryMismatch(
            GEOMETRY_AFFINE_MISMATCH_MSG.format(
                connectome=np.asarray(connectome.affine), signal=np.asarray(signal.affine)
            )
        )

    for i, fascicle in enumerate(connectome):
        if not np.all(np.isfinite(fascicle)):
            raise GeometryMismatch(GEOMETRY_NONFINITE_MSG.format(index=i))


def check_evals(evals: Sequence[float]) -> tuple[float, float, float]:
    """Validate the eigenvalues of the node response tensor."""
    _evals = tuple(float(e) for e in evals)
    if len(_evals) != 3 or not np.isclose(_evals[1], _evals[2]) or min(_evals) < 0:
        raise ValueError(EVALS_ERROR_MSG)
    return _evals  # type: ignore[return-value]


def fascicle_tangents(points: np.ndarray) -> np.ndarray:
    """
    Calculate the unit tangent at every node of a polyline.

    Tangents are estimated with central differences (one-sided at the endpoints).
    Nodes where the polyline does not advance get a null tangent.

    Examples
    --------
    >>> fascicle_tangents(np.array([[0.0, 0, 0], [1, 0, 0], [2, 0, 0]]))
    array([[1., 0., 0.],
           [1., 0., 0.],
           [1., 0., 0.]])
    >>> fascicle_tangents(np.zeros((1, 3))).shape
    (1, 3)

    """
    points = np.asarray(points, dtype=float)
    if points.shape[0] < 2:
        return np.zeros_like(points)

    tangents = np.gradient(points, axis=0)
    norms = np.linalg.norm(tangents, axis=1)
    valid = norms > np.finfo(float).eps
    tangents[valid] /= norms[valid, np.newaxis]
    tangents[~valid] = 0.0
    return tangents


def stick_signal(
    tangents: np.ndarray,
    bvals: np.ndarray,
    bvecs: np.ndarray,
    evals: Sequence[float] = DEFAULT_EVALS,
    demean: bool = True,
) -> np.ndarray:
    """
    Predict the (relative) signal of stick-like compartments along ``tangents``.

    Parameters
    ----------
    tangents : :obj:`~numpy.ndarray`
        An ``(N, 3)`` array of unit orientations.
    bvals : :obj:`~numpy.ndarray`
        The ``(D,)`` b-values of the diffusion-weighted volumes.
    bvecs : :obj:`~numpy.ndarray`
        The ``(D, 3)`` unit b-vectors of the diffusion-weighted volumes.
    evals : :obj:`tuple`, optional
        Axially-symmetric tensor eigenvalues.
    demean : :obj:`bool`, optional
        Whether the mean across directions is subtracted from each node's signal.

    Returns
    -------
    :obj:`~numpy.ndarray`
        An ``(N, D)`` array with the signal of each node.

    """
    l_par, l_perp, _ = check_evals(evals)
    cos2 = (np.asarray(tangents, dtype=float) @ np.asarray(bvecs, dtype=float).T) ** 2
    adc = l_perp + (l_par - l_perp) * cos2
    signal = np.exp(-np.asarray(bvals, dtype=float)[np.newaxis, :] * adc)
    if demean and signal.shape[1]:
        signal -= signal.mean(axis=1, keepdims=True)
    return signal


def world_to_voxel(points: np.ndarray, affine: np.ndarray) -> np.ndarray:
    """Map world coordinates to the nearest voxel indices of the grid defined by ``affine``."""
    if points.shape[0] == 0:
        return np.zeros((0, 3), dtype=np.intp)
    ijk = nb.affines.apply_affine(np.linalg.inv(affine), points)
    return np.rint(ijk).astype(np.intp)


def fascicle_column(
    points: np.ndarray,
    affine: np.ndarray,
    brainmask: np.ndarray,
    bvals: np.ndarray,
    bvecs: np.ndarray,
    evals: Sequence[float] = DEFAULT_EVALS,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Calculate the partial column of a single fascicle.

    Parameters
    ----------
    points : :obj:`~numpy.ndarray`
        The ``(N, 3)`` world coordinates of the fascicle.
    affine : :obj:`~numpy.ndarray`
        Voxel-to-world affine of the grid.
    brainmask : :obj:`~numpy.ndarray`
        Boolean 3D mask of the voxels that may be modeled.
    bvals, bvecs : :obj:`~numpy.ndarray`
        The diffusion-weighted gradient table.
    evals : :obj:`tuple`, optional
        Eigenvalues of the node response tensor.

    Returns
    -------
    voxels : :obj:`~numpy.ndarray`
        The ``(K, 3)`` unique voxels traversed within the mask, lexicographically sorted.
    block : :obj:`~numpy.ndarray`
        The ``(K, D)`` accumulated demeaned signal of the nodes in each voxel.

    """
    n_dirs = len(bvals)
    empty = (np.zeros((0, 3), dtype=np.intp), np.zeros((0, n_dirs)))
    if points.shape[0] < 2:
        return empty

    tangents = fascicle_tangents(points)
    ijk = world_to_voxel(points, affine)

    inside = np.all((ijk >= 0) & (ijk < np.asarray(brainmask.shape)), axis=1)
    inside[inside] = brainmask[ijk[inside, 0], ijk[inside, 1], ijk[inside, 2]]
    if not np.any(inside):
        return empty

    voxels, inverse = np.unique(ijk[inside], axis=0, return_inverse=True)
    block = np.zeros((voxels.shape[0], n_dirs))
    # A fascicle revisiting a voxel accumulates all its nodes in there
    np.add.at(block, inverse.ravel(), stick_signal(tangents[inside], bvals, bvecs, evals))
    return voxels, block


def _exec_chunk(fascicles, start, affine, brainmask, bvals, bvecs, evals):
    """Calculate the partial columns of a chunk of consecutive fascicles."""
    return start, [
        fascicle_column(points, affine, brainmask, bvals, bvecs, evals) for points in fascicles
    ]


def _voxel_keys(voxels: np.ndarray, shape: tuple[int, int, int]) -> np.ndarray:
    return np.ravel_multi_index(tuple(voxels.T), shape) if voxels.size else np.zeros(0, int)


def build_forward_model(
    connectome: Connectome,
    signal: DWI,
    evals: Sequence[float] = DEFAULT_EVALS,
    voxel_coords: npt.ArrayLike | None = None,
    n_jobs: int | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    progress: bool = False,
) -> ForwardModel:
    """
    Build the sparse forward model of a connectome.

    Parameters
    ----------
    connectome : :obj:`~nilife.data.tractogram.Connectome`
        The candidate fascicles. Their reference frame must match the signal's.
    signal : :obj:`~nilife.data.dmri.DWI`
        The diffusion dataset providing the acquisition geometry (gradients, grid, and mask).
    evals : :obj:`tuple`, optional
        Eigenvalues of the node response tensor.
    voxel_coords : :obj:`~numpy.ndarray`, optional
        Pin the rows of the model to these ``(V, 3)`` voxels (in the given order).
        By default, rows are the sorted, unique voxels traversed by the connectome.
        Nodes falling in voxels outside the pinned set are not modeled.
    n_jobs : :obj:`int`, optional
        Number of parallel workers.
    chunk_size : :obj:`int`, optional
        Number of fascicles per parallel task.
    progress : :obj:`bool`, optional
        Show a progress bar.

    Returns
    -------
    :obj:`~nilife.model.life.ForwardModel`
        The forward model.

    Raises
    ------
    :exc:`~nilife.exceptions.GeometryMismatch`
        If the connectome is not in the reference frame of the signal.

    Notes
    -----
    Fascicles with fewer than two points, or without any node inside the mask, get an
    all-zero column (and no incidence) but are kept, so that ``n_fascicles`` always equals
    the size of the connectome.

    A polyline of zero length (all of its points repeated) is the one exception to
    "the column is zero only if the fascicle traverses no masked voxel": its nodes have
    null tangents, whose response is isotropic and vanishes once demeaned.
    Such a fascicle is flagged in the incidence of the voxels it sits in, while its
    column is zero there.

    """
    check_geometry(connectome, signal)
    evals = check_evals(evals)
    n_jobs = n_jobs or 1

    shape = signal.shape3d
    brainmask = (
        np.ones(shape, dtype=bool) if signal.brainmask is None else np.asarray(signal.brainmask)
    )
    bvals = np.asarray(signal.bvals, dtype=float)
    bvecs = np.asarray(signal.bvecs, dtype=float)
    n_dirs = bvals.shape[0]
    n_fascicles = len(connectome)
    affine = np.asarray(connectome.affine)

    chunk_size = max(int(chunk_size), 1)
    chunks = tqdm(
        [
            (connectome.fascicles[start : start + chunk_size], start)
            for start in range(0, n_fascicles, chunk_size)
        ],
        unit="chunks",
        disable=not progress,
    )

    # One single CPU - linear execution
    if n_jobs == 1:
        results = [
            _exec_chunk(fascicles, start, affine, brainmask, bvals, bvecs, evals)
            for fascicles, start in chunks
        ]
    else:
        with Parallel(n_jobs=n_jobs) as executor:
            results = executor(
                delayed(_exec_chunk)(fascicles, start, affine, brainmask, bvals, bvecs, evals)
                for fascicles, start in chunks
            )

    # Merge partial columns deterministically, in fascicle order
    columns: list[tuple[np.ndarray, np.ndarray]] = [None] * n_fascicles  # type: ignore[list-item]
    for start, chunk in results:
        columns[start : start + len(chunk)] = chunk

    keys = [_voxel_keys(voxels, shape) for voxels, _ in columns]

    if voxel_coords is None:
        all_keys = np.unique(np.concatenate(keys)) if keys else np.zeros(0, dtype=int)
        coords = np.column_stack(np.unravel_index(all_keys, shape)).astype(np.intp)
        coords = coords.reshape(-1, 3)
        order = np.arange(all_keys.shape[0])
        sorted_keys = all_keys
    else:
        coords = check_voxel_coords(voxel_coords)
        if not np.all(signal.in_grid(coords)):
            raise GeometryMismatch("Pinned voxel coordinates fall outside the DWI grid.")
        pinned_keys = _voxel_keys(coords, shape)
        order = np.argsort(pinned_keys, kind="stable")
        sorted_keys = pinned_keys[order]

    rows, cols, data = [], [], []
    inc_rows, inc_cols = [], []
    for f, ((_, block), fkeys) in enumerate(zip(columns, keys, strict=True)):
        if fkeys.size == 0:
            continue

        pos = np.searchsorted(sorted_keys, fkeys)
        pos = np.clip(pos, 0, max(sorted_keys.shape[0] - 1, 0))
        found = sorted_keys[pos] == fkeys if sorted_keys.size else np.zeros_like(fkeys, bool)
        if not np.any(found):
            continue

        vrows = order[pos[found]]
        inc_rows.append(vrows)
        inc_cols.append(np.full(vrows.shape[0], f))
        rows.append((vrows[:, np.newaxis] * n_dirs + np.arange(n_dirs)).ravel())
        cols.append(np.full(vrows.shape[0] * n_dirs, f))
        data.append(block[found].ravel())

    n_voxels = coords.shape[0]

    def _concat(parts, dtype):
        return np.concatenate(parts).astype(dtype) if parts else np.zeros(0, dtype=dtype)

    matrix = sparse.csc_matrix(
        (_concat(data, float), (_concat(rows, np.intp), _concat(cols, np.intp))),
        shape=(n_voxels * n_dirs, n_fascicles),
    )
    matrix.eliminate_zeros()

    inc_rows_arr = _concat(inc_rows, np.intp)
    incidence = sparse.csc_matrix(
        (
            np.ones(inc_rows_arr.shape[0], dtype=bool),
            (inc_rows_arr, _concat(inc_cols, np.intp)),
        ),
        shape=(n_voxels, n_fascicles),
    )

    return ForwardModel(
        connectome=connectome.with_weights(None),
        matrix=matrix,
        voxel_coords=coords,
        incidence=incidence,
        gradients=signal.gradients,
        evals=evals,
        grid=signal.grid,
    )
