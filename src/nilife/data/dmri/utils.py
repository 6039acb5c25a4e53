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
"""Gradient-table and voxel-indexing utilities for dMRI data."""

from __future__ import annotations

import numpy as np
import numpy.typing as npt
from dipy.core.gradients import GradientTable, gradient_table_from_bvals_bvecs

DEFAULT_GRADIENT_ATOL = 1e-2
"""Absolute dissimmilarity tolerance to trigger b-vector normalization."""

DEFAULT_LOWB_THRESHOLD = 50
"""The lower bound for the b-value so that the orientation is considered a DW volume."""

DEFAULT_MIN_S0 = 1e-5
"""Minimum value when considering the :math:`S_{0}` DWI signal."""

DTI_MIN_ORIENTATIONS = 6
"""Minimum number of nonzero b-values in a DWI dataset."""

GRADIENT_ABSENCE_ERROR_MSG = "No gradient table was provided."
"""Gradient absence error message."""

GRADIENT_EXPECTED_COLUMNS_ERROR_MSG = (
    "Gradient table must have four columns (3 direction components and one b-value)."
)
"""dMRI gradient expected columns error message."""

GRADIENT_OBJECT_ERROR_MSG = "Gradient table must be a numeric homogeneous array-like object"
"""Gradient object error message."""

GRADIENT_NDIM_ERROR_MSG = "Gradient table must be a 2D array"
"""dMRI gradient dimensionality error message."""

GRADIENT_VOLUME_DIMENSIONALITY_MISMATCH_ERROR = """\
Gradient table shape does not match the number of diffusion volumes: \
expected {n_volumes} rows, found {n_gradients}."""
"""dMRI volume count vs. gradient count mismatch error message."""

VOXEL_COORDS_SHAPE_ERROR_MSG = "Voxel coordinates must be an integer array of shape (V, 3)."
"""Voxel coordinates shape error message."""


def format_gradients(
    value: npt.ArrayLike | None,
    norm_atol: float = DEFAULT_GRADIENT_ATOL,
) -> np.ndarray:
    """
    Validate and orient gradient tables to row-major convention.

    B-vectors are normalized to unit length, and the corresponding b-value is scaled
    by the original norm. Near-zero b-vectors are zeroed out altogether (i.e., b=0).

    Parameters
    ----------
    value : :obj:`ArrayLike`
        The value to format.
    norm_atol : :obj:`float`, optional
        Absolute tolerance to consider a b-vector as unitary or b=0.

    Returns
    -------
    :obj:`~numpy.ndarray`
        Row-major, floating point gradient table of shape ``(N, 4)``.

    Raises
    ------
    exc:`ValueError`
        If ``value`` is missing, not 2D, or does not have four columns.
    exc:`TypeError`
        If ``value`` cannot be converted into a numeric array.

    Examples
    --------
    Column-major inputs are transposed::

        >>> format_gradients([[1, 0], [0, 1], [0, 0], [1000, 2000]])
        array([[1.e+00, 0.e+00, 0.e+00, 1.e+03],
               [0.e+00, 1.e+00, 0.e+00, 2.e+03]])

    Oversized b-vectors are normalized and the b-value is scaled accordingly::

        >>> format_gradients([[2.0, 0.0, 0.0, 1000]])
        array([[1.e+00, 0.e+00, 0.e+00, 2.e+03]])

    Near-zero b-vectors are suppressed to treat them as b0 measurements::

        >>> format_gradients([[1e-9, 0.0, 0.0, 1200], [1.0, 0.0, 0.0, 1000]])
        array([[   0.,    0.,    0.,    0.],
               [   1.,    0.,    0., 1000.]])

    Passing ``None`` raises the absence error::

        >>> format_gradients(None)
        Traceback (most recent call last):
        ...
        ValueError: No gradient table was provided.

    """

    if value is None:
        raise ValueError(GRADIENT_ABSENCE_ERROR_MSG)

    try:
        formatted = np.array(value, dtype=float)
    except (TypeError, ValueError) as exc:
        raise TypeError(GRADIENT_OBJECT_ERROR_MSG) from exc

    if formatted.ndim != 2:
        raise ValueError(GRADIENT_NDIM_ERROR_MSG)

    # Transpose if column-major
    formatted = formatted.T if formatted.shape[0] == 4 and formatted.shape[1] != 4 else formatted

    if formatted.shape[1] != 4:
        raise ValueError(GRADIENT_EXPECTED_COLUMNS_ERROR_MSG)

    if not np.all(np.isfinite(formatted)):
        raise ValueError("Gradient table contains NaN or infinite values.")

    bvecs = formatted[:, :3]
    norms = np.linalg.norm(bvecs, axis=1)
    b0mask = np.isclose(norms, 0.0, atol=norm_atol)
    mask = ~np.isclose(norms, 1.0, atol=norm_atol) & ~b0mask
    if np.any(mask):
        formatted[mask, 3] *= norms[mask]
        formatted[mask, :3] = bvecs[mask] / norms[mask, None]

    formatted[b0mask, :] = 0
    return formatted


def to_gradient_table(gradients: np.ndarray) -> GradientTable:
    """Convert a ``(N, 4)`` *NiLiFE* gradient table into a DIPY one."""
    gradients = np.asarray(gradients, dtype=float)
    return gradient_table_from_bvals_bvecs(
        gradients[:, -1],
        gradients[:, :-1],
        b0_threshold=DEFAULT_LOWB_THRESHOLD,
    )


def check_voxel_coords(voxel_coords: npt.ArrayLike) -> np.ndarray:
    """Return ``voxel_coords`` as a ``(V, 3)`` integer array.

    Examples
    --------
    >>> check_voxel_coords([[0, 1, 2]])
    array([[0, 1, 2]])
    >>> check_voxel_coords(np.zeros((0, 3))).shape
    (0, 3)
    >>> check_voxel_coords([0, 1, 2])
    Traceback (most recent call last):
    ...
    ValueError: Voxel coordinates must be an integer array of shape (V, 3).

    """
    coords = np.asarray(voxel_coords)
    if coords.ndim != 2 or coords.shape[1] != 3:
        raise ValueError(VOXEL_COORDS_SHAPE_ERROR_MSG)

    if coords.size and not np.allclose(coords, np.rint(coords)):
        raise ValueError(VOXEL_COORDS_SHAPE_ERROR_MSG)

    return np.rint(coords).astype(np.intp)
