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
"""Utilities for testing purposes."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import numpy.typing as npt
from dipy.core.sphere import HemiSphere, disperse_charges

from nilife.data.dmri import DWI
from nilife.data.dmri.utils import DEFAULT_LOWB_THRESHOLD
from nilife.data.tractogram import Connectome
from nilife.model.forward import DEFAULT_EVALS, fascicle_tangents, stick_signal, world_to_voxel

DEFAULT_S0 = 100.0
"""Simulated non-diffusion-weighted signal."""

DEFAULT_ISOTROPIC = 0.2
"""Simulated isotropic (fascicle-independent) relative signal."""


def add_b0(bvals: np.ndarray, bvecs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Insert a b=0 at the front of the gradient table (b-values and b-vectors).

    Parameters
    ----------
    bvals : :obj:`~numpy.ndarray`
        Array of b-values.
    bvecs : :obj:`~numpy.ndarray`
        Array of b-vectors.

    Returns
    -------
    :obj:`tuple`
        Updated gradient table (b-values, b-vectors) including a b=0.

    """
    _bvals = np.insert(bvals, 0, 0)
    _bvecs = np.insert(bvecs, 0, np.array([0, 0, 0]), axis=0)
    return _bvals, _bvecs


def create_random_polar_coordinates(
    hsph_dirs: int, seed: int = 1234
) -> tuple[np.ndarray, np.ndarray]:
    """
    Create random polar coordinates.

    Parameters
    ----------
    hsph_dirs : :obj:`int`
        Number of hemisphere directions.
    seed : :obj:`int`, optional
        Seed for the random number generator.

    Returns
    -------
    :obj:`tuple`
        Theta and Phi values of polar coordinates.

    """
    rng = np.random.default_rng(seed)
    theta = np.pi * rng.random(hsph_dirs)
    phi = 2 * np.pi * rng.random(hsph_dirs)
    return theta, phi


def create_diffusion_encoding_gradient_dirs(
    hsph_dirs: int, iterations: int = 500, seed: int = 1234
) -> np.ndarray:
    """
    Create evenly distributed dMRI gradient-encoding directions on a hemisphere.

    Parameters
    ----------
    hsph_dirs : :obj:`int`
        Number of hemisphere directions.
    iterations : :obj:`int`, optional
        Number of iterations for charge dispersion.
    seed : :obj:`int`, optional
        Seed for the random number generator.

    Returns
    -------
    :obj:`~numpy.ndarray`
        A ``(hsph_dirs, 3)`` array of unit vectors.

    """
    # Create the gradient-encoding directions placing random points on a hemisphere
    theta, phi = create_random_polar_coordinates(hsph_dirs, seed=seed)
    hsph_initial = HemiSphere(theta=theta, phi=phi)

    # Move the points so that the electrostatic potential energy is minimized
    hsph_updated, _ = disperse_charges(hsph_initial, iterations)
    return hsph_updated.vertices


def create_single_shell_gradients(
    hsph_dirs: int = 32, bval_shell: float = 1000.0, iterations: int = 500
) -> np.ndarray:
    """
    Create a single-shell gradient table preceded by one b=0.

    Returns
    -------
    :obj:`~numpy.ndarray`
        An ``(hsph_dirs + 1, 4)`` gradient table in RAS+B format.

    """
    bvecs = create_diffusion_encoding_gradient_dirs(hsph_dirs, iterations=iterations)
    bvals, bvecs = add_b0(np.full(bvecs.shape[0], bval_shell), bvecs)
    return np.hstack((bvecs, bvals[:, np.newaxis]))


def straight_fascicle(
    start: npt.ArrayLike,
    stop: npt.ArrayLike,
    n_points: int = 20,
) -> np.ndarray:
    """
    Sample a straight fascicle between two points.

    Examples
    --------
    >>> straight_fascicle([0, 0, 0], [3, 0, 0], n_points=4)
    array([[0., 0., 0.],
           [1., 0., 0.],
           [2., 0., 0.],
           [3., 0., 0.]])

    """
    return np.linspace(np.asarray(start, dtype=float), np.asarray(stop, dtype=float), n_points)


def simulate_dwi(
    connectome: Connectome,
    gradients: np.ndarray,
    weights: npt.ArrayLike,
    S0: float = DEFAULT_S0,
    isotropic: float = DEFAULT_ISOTROPIC,
    evals: Sequence[float] = DEFAULT_EVALS,
    brainmask: np.ndarray | None = None,
    snr: float | None = None,
    rng: np.random.Generator | None = None,
) -> DWI:
    r"""
    Simulate the DWI data generated by a weighted connectome.

    Every node of every fascicle contributes a stick-like compartment aligned with the
    local tangent, scaled by the weight of its fascicle:

    .. math::

        S(v, \mathbf{g}) = S_0 \left(\iota + \sum_f w_f \sum_{n \in f \cap v}
        s_n(\mathbf{g}) \right).

    The isotropic term :math:`\iota` is constant across directions and vanishes when the
    signal is demeaned, so that (without noise) the demeaned relative signal equals the
    prediction of the forward model with weights ``w``.

    Parameters
    ----------
    connectome : :obj:`~nilife.data.tractogram.Connectome`
        The fascicles generating the signal; they define the image grid.
    gradients : :obj:`~numpy.ndarray`
        An ``(N, 4)`` gradient table, whose low-b rows yield the :math:`S_0` reference.
    weights : :obj:`~numpy.ndarray`
        The weight of each fascicle.
    S0 : :obj:`float`, optional
        The non-diffusion-weighted signal.
    isotropic : :obj:`float`, optional
        Isotropic relative signal.
    evals : :obj:`tuple`, optional
        Eigenvalues of the node compartments.
    brainmask : :obj:`~numpy.ndarray`, optional
        The brain mask of the dataset (all voxels by default).
    snr : :obj:`float`, optional
        Signal-to-noise ratio with respect to :math:`S_0`; no noise is added if ``None``.
    rng : :obj:`~numpy.random.Generator`, optional
        Random number generator used for the noise.

    Returns
    -------
    :obj:`~nilife.data.dmri.DWI`
        The simulated dataset.

    """
    gradients = np.asarray(gradients, dtype=float)
    weights = np.asarray(weights, dtype=float).ravel()
    if weights.shape != (len(connectome),):
        raise ValueError("One weight per fascicle is required.")

    bvals = gradients[:, -1]
    bvecs = gradients[:, :-1]
    shape = tuple(connectome.shape)
    relative = np.full(shape + (gradients.shape[0],), isotropic, dtype=float)

    for points, weight in zip(connectome, weights, strict=True):
        if points.shape[0] < 2 or weight == 0:
            continue

        ijk = world_to_voxel(points, connectome.affine)
        inside = np.all((ijk >= 0) & (ijk < np.asarray(shape)), axis=1)
        signal = stick_signal(
            fascicle_tangents(points)[inside], bvals, bvecs, evals=evals, demean=False
        )
        np.add.at(relative, tuple(ijk[inside].T), weight * signal)

    data = S0 * relative
    data[..., bvals <= DEFAULT_LOWB_THRESHOLD] = S0

    if snr is not None:
        rng = rng if rng is not None else np.random.default_rng()
        data += rng.normal(scale=S0 / snr, size=data.shape)

    return DWI(
        dataobj=data,
        affine=np.asarray(connectome.affine),
        gradients=gradients,
        brainmask=np.ones(shape, dtype=bool) if brainmask is None else brainmask,
    )
