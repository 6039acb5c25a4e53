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
"""Input utilities for DWI objects."""

from pathlib import Path
from warnings import warn

import numpy as np
from nibabel.spatialimages import SpatialImage

from nilife.data.dmri.base import DWI
from nilife.utils.ndimage import get_data, load_api

GRADIENT_BVAL_BVEC_PRIORITY_WARN_MSG = """\
Both a gradients table file and b-vec/val files are defined; \
ignoring b-vec/val files in favor of the gradients_file."""
"""dMRI gradient file priority warning message."""

GRADIENT_DATA_MISSING_ERROR = "No gradient data provided."
"""dMRI missing gradient data error message."""


def from_nii(
    filename: Path | str,
    brainmask_file: Path | str | None = None,
    gradients_file: Path | str | None = None,
    bvec_file: Path | str | None = None,
    bval_file: Path | str | None = None,
    b0_file: Path | str | None = None,
) -> DWI:
    """
    Load DWI data from NIfTI and construct a DWI object.

    Parameters
    ----------
    filename : :obj:`os.pathlike`
        The main DWI data file (NIfTI).
    brainmask_file : :obj:`os.pathlike`, optional
        A brainmask NIfTI file.
    gradients_file : :obj:`os.pathlike`, optional
        A text file containing the gradients table, shape (N, 4) where the last column
        stores the b-values. Column-major tables (4, N) are transposed automatically.
        If provided, it supersedes any .bvec / .bval combination.
    bvec_file : :obj:`os.pathlike`, optional
        A text file containing b-vectors, shape (N, 3) or (3, N).
    bval_file : :obj:`os.pathlike`, optional
        A text file containing b-values, shape (N,).
    b0_file : :obj:`os.pathlike`, optional
        A NIfTI file containing a b=0 reference volume.
        If not provided, it is computed from the low-b volumes of the data.

    Returns
    -------
    dwi : :obj:`~nilife.data.dmri.DWI`
        A DWI object containing the loaded data, gradient table, and optional
        b-zero volume, and brainmask.

    Raises
    ------
    :exc:`RuntimeError`
        If no gradient information is provided (neither ``gradients_file`` nor
        ``bvec_file`` + ``bval_file``).

    """
    filename = Path(filename)

    img = load_api(filename, SpatialImage)
    fulldata = get_data(img)

    if gradients_file:
        grad = np.loadtxt(gradients_file, dtype="float32")
        if bvec_file and bval_file:
            warn(GRADIENT_BVAL_BVEC_PRIORITY_WARN_MSG, stacklevel=2)
    elif bvec_file and bval_file:
        bvecs = np.loadtxt(bvec_file, dtype="float32")
        if bvecs.shape[1] != 3 and bvecs.shape[0] == 3:
            bvecs = bvecs.T

        bvals = np.loadtxt(bval_file, dtype="float32")
        grad = np.column_stack((bvecs, bvals))
    else:
        raise RuntimeError(GRADIENT_DATA_MISSING_ERROR)

    b0_data = None
    if b0_file:
        b0img = load_api(b0_file, SpatialImage)
        b0_data = np.asanyarray(b0img.dataobj)

    brainmask_data = None
    if brainmask_file:
        mask_img = load_api(brainmask_file, SpatialImage)
        brainmask_data = np.asanyarray(mask_img.dataobj, dtype=bool)

    return DWI(
        dataobj=fulldata,
        affine=np.asanyarray(img.affine, dtype=float),
        gradients=grad,
        bzero=b0_data,
        brainmask=brainmask_data,
    )
