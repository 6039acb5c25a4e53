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
dMRI data representation
------------------------
This submodule implements the diffusion signal model: data structures and I/O utilities
for diffusion MRI data.

**Gradient Table Representation**.
The :class:`~nilife.data.dmri.base.DWI` class must be provided a gradient table, which is
a :class:`numpy.ndarray` of shape (N, 4), where N is the number of volumes.
The first three columns represent the gradient directions (b-vectors), and the fourth column
represents the b-values in s/mm².
Non-unit b-vectors are normalized, and the corresponding b-value is adjusted to reflect
the actual diffusion weighting.

**Data Representation**.
Upon initialization, b=0 volumes are removed from the data **AND** the gradient table.
If no ``bzero`` parameter is provided, a reference low-b volume is computed as the median of all
the low-b volumes (b < 50 s/mm²) and inserted in the ``DWI.bzero`` attribute.

**Demeaned signal**.
The forward model explains the directional variation of the signal only.
:meth:`~nilife.data.dmri.base.DWI.demeaned_signal` returns, for an ordered list of voxels,
the signal relative to :math:`S_0` minus its mean across diffusion-weighted directions.
The order of the voxels is preserved, so that rows stay aligned with the design matrix.

"""

from nilife.data.dmri.base import DWI
from nilife.data.dmri.io import from_nii

__all__ = ["DWI", "from_nii"]
