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
"""Diffusion data, connectomes and tract classifications: in-memory representation and I/O."""

import json
from pathlib import Path
from typing import Any
from warnings import warn

import numpy as np
import yaml

from nilife.data.base import NFDH5_EXT, ImageGrid
from nilife.data.dmri import DWI
from nilife.data.tractogram import Connectome, as_fascicle_indices
from nilife.exceptions import InvalidIndex

TRACTOGRAM_EXTS = (".trk", ".tck")
"""Tractogram file extensions readable with nibabel."""

INVALID_TRACT_WARN_MSG = "Tract <{tract}> of <{filename}> has non-integer fascicle indices."
"""Invalid tract classification warning message."""


def load(
    filename: Path | str,
    brainmask_file: Path | str | None = None,
    **kwargs,
) -> DWI:
    """
    Load a DWI dataset from a NIfTI or an HDF5 file.

    Parameters
    ----------
    filename : :obj:`os.pathlike`
        The NIfTI or HDF5 file.
    brainmask_file : :obj:`os.pathlike`, optional
        A brainmask NIfTI file (ignored for HDF5 inputs, which store their own).
    **kwargs
        Gradient and reference files forwarded to :func:`~nilife.data.dmri.from_nii`.

    Returns
    -------
    :obj:`~nilife.data.dmri.DWI`
        The loaded dataset.

    Raises
    ------
    :exc:`ValueError`
        If a NIfTI file is given without a gradient table.

    """
    filename = Path(filename)
    if filename.name.endswith(NFDH5_EXT):
        return DWI.from_filename(filename)

    if not {"gradients_file", "bvec_file"} & {key for key, val in kwargs.items() if val}:
        raise ValueError("A gradient table (gradients_file or bvec_file + bval_file) is required.")

    from nilife.data.dmri import from_nii

    return from_nii(filename, brainmask_file=brainmask_file, **kwargs)


def load_connectome(
    filename: Path | str,
    reference: Path | str | ImageGrid | None = None,
) -> Connectome:
    """
    Load a connectome from a tractogram (``.trk``/``.tck``) or a *NiLiFE* HDF5 file.

    ``.tck`` files do not carry an image grid, so a ``reference`` image (or grid) is required.

    """
    filename = Path(filename)
    if filename.name.endswith(NFDH5_EXT):
        return Connectome.from_filename(filename)

    if filename.suffix in TRACTOGRAM_EXTS:
        return Connectome.from_tractogram(filename, reference=reference)

    raise ValueError(f"Unsupported connectome file <{filename}>.")


def load_classification(filename: Path | str) -> dict[str, Any]:
    """
    Load a tract classification (tract name to fascicle indices) from JSON or YAML.

    Tracts whose indices are not integers keep their raw values, so that each of them is
    reported individually when the tracts are evaluated.

    Examples
    --------
    >>> path = tmp_path / "tracts.yml"
    >>> _ = path.write_text("CST: [0, 2]\\nSLF: []\\n")
    >>> load_classification(path)
    {'CST': array([0, 2]), 'SLF': array([], dtype=int64)}

    """
    filename = Path(filename)
    text = filename.read_text()
    content = json.loads(text) if filename.suffix == ".json" else yaml.safe_load(text)
    if not isinstance(content, dict):
        raise ValueError(f"Tract classification <{filename}> must be a mapping.")

    classification = {}
    for name, indices in content.items():
        indices = indices if indices is not None else []
        try:
            classification[str(name)] = as_fascicle_indices(indices).astype(np.int64)
        except InvalidIndex:
            warn(
                INVALID_TRACT_WARN_MSG.format(tract=name, filename=filename),
                UserWarning,
                stacklevel=2,
            )
            classification[str(name)] = indices
    return classification
