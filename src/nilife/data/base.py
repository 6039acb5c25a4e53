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
"""Shared helpers for the in-memory data structures and their HDF5 mapping."""

from __future__ import annotations

from collections import namedtuple
from pathlib import Path
from typing import Any

import attrs
import h5py
import nibabel as nb
import numpy as np

NFDH5_EXT = ".h5"
"""Extension of *NiLiFE* HDF5 files."""

NFDH5_FORMAT = "NLFH5"
"""Value of the ``Format`` attribute of *NiLiFE* HDF5 files."""

ImageGrid = namedtuple("ImageGrid", ("shape", "affine"))

DATAOBJ_ABSENCE_ERROR_MSG = "Dataset 'dataobj' may not be None"
"""Dataset initialization dataobj absence error message."""

DATAOBJ_OBJECT_ERROR_MSG = "Dataset 'dataobj' must be an array-like object."
"""Dataset initialization dataobj object error message."""

DATAOBJ_NDIM_ERROR_MSG = "Dataset 'dataobj' must be a 4-D array-like object"
"""Dataset initialization dataobj dimensionality error message."""

AFFINE_ABSENCE_ERROR_MSG = "'affine' may not be None"
"""Affine absence error message."""

AFFINE_OBJECT_ERROR_MSG = "'affine' must be a numpy array."
"""Affine object error message."""

AFFINE_SHAPE_ERROR_MSG = "'affine' must be a 2D numpy array (4 x 4)"
"""Affine shape error message."""


def _has_ndim(value: Any, ndim: int) -> bool:
    """Check if ``value`` has ``ndim`` dimensionality.

    Examples
    --------
    >>> _has_ndim(np.zeros((2, 3)), 2)
    True
    >>> _has_ndim(np.zeros((3,)), 2)
    False

    """
    ndim_attr = getattr(value, "ndim", None)
    if ndim_attr is not None:
        try:
            return int(ndim_attr) == ndim
        except (TypeError, ValueError):
            return False

    shape = getattr(value, "shape", None)
    if shape is None:
        return False
    try:
        return len(tuple(shape)) == ndim
    except TypeError:
        return False


def _data_repr(value: Any) -> str:
    if value is None:
        return "None"

    shape = getattr(value, "shape", None)
    dtype = getattr(value, "dtype", None)
    if shape is None:
        return repr(value)

    return f"<{'x'.join(str(v) for v in tuple(shape))} ({dtype})>"


def _cmp(lh: Any, rh: Any) -> bool:
    lh_is_array = hasattr(lh, "shape")
    rh_is_array = hasattr(rh, "shape")
    if lh_is_array and rh_is_array:
        if np.shape(lh) != np.shape(rh):
            return False
        return np.allclose(np.asarray(lh), np.asarray(rh))

    if lh_is_array or rh_is_array:
        return False

    return lh == rh


def _is_array_like(value: Any) -> bool:
    """Return ``True`` when ``value`` looks like an array."""

    if value is None:
        return False

    return hasattr(value, "__getitem__") and hasattr(value, "shape") and hasattr(value, "dtype")


def _readonly(value: np.ndarray | None) -> np.ndarray | None:
    """Return a write-protected copy of ``value``."""
    if value is None:
        return None

    value = np.array(value, copy=True)
    value.flags.writeable = False
    return value


def validate_dataobj(inst: Any, attr: attrs.Attribute, value: Any) -> None:
    """Strict validator for 4D data objects (attrs-style).

    Raises
    ------
    exc:`TypeError`
        If the value is not array-like.
    exc:`ValueError`
        If the value is :obj:`None`, or not 4-dimensional.

    """
    if value is None:
        raise ValueError(DATAOBJ_ABSENCE_ERROR_MSG)

    if not _is_array_like(value):
        raise TypeError(DATAOBJ_OBJECT_ERROR_MSG)

    if not _has_ndim(value, 4):
        raise ValueError(DATAOBJ_NDIM_ERROR_MSG)


def validate_affine(inst: Any, attr: attrs.Attribute, value: Any) -> None:
    """Strict validator for affine matrices (attrs-style).

    Raises
    ------
    exc:`TypeError`
        If the value is not a :obj:`~numpy.ndarray`.
    exc:`ValueError`
        If the value is :obj:`None`, or not shaped ``(4, 4)``.

    """
    if value is None:
        raise ValueError(AFFINE_ABSENCE_ERROR_MSG)

    if not isinstance(value, np.ndarray):
        raise TypeError(AFFINE_OBJECT_ERROR_MSG)

    if value.shape != (4, 4):
        raise ValueError(AFFINE_SHAPE_ERROR_MSG)


def h5_filename(filename: Path | str) -> Path:
    """Append the HDF5 extension to ``filename`` when missing.

    Examples
    --------
    >>> h5_filename("/tmp/sub-01_connectome")
    PosixPath('/tmp/sub-01_connectome.h5')
    >>> h5_filename("/tmp/sub-01_connectome.h5")
    PosixPath('/tmp/sub-01_connectome.h5')

    """
    filename = Path(filename)
    if not filename.name.endswith(NFDH5_EXT):
        filename = filename.parent / f"{filename.name}{NFDH5_EXT}"
    return filename


def write_h5_root(
    out_file: h5py.File,
    data_type: str,
    compression: str | None = None,
    compression_opts: Any = None,
    **fields: Any,
) -> h5py.Group:
    """Create the ``/0`` group of a *NiLiFE* HDF5 file and store ``fields`` in it.

    Fields set to :obj:`None` are not written.

    """
    out_file.attrs["Format"] = NFDH5_FORMAT
    out_file.attrs["Version"] = np.uint16(1)
    root = out_file.create_group("/0")
    root.attrs["Type"] = data_type
    for name, value in fields.items():
        if value is None:
            continue
        root.create_dataset(
            name,
            data=value,
            compression=compression,
            compression_opts=compression_opts,
        )
    return root


def volume_to_nifti(
    data: np.ndarray,
    grid: ImageGrid,
    filename: Path | str | None = None,
) -> nb.Nifti1Image:
    """
    Wrap a 3D (or 4D) array defined on ``grid`` into a NIfTI image.

    Parameters
    ----------
    data : :obj:`~numpy.ndarray`
        Data sampled on the grid.
    grid : :obj:`~nilife.data.base.ImageGrid`
        The grid (shape and affine) the data are defined on.
    filename : :obj:`os.pathlike`, optional
        If provided, the image is also written to disk.

    Returns
    -------
    :obj:`~nibabel.nifti1.Nifti1Image`
        The NIfTI image.

    """
    if tuple(data.shape[:3]) != tuple(grid.shape[:3]):
        raise ValueError(
            f"Data shape {data.shape[:3]} does not match the image grid {tuple(grid.shape[:3])}."
        )

    hdr = nb.Nifti1Header()
    hdr.set_xyzt_units("mm")
    hdr.set_data_dtype(data.dtype)
    nii = nb.Nifti1Image(data, grid.affine, hdr)
    if filename is not None:
        nii.to_filename(filename)

    return nii
