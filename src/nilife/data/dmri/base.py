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
"""DWI data representation type."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from warnings import warn

import attrs
import h5py
import numpy as np
import numpy.typing as npt
from dipy.core.gradients import GradientTable
from typing_extensions import Self

from nilife.data.base import (
    ImageGrid,
    _cmp,
    _data_repr,
    h5_filename,
    validate_affine,
    validate_dataobj,
    write_h5_root,
)
from nilife.data.dmri.utils import (
    DEFAULT_LOWB_THRESHOLD,
    DEFAULT_MIN_S0,
    DTI_MIN_ORIENTATIONS,
    GRADIENT_VOLUME_DIMENSIONALITY_MISMATCH_ERROR,
    check_voxel_coords,
    format_gradients,
    to_gradient_table,
)

BRAINMASK_SHAPE_MISMATCH_ERROR_MSG = (
    "DWI 'brainmask' shape ({brainmask_shape}) does not match dataset volumes ({data_shape})."
)
"""DWI brainmask shape mismatch error message."""

BZERO_SHAPE_MISMATCH_ERROR_MSG = """\
DWI 'bzero' shape ({bzero_shape}) does not match dataset volumes ({data_shape}). \
If you have multiple b0 volumes, either provide one of them or provide a single, \
representative b0."""
"""DWI bzero shape mismatch error message."""

DWI_B0_MULTIPLE_VOLUMES_WARN_MSG = """\
The DWI data contains multiple b0 volumes; computing median across them."""
"""DWI multiple b0 warning message."""

DWI_REDUNDANT_B0_WARN_MSG = """\
The DWI data contains b0 volumes, but the 'bzero' attribute was set. DWI b0 \
volumes will be discarded, and the corresponding 'dataobj' and 'gradient' data \
removed."""
"""DWI b0 and bzero provided warning message."""

DWI_MISSING_B0_WARN_MSG = """\
The DWI data has no b0 reference; the signal will not be normalized by S0."""
"""DWI missing b0 warning message."""

VOXEL_OUTSIDE_GRID_ERROR_MSG = "Voxel coordinates fall outside the image grid {shape}."
"""Voxel coordinates out of grid error message."""


def _bool_or_none(value: Any) -> np.ndarray | None:
    return None if value is None else np.asanyarray(value, dtype=bool)


@attrs.define(slots=True, eq=False)
class DWI:
    """
    Data representation structure for dMRI data.

    The structure holds the diffusion-weighted (DW) volumes only: low-b frames found in
    ``dataobj`` are collapsed into the :attr:`bzero` reference and removed, together with
    their rows of the gradient table.
    The signal of each voxel can then be retrieved for an explicit, ordered list of voxels,
    which is how the forward model groups the rows of its design matrix.

    """

    dataobj: np.ndarray = attrs.field(
        default=None, repr=_data_repr, eq=attrs.cmp_using(eq=_cmp), validator=validate_dataobj
    )
    """A 4D array-like object for the data array."""
    affine: np.ndarray = attrs.field(
        default=None, repr=_data_repr, eq=attrs.cmp_using(eq=_cmp), validator=validate_affine
    )
    """Best affine for voxel-to-RAS conversion of coordinates (NIfTI header)."""
    gradients: np.ndarray = attrs.field(
        default=None,
        repr=_data_repr,
        eq=attrs.cmp_using(eq=_cmp),
        converter=format_gradients,
    )
    """A 2D numpy array of the gradient table (``N`` orientations x 4 components)."""
    brainmask: np.ndarray | None = attrs.field(
        default=None, repr=_data_repr, eq=attrs.cmp_using(eq=_cmp), converter=_bool_or_none
    )
    """A boolean ndarray object containing a corresponding brainmask."""
    bzero: np.ndarray | None = attrs.field(
        default=None, repr=_data_repr, eq=attrs.cmp_using(eq=_cmp)
    )
    """A *b=0* reference map, computed automatically when low-b frames are present."""

    def __attrs_post_init__(self) -> None:
        data_shape = tuple(self.dataobj.shape[:3])

        if self.brainmask is not None and self.brainmask.shape != data_shape:
            raise ValueError(
                BRAINMASK_SHAPE_MISMATCH_ERROR_MSG.format(
                    brainmask_shape=self.brainmask.shape, data_shape=data_shape
                )
            )

        if self.dataobj.shape[-1] != self.gradients.shape[0]:
            raise ValueError(
                GRADIENT_VOLUME_DIMENSIONALITY_MISMATCH_ERROR.format(
                    n_volumes=self.dataobj.shape[-1],
                    n_gradients=self.gradients.shape[0],
                )
            )

        if self.bzero is not None:
            self.bzero = np.asanyarray(self.bzero)
            if self.bzero.shape != data_shape:
                raise ValueError(
                    BZERO_SHAPE_MISMATCH_ERROR_MSG.format(
                        bzero_shape=self.bzero.shape, data_shape=data_shape
                    )
                )

        b0_mask = self.gradients[:, -1] <= DEFAULT_LOWB_THRESHOLD
        b0_num = int(np.sum(b0_mask))

        if b0_num > 0 and self.bzero is None:
            if b0_num > 1:
                warn(DWI_B0_MULTIPLE_VOLUMES_WARN_MSG, UserWarning, stacklevel=2)
            bzeros = np.asanyarray(self.dataobj[..., b0_mask])
            self.bzero = np.median(bzeros, axis=-1) if b0_num > 1 else bzeros[..., 0]
        elif b0_num > 0:
            warn(DWI_REDUNDANT_B0_WARN_MSG, UserWarning, stacklevel=2)

        if b0_num > 0:
            self.gradients = self.gradients[~b0_mask, :]
            self.dataobj = np.asanyarray(self.dataobj[..., ~b0_mask])

        if self.gradients.shape[0] < DTI_MIN_ORIENTATIONS:
            raise ValueError(
                f"DWI datasets must have at least {DTI_MIN_ORIENTATIONS} diffusion-weighted "
                f"orientations; found {self.dataobj.shape[-1]}."
            )

    def __len__(self) -> int:
        """Obtain the number of diffusion-weighted volumes in the dataset."""
        return self.dataobj.shape[-1]

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented

        assert isinstance(other, DWI)
        return all(
            (
                _cmp(self.dataobj, other.dataobj),
                _cmp(self.affine, other.affine),
                _cmp(self.gradients, other.gradients),
                _cmp(self.brainmask, other.brainmask),
                _cmp(self.bzero, other.bzero),
            )
        )

    @property
    def bvals(self) -> np.ndarray:
        return self.gradients[:, -1]

    @property
    def bvecs(self) -> np.ndarray:
        return self.gradients[:, :-1]

    @property
    def shape3d(self) -> tuple[int, int, int]:
        """Get the shape of the 3D volume."""
        return tuple(int(s) for s in self.dataobj.shape[:3])  # type: ignore[return-value]

    @property
    def grid(self) -> ImageGrid:
        """The image grid (shape and affine) where the signal is sampled."""
        return ImageGrid(shape=self.shape3d, affine=np.asanyarray(self.affine))

    @property
    def gtab(self) -> GradientTable:
        """A DIPY gradient table of the diffusion-weighted volumes."""
        return to_gradient_table(self.gradients)

    def in_grid(self, voxel_coords: npt.ArrayLike) -> np.ndarray:
        """Flag the voxels that fall within the image grid."""
        coords = check_voxel_coords(voxel_coords)
        return np.all((coords >= 0) & (coords < np.asarray(self.shape3d)), axis=1)

    def in_mask(self, voxel_coords: npt.ArrayLike) -> np.ndarray:
        """
        Flag the voxels that fall within the brain mask.

        Voxels outside the image grid are never in the mask.
        When the dataset has no brain mask, every voxel of the grid is.

        """
        coords = check_voxel_coords(voxel_coords)
        inside = self.in_grid(coords)
        if self.brainmask is None:
            return inside

        retval = np.zeros(coords.shape[0], dtype=bool)
        valid = coords[inside]
        retval[inside] = self.brainmask[valid[:, 0], valid[:, 1], valid[:, 2]]
        return retval

    def voxel_signal(self, voxel_coords: npt.ArrayLike) -> np.ndarray:
        """
        Extract the diffusion-weighted signal of the given voxels.

        Parameters
        ----------
        voxel_coords : :obj:`~numpy.ndarray`
            An ``(V, 3)`` array of voxel indices.

        Returns
        -------
        :obj:`~numpy.ndarray`
            An ``(V, D)`` array, rows following the order of ``voxel_coords``.

        """
        coords = check_voxel_coords(voxel_coords)
        if not np.all(self.in_grid(coords)):
            raise IndexError(VOXEL_OUTSIDE_GRID_ERROR_MSG.format(shape=self.shape3d))

        data = np.asanyarray(self.dataobj)
        return np.asarray(data[coords[:, 0], coords[:, 1], coords[:, 2], :], dtype=float)

    def demeaned_signal(
        self,
        voxel_coords: npt.ArrayLike,
        normalize: bool = True,
        min_S0: float = DEFAULT_MIN_S0,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        r"""
        Calculate the demeaned signal of the given voxels.

        The signal of each voxel is first divided by its :math:`S_0` (when ``normalize``
        is set and a b=0 reference exists), and then the mean across diffusion-weighted
        directions is subtracted.

        Parameters
        ----------
        voxel_coords : :obj:`~numpy.ndarray`
            An ``(V, 3)`` array of voxel indices, which fixes the row order of the output.
        normalize : :obj:`bool`, optional
            Whether the signal is expressed relative to :math:`S_0`.
        min_S0 : :obj:`float`, optional
            Lower bound of :math:`S_0`, to avoid divisions by zero.

        Returns
        -------
        demeaned : :obj:`~numpy.ndarray`
            The ``(V, D)`` demeaned signal.
        mean : :obj:`~numpy.ndarray`
            The ``(V,)`` mean (relative) signal that was subtracted.
        S0 : :obj:`~numpy.ndarray`
            The ``(V,)`` reference signal used for normalization (ones if not normalized).

        """
        coords = check_voxel_coords(voxel_coords)
        signal = self.voxel_signal(coords)

        S0 = np.ones(coords.shape[0])
        if normalize and self.bzero is None:
            warn(DWI_MISSING_B0_WARN_MSG, UserWarning, stacklevel=2)
        elif normalize:
            S0 = np.clip(
                np.asarray(self.bzero, dtype=float)[coords[:, 0], coords[:, 1], coords[:, 2]],
                min_S0,
                None,
            )

        relative = signal / S0[:, np.newaxis]
        mean = relative.mean(axis=-1) if relative.size else np.zeros(coords.shape[0])
        return relative - mean[:, np.newaxis], mean, S0

    @classmethod
    def from_filename(cls, filename: Path | str) -> Self:
        """
        Read an HDF5 file from disk and create a DWI object.

        Parameters
        ----------
        filename : :obj:`os.pathlike`
            The HDF5 file path to read.

        Returns
        -------
        :obj:`~nilife.data.dmri.base.DWI`
            The constructed dataset with data loaded from the file.

        """
        with h5py.File(filename, "r") as in_file:
            root = in_file["/0"]
            if root.attrs.get("Type") != "dmri":
                raise TypeError(f"File <{filename}> does not contain a DWI dataset.")
            data = {k: np.asanyarray(v) for k, v in root.items()}

        return cls(**data)

    def to_filename(
        self,
        filename: Path | str,
        compression: str | None = None,
        compression_opts: Any = None,
    ) -> Path:
        """
        Write the dMRI dataset to an HDF5 file on disk.

        Parameters
        ----------
        filename : :obj:`os.pathlike`
            The HDF5 file path to write to.
        compression : :obj:`str`, optional
            Compression strategy.
            See :obj:`~h5py.Group.create_dataset` documentation.
        compression_opts : :obj:`~typing.Any`, optional
            Parameters for compression
            `filters <https://docs.h5py.org/en/stable/high/dataset.html#dataset-compression>`__.

        Returns
        -------
        :obj:`~pathlib.Path`
            The path actually written.

        """
        filename = h5_filename(filename)
        with h5py.File(filename, "w") as out_file:
            write_h5_root(
                out_file,
                "dmri",
                compression=compression,
                compression_opts=compression_opts,
                **{f.name: getattr(self, f.name) for f in attrs.fields(self.__class__)},
            )
        return filename
