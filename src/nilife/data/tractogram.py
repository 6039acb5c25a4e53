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
"""Connectome representation: an ordered set of fascicles and their weights."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any
from warnings import warn

import attrs
import h5py
import nibabel as nb
import numpy as np
import numpy.typing as npt
from nibabel.streamlines import Field
from typing_extensions import Self

from nilife.data.base import (
    ImageGrid,
    _cmp,
    _data_repr,
    _readonly,
    h5_filename,
    validate_affine,
    write_h5_root,
)
from nilife.exceptions import IndexOutOfRange, InvalidIndex
from nilife.utils.ndimage import get_grid

FASCICLE_SHAPE_ERROR_MSG = "Fascicle {index} must be an array of shape (N, 3); got {shape}."
"""Fascicle shape error message."""

WEIGHTS_LENGTH_ERROR_MSG = (
    "Connectome has {n_fascicles} fascicles but {n_weights} weights were provided."
)
"""Weights and fascicles mismatch error message."""

WEIGHTS_VALUE_ERROR_MSG = "Fascicle weights must be finite and non-negative."
"""Invalid weights error message."""

INDEX_OUT_OF_RANGE_ERROR_MSG = (
    "Fascicle indices {indices} are out of range for a connectome of {n_fascicles} fascicles."
)
"""Out-of-range fascicle index error message."""

INVALID_INDEX_ERROR_MSG = "Fascicle indices must be integers; got {indices!r}."
"""Non-integer fascicle index error message."""

TRACTOGRAM_REFERENCE_ERROR_MSG = """\
Tractogram <{filename}> does not define its reference grid; a reference image must be given."""
"""Missing reference error message."""

TCK_WEIGHTS_WARN_MSG = "TCK files cannot store fascicle weights; weights will not be written."
"""TCK weights warning message."""


def _to_fascicles(value: Sequence[npt.ArrayLike]) -> tuple[np.ndarray, ...]:
    fascicles = []
    for i, fascicle in enumerate(value):
        points = np.array(fascicle, dtype=float, copy=True)
        if points.size == 0:
            points = points.reshape(0, 3)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(FASCICLE_SHAPE_ERROR_MSG.format(index=i, shape=points.shape))
        points.flags.writeable = False
        fascicles.append(points)
    return tuple(fascicles)


def _to_affine(value: npt.ArrayLike | None) -> np.ndarray | None:
    return None if value is None else _readonly(np.asarray(value, dtype=float))


def _to_shape(value: Sequence[int]) -> tuple[int, int, int]:
    return tuple(int(v) for v in value)[:3]  # type: ignore[return-value]


def _to_weights(value: npt.ArrayLike | None) -> np.ndarray | None:
    return None if value is None else _readonly(np.asarray(value, dtype=float).ravel())


def _fascicles_repr(value: tuple[np.ndarray, ...]) -> str:
    return f"<{len(value)} fascicles>"


def as_fascicle_indices(indices: Any) -> np.ndarray:
    """
    Convert ``indices`` into a flat array of (not yet range-checked) fascicle indices.

    Integral floating point values are accepted.

    Examples
    --------
    >>> as_fascicle_indices([[3], [1.0]])
    array([3, 1])
    >>> as_fascicle_indices([]).size
    0

    Raises
    ------
    :exc:`~nilife.exceptions.InvalidIndex`
        If any value is not an integer (fractional, non-finite, boolean or non-numeric),
        or the values do not form a regular array.

    """
    try:
        idx = np.asarray(indices).ravel()
    except ValueError as exc:
        raise InvalidIndex(INVALID_INDEX_ERROR_MSG.format(indices=indices)) from exc

    if idx.size == 0:
        return np.zeros(0, dtype=np.intp)

    if idx.dtype.kind in "iu":
        return idx.astype(np.intp)

    if idx.dtype.kind != "f" or not np.all(np.isfinite(idx)) or np.any(idx != np.rint(idx)):
        raise InvalidIndex(INVALID_INDEX_ERROR_MSG.format(indices=indices))
    return np.rint(idx).astype(np.intp)


@attrs.frozen(eq=False)
class Connectome:
    """
    An immutable, ordered collection of fascicles with an optional weight per fascicle.

    Fascicles are polylines in world (RAS+, mm) coordinates.
    The ``affine`` and ``shape`` fields describe the image grid the fascicles were
    tracked on (their reference frame), which must match that of the diffusion signal
    they are evaluated against.
    The index of a fascicle is its position in :attr:`fascicles`, and it is also the
    index of its weight and of its column in the forward model.

    """

    fascicles: tuple[np.ndarray, ...] = attrs.field(
        converter=_to_fascicles, repr=_fascicles_repr
    )
    """Tuple of ``(N, 3)`` read-only arrays of world coordinates."""
    affine: np.ndarray = attrs.field(
        converter=_to_affine, repr=_data_repr, validator=validate_affine
    )
    """Voxel-to-world affine of the reference grid."""
    shape: tuple[int, int, int] = attrs.field(converter=_to_shape)
    """Shape of the reference grid."""
    weights: np.ndarray | None = attrs.field(default=None, converter=_to_weights, repr=_data_repr)
    """One non-negative weight per fascicle, or :obj:`None` before fitting."""

    def __attrs_post_init__(self) -> None:
        if len(self.shape) != 3:
            raise ValueError(f"Reference grid shape must be 3D; got {self.shape}.")

        if self.weights is None:
            return

        if self.weights.shape[0] != len(self.fascicles):
            raise ValueError(
                WEIGHTS_LENGTH_ERROR_MSG.format(
                    n_fascicles=len(self.fascicles), n_weights=self.weights.shape[0]
                )
            )

        if not np.all(np.isfinite(self.weights)) or np.any(self.weights < 0):
            raise ValueError(WEIGHTS_VALUE_ERROR_MSG)

    def __len__(self) -> int:
        return len(self.fascicles)

    def __getitem__(self, index: int) -> np.ndarray:
        return self.fascicles[index]

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self.fascicles)

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented

        assert isinstance(other, Connectome)
        return (
            len(self) == len(other)
            and self.shape == other.shape
            and _cmp(self.affine, other.affine)
            and _cmp(self.weights, other.weights)
            and all(_cmp(a, b) for a, b in zip(self.fascicles, other.fascicles, strict=True))
        )

    @property
    def grid(self) -> ImageGrid:
        """The reference grid of the fascicles."""
        return ImageGrid(shape=self.shape, affine=self.affine)

    @property
    def n_points(self) -> np.ndarray:
        """Number of points of each fascicle."""
        return np.array([len(f) for f in self.fascicles], dtype=int)

    def with_weights(self, weights: npt.ArrayLike | None) -> Self:
        """Return a copy of this connectome carrying ``weights``."""
        return attrs.evolve(self, weights=weights)

    def check_indices(self, indices: npt.ArrayLike) -> np.ndarray:
        """
        Validate fascicle indices against this connectome.

        Returns
        -------
        :obj:`~numpy.ndarray`
            The indices as an integer array.

        Raises
        ------
        :exc:`~nilife.exceptions.InvalidIndex`
            If any value is not an integer.
        :exc:`~nilife.exceptions.IndexOutOfRange`
            If any index is negative or not smaller than the number of fascicles.

        """
        idx = as_fascicle_indices(indices)
        invalid = (idx < 0) | (idx >= len(self))
        if np.any(invalid):
            raise IndexOutOfRange(
                INDEX_OUT_OF_RANGE_ERROR_MSG.format(
                    indices=sorted(set(idx[invalid].tolist())), n_fascicles=len(self)
                )
            )
        return idx

    def subset(self, indices: npt.ArrayLike) -> Self:
        """
        Create a new connectome with the fascicles at ``indices``.

        Indices are deduplicated and sorted, so the relative order of the retained
        fascicles is always that of this connectome, and they are re-indexed
        contiguously from 0.

        Parameters
        ----------
        indices : :obj:`~numpy.ndarray`
            Integer indices, or a boolean mask with one element per fascicle.

        """
        idx = np.asarray(indices)
        if idx.dtype == bool:
            if idx.shape != (len(self),):
                raise ValueError("Boolean selection must have one element per fascicle.")
            idx = np.flatnonzero(idx)

        idx = np.unique(self.check_indices(idx))
        return attrs.evolve(
            self,
            fascicles=tuple(self.fascicles[i] for i in idx),
            weights=None if self.weights is None else self.weights[idx],
        )

    def reduce(
        self,
        threshold: float = 0.0,
        predicate: Callable[[np.ndarray], np.ndarray] | None = None,
    ) -> tuple[Self, np.ndarray]:
        """
        Keep the fascicles whose weight satisfies a predicate (``w > threshold`` by default).

        Returns
        -------
        connectome : :obj:`~nilife.data.tractogram.Connectome`
            The reduced connectome.
        kept : :obj:`~numpy.ndarray`
            Indices (in this connectome) of the retained fascicles, in ascending order.

        """
        if self.weights is None:
            raise ValueError("Cannot reduce a connectome without weights.")

        mask = (
            np.asarray(predicate(self.weights), dtype=bool)
            if predicate is not None
            else self.weights > threshold
        )
        kept = np.flatnonzero(mask)
        return self.subset(kept), kept

    @classmethod
    def from_filename(cls, filename: Path | str) -> Self:
        """Read a connectome from a *NiLiFE* HDF5 file."""
        with h5py.File(filename, "r") as in_file:
            root = in_file["/0"]
            if root.attrs.get("Type") != "connectome":
                raise TypeError(f"File <{filename}> does not contain a connectome.")
            points = np.asanyarray(root["points"])
            offsets = np.asanyarray(root["offsets"])
            affine = np.asanyarray(root["affine"])
            shape = tuple(np.asanyarray(root["shape"]).tolist())
            weights = np.asanyarray(root["weights"]) if "weights" in root else None

        fascicles = [
            points[start:end] for start, end in zip(offsets[:-1], offsets[1:], strict=True)
        ]
        return cls(fascicles=fascicles, affine=affine, shape=shape, weights=weights)

    def to_filename(
        self,
        filename: Path | str,
        compression: str | None = None,
        compression_opts: Any = None,
    ) -> Path:
        """
        Write the connectome to an HDF5 file.

        Fascicles are stored concatenated in a ``points`` array, delimited by ``offsets``.

        """
        filename = h5_filename(filename)
        offsets = np.concatenate(([0], np.cumsum(self.n_points))).astype(np.int64)
        points = (
            np.vstack(self.fascicles) if self.fascicles else np.zeros((0, 3), dtype=float)
        )
        with h5py.File(filename, "w") as out_file:
            write_h5_root(
                out_file,
                "connectome",
                compression=compression,
                compression_opts=compression_opts,
                points=points,
                offsets=offsets,
                affine=self.affine,
                shape=np.asarray(self.shape, dtype=np.int64),
                weights=self.weights,
            )
        return filename

    @classmethod
    def from_tractogram(
        cls,
        filename: Path | str,
        reference: Path | str | ImageGrid | None = None,
    ) -> Self:
        """
        Load a TrackVis (``.trk``) or MRtrix (``.tck``) tractogram with nibabel.

        Parameters
        ----------
        filename : :obj:`os.pathlike`
            The tractogram file.
        reference : :obj:`os.pathlike` or :obj:`~nilife.data.base.ImageGrid`, optional
            A NIfTI file (or grid) defining the reference frame.
            Required for formats that do not store it (e.g., ``.tck``).

        """
        tractogram_file = nb.streamlines.load(filename)
        header = tractogram_file.header

        if reference is not None:
            grid = (
                reference
                if isinstance(reference, ImageGrid)
                else ImageGrid(*get_grid(reference))
            )
        elif Field.DIMENSIONS in header and Field.VOXEL_TO_RASMM in header:
            grid = ImageGrid(
                shape=tuple(int(d) for d in header[Field.DIMENSIONS]),
                affine=np.asarray(header[Field.VOXEL_TO_RASMM], dtype=float),
            )
        else:
            raise ValueError(TRACTOGRAM_REFERENCE_ERROR_MSG.format(filename=filename))

        tractogram = tractogram_file.tractogram
        weights = tractogram.data_per_streamline.get("weights", None)
        return cls(
            fascicles=list(tractogram.streamlines),
            affine=grid.affine,
            shape=grid.shape,
            weights=None if weights is None else np.asarray(weights).ravel(),
        )

    def to_tractogram(self, filename: Path | str) -> Path:
        """Write the fascicles (and weights, for ``.trk``) as a tractogram with nibabel."""
        filename = Path(filename)
        is_tck = filename.suffix == ".tck"

        data_per_streamline = {}
        if self.weights is not None:
            if is_tck:
                warn(TCK_WEIGHTS_WARN_MSG, UserWarning, stacklevel=2)
            else:
                data_per_streamline["weights"] = self.weights[:, np.newaxis]

        tractogram = nb.streamlines.Tractogram(
            streamlines=list(self.fascicles),
            data_per_streamline=data_per_streamline,
            affine_to_rasmm=np.eye(4),
        )
        header = None
        if not is_tck:
            header = {
                Field.VOXEL_TO_RASMM: np.asarray(self.affine),
                Field.DIMENSIONS: np.asarray(self.shape, dtype=np.int16),
                Field.VOXEL_SIZES: np.asarray(
                    nb.affines.voxel_sizes(self.affine), dtype=np.float32
                ),
                Field.VOXEL_ORDER: "".join(nb.aff2axcodes(self.affine)),
            }
        nb.streamlines.save(tractogram, str(filename), header=header)
        return filename
