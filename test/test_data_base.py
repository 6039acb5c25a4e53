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
"""Unit tests for :mod:`nilife.data.base`."""

import re

import h5py
import numpy as np
import pytest

from nilife.data.base import (
    AFFINE_ABSENCE_ERROR_MSG,
    AFFINE_OBJECT_ERROR_MSG,
    AFFINE_SHAPE_ERROR_MSG,
    DATAOBJ_ABSENCE_ERROR_MSG,
    DATAOBJ_NDIM_ERROR_MSG,
    DATAOBJ_OBJECT_ERROR_MSG,
    NFDH5_FORMAT,
    ImageGrid,
    _cmp,
    _data_repr,
    _readonly,
    validate_affine,
    validate_dataobj,
    volume_to_nifti,
    write_h5_root,
)


def test_validate_dataobj_affine_errors():
    with pytest.raises(ValueError, match=DATAOBJ_ABSENCE_ERROR_MSG):
        validate_dataobj(None, None, None)

    with pytest.raises(TypeError, match=DATAOBJ_OBJECT_ERROR_MSG):
        validate_dataobj(None, None, 5)

    with pytest.raises(ValueError, match=DATAOBJ_NDIM_ERROR_MSG):
        validate_dataobj(None, None, np.zeros((2, 2, 2)))

    with pytest.raises(ValueError, match=AFFINE_ABSENCE_ERROR_MSG):
        validate_affine(None, None, None)

    with pytest.raises(TypeError, match=AFFINE_OBJECT_ERROR_MSG):
        validate_affine(None, None, [[1, 0], [0, 1]])

    with pytest.raises(ValueError, match=re.escape(AFFINE_SHAPE_ERROR_MSG)):
        validate_affine(None, None, np.ones((3, 3)))

    validate_dataobj(None, None, np.zeros((2, 2, 2, 1)))
    validate_affine(None, None, np.eye(4))


@pytest.mark.parametrize(
    "lh, rh, expected",
    [
        (np.eye(4), np.eye(4) + 1e-12, True),
        (np.eye(4), np.eye(3), False),
        (np.eye(4), None, False),
        (None, None, True),
        ((2, 2, 2), (2, 2, 2), True),
    ],
)
def test_cmp(lh, rh, expected):
    assert _cmp(lh, rh) is expected


def test_readonly_and_repr():
    value = np.arange(6.0).reshape(2, 3)
    frozen = _readonly(value)
    assert not frozen.flags.writeable
    assert value.flags.writeable

    with pytest.raises(ValueError, match="read-only"):
        frozen[0, 0] = 1.0

    assert _readonly(None) is None
    assert _data_repr(frozen) == "<2x3 (float64)>"
    assert _data_repr(None) == "None"


def test_write_h5_root(tmp_path):
    with h5py.File(tmp_path / "root.h5", "w") as out_file:
        write_h5_root(out_file, "dummy", values=np.arange(3), missing=None)

    with h5py.File(tmp_path / "root.h5", "r") as in_file:
        assert in_file.attrs["Format"] == NFDH5_FORMAT
        assert in_file["/0"].attrs["Type"] == "dummy"
        assert "missing" not in in_file["/0"]
        np.testing.assert_array_equal(in_file["/0/values"][()], np.arange(3))


def test_volume_to_nifti(tmp_path):
    grid = ImageGrid((3, 4, 5), np.diag([2.0, 2.0, 2.0, 1.0]))
    data = np.ones((3, 4, 5), dtype="float32")

    nii = volume_to_nifti(data, grid, tmp_path / "ones.nii.gz")
    assert (tmp_path / "ones.nii.gz").exists()
    assert np.allclose(nii.affine, grid.affine)
    assert nii.header.get_xyzt_units()[0] == "mm"

    with pytest.raises(ValueError, match="does not match the image grid"):
        volume_to_nifti(data[:2], grid)
