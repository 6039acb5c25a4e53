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
"""Unit tests exercising the dMRI data structure."""

import re

import nibabel as nb
import numpy as np
import pytest

from nilife.data import load
from nilife.data.dmri.base import (
    BZERO_SHAPE_MISMATCH_ERROR_MSG,
    DWI,
    DWI_B0_MULTIPLE_VOLUMES_WARN_MSG,
    DWI_MISSING_B0_WARN_MSG,
    DWI_REDUNDANT_B0_WARN_MSG,
)
from nilife.data.dmri.io import GRADIENT_DATA_MISSING_ERROR, from_nii
from nilife.data.dmri.utils import (
    DTI_MIN_ORIENTATIONS,
    GRADIENT_ABSENCE_ERROR_MSG,
    GRADIENT_EXPECTED_COLUMNS_ERROR_MSG,
    GRADIENT_NDIM_ERROR_MSG,
    format_gradients,
)
from nilife.data.tractogram import Connectome

B_MATRIX = np.array(
    [
        [0.0, 0.0, 0.0, 0],
        [1.0, 0.0, 0.0, 1000],
        [0.0, 1.0, 0.0, 1000],
        [0.0, 0.0, 1.0, 1000],
        [1 / np.sqrt(2), 1 / np.sqrt(2), 0.0, 1000],
        [1 / np.sqrt(2), 0.0, 1 / np.sqrt(2), 1000],
        [0.0, 1 / np.sqrt(2), 1 / np.sqrt(2), 1000],
        [1 / np.sqrt(3), 1 / np.sqrt(3), 1 / np.sqrt(3), 2000],
        [-1 / np.sqrt(3), 1 / np.sqrt(3), 1 / np.sqrt(3), 2000],
        [1 / np.sqrt(3), -1 / np.sqrt(3), 1 / np.sqrt(3), 2000],
        [1 / np.sqrt(3), 1 / np.sqrt(3), -1 / np.sqrt(3), 2000],
    ],
    dtype=np.float32,
)


@pytest.fixture
def random_dwi(request):
    rng = request.node.rng
    data = rng.uniform(10.0, 100.0, size=(4, 5, 3, B_MATRIX.shape[0]))
    data[..., 0] = 200.0
    return data, np.diag([2.0, 2.0, 2.0, 1.0])


@pytest.mark.parametrize(
    "value, expected_exc, expected_msg",
    [
        (None, ValueError, GRADIENT_ABSENCE_ERROR_MSG),
        (3.14, ValueError, GRADIENT_NDIM_ERROR_MSG),
        ([1, 2, 3, 4], ValueError, GRADIENT_NDIM_ERROR_MSG),
        (np.zeros((2, 3)), ValueError, GRADIENT_EXPECTED_COLUMNS_ERROR_MSG),
        ([[np.nan, 0, 0, 1000]], ValueError, "NaN or infinite"),
    ],
)
def test_format_gradients_errors(value, expected_exc, expected_msg):
    with pytest.raises(expected_exc, match=re.escape(str(expected_msg))):
        format_gradients(value)


@pytest.mark.parametrize(
    "value, expect_transpose",
    [
        (B_MATRIX[:4, :], False),
        (B_MATRIX[:3, :].T, True),
        (B_MATRIX.T, True),
        (B_MATRIX, False),
        ([[1, 0, 0, 100], [0, 1, 0, 100]], False),
        ([[1, 0, 0], [0, 1, 0], [0, 0, 1], [100, 100, 100]], True),
    ],
)
def test_format_gradients_basic(value, expect_transpose):
    obtained = format_gradients(value)

    assert isinstance(obtained, np.ndarray)
    expected = np.asarray(value, dtype=float)
    expected = expected.T if expect_transpose else expected
    assert obtained.shape == expected.shape
    assert np.allclose(obtained, expected, atol=1e-6)


def test_dwi_b0_handling(random_dwi):
    data, affine = random_dwi

    dwi = DWI(dataobj=data, affine=affine, gradients=B_MATRIX)
    assert len(dwi) == B_MATRIX.shape[0] - 1
    assert dwi.gradients.shape == (B_MATRIX.shape[0] - 1, 4)
    assert np.all(dwi.bvals > 50)
    assert np.allclose(dwi.bzero, 200.0)
    assert dwi.shape3d == (4, 5, 3)
    assert dwi.grid.shape == (4, 5, 3)

    gtab = dwi.gtab
    assert np.allclose(gtab.bvals, B_MATRIX[1:, -1])
    assert not gtab.b0s_mask.any()


def test_dwi_multiple_b0(random_dwi):
    data, affine = random_dwi
    gradients = np.vstack((B_MATRIX[:1], B_MATRIX))
    data = np.concatenate((data[..., :1] * 0.5, data), axis=-1)

    with pytest.warns(UserWarning, match=DWI_B0_MULTIPLE_VOLUMES_WARN_MSG):
        dwi = DWI(dataobj=data, affine=affine, gradients=gradients)

    assert np.allclose(dwi.bzero, 150.0)
    assert len(dwi) == B_MATRIX.shape[0] - 1


def test_dwi_redundant_b0(random_dwi):
    data, affine = random_dwi

    with pytest.warns(UserWarning, match=DWI_REDUNDANT_B0_WARN_MSG[:40]):
        dwi = DWI(
            dataobj=data, affine=affine, gradients=B_MATRIX, bzero=np.full(data.shape[:3], 7.0)
        )

    assert np.allclose(dwi.bzero, 7.0)


def test_dwi_errors(random_dwi):
    data, affine = random_dwi

    with pytest.raises(ValueError, match=GRADIENT_ABSENCE_ERROR_MSG):
        DWI(dataobj=data, affine=affine)

    with pytest.raises(ValueError, match="does not match the number of"):
        DWI(dataobj=data[..., :-1], affine=affine, gradients=B_MATRIX)

    with pytest.raises(
        ValueError,
        match=re.escape(
            BZERO_SHAPE_MISMATCH_ERROR_MSG.format(bzero_shape=(4, 5), data_shape=(4, 5, 3))
        ),
    ):
        DWI(dataobj=data[..., 1:], affine=affine, gradients=B_MATRIX[1:], bzero=np.ones((4, 5)))

    with pytest.raises(
        ValueError,
        match=f"at least {DTI_MIN_ORIENTATIONS} diffusion-weighted",
    ):
        DWI(dataobj=data[..., :5], affine=affine, gradients=B_MATRIX[:5])


def test_demeaned_signal(random_dwi):
    data, affine = random_dwi
    dwi = DWI(dataobj=data, affine=affine, gradients=B_MATRIX)
    coords = np.array([[3, 4, 2], [0, 0, 0], [1, 2, 1]])

    demeaned, mean, S0 = dwi.demeaned_signal(coords)

    expected = data[coords[:, 0], coords[:, 1], coords[:, 2], 1:] / 200.0
    assert demeaned.shape == (3, len(dwi))
    assert np.allclose(demeaned.mean(axis=1), 0.0)
    assert np.allclose(demeaned + mean[:, np.newaxis], expected)
    assert np.allclose(S0, 200.0)

    # Row order follows the coordinates
    reversed_demeaned, _, _ = dwi.demeaned_signal(coords[::-1])
    assert np.allclose(reversed_demeaned, demeaned[::-1])


def test_demeaned_signal_without_bzero(random_dwi):
    data, affine = random_dwi
    dwi = DWI(dataobj=data[..., 1:], affine=affine, gradients=B_MATRIX[1:])
    assert dwi.bzero is None

    with pytest.warns(UserWarning, match=DWI_MISSING_B0_WARN_MSG):
        demeaned, mean, S0 = dwi.demeaned_signal([[0, 0, 0]])

    assert np.allclose(S0, 1.0)
    assert np.allclose(demeaned + mean[:, np.newaxis], data[0, 0, 0, 1:])


def test_voxel_signal_out_of_grid(random_dwi):
    data, affine = random_dwi
    dwi = DWI(dataobj=data, affine=affine, gradients=B_MATRIX)

    with pytest.raises(IndexError):
        dwi.voxel_signal([[4, 0, 0]])

    assert dwi.in_grid([[4, 0, 0], [3, 4, 2]]).tolist() == [False, True]


def test_in_mask(random_dwi):
    data, affine = random_dwi
    brainmask = np.zeros(data.shape[:3], dtype=bool)
    brainmask[1, 1, 1] = True
    dwi = DWI(dataobj=data, affine=affine, gradients=B_MATRIX, brainmask=brainmask)

    assert dwi.in_mask([[1, 1, 1], [0, 0, 0], [-1, 0, 0]]).tolist() == [True, False, False]


def test_equality(random_dwi):
    data, affine = random_dwi
    dwi = DWI(dataobj=data, affine=affine, gradients=B_MATRIX)
    assert dwi == DWI(dataobj=data.copy(), affine=affine, gradients=B_MATRIX)
    assert dwi != DWI(dataobj=data * 2, affine=affine, gradients=B_MATRIX)


def test_hdf5_roundtrip(tmp_path, random_dwi):
    data, affine = random_dwi
    dwi = DWI(
        dataobj=data,
        affine=affine,
        gradients=B_MATRIX,
        brainmask=np.ones(data.shape[:3], dtype=bool),
    )

    written = dwi.to_filename(tmp_path / "dwi")
    assert written.name == "dwi.h5"

    assert load(written) == dwi

    with pytest.raises(TypeError, match="does not contain a DWI dataset"):
        DWI.from_filename(_write_connectome_h5(tmp_path))


def _write_connectome_h5(tmp_path):
    connectome = Connectome(fascicles=[np.zeros((2, 3))], affine=np.eye(4), shape=(2, 2, 2))
    return connectome.to_filename(tmp_path / "connectome.h5")


@pytest.mark.parametrize("gradient_files", ["table", "bvec-bval"])
def test_from_nii(tmp_path, random_dwi, gradient_files):
    data, affine = random_dwi
    nb.Nifti1Image(data.astype("float32"), affine).to_filename(tmp_path / "dwi.nii.gz")
    brainmask = np.ones(data.shape[:3], dtype="uint8")
    nb.Nifti1Image(brainmask, affine).to_filename(tmp_path / "mask.nii.gz")

    kwargs = {}
    if gradient_files == "table":
        np.savetxt(tmp_path / "gradients.txt", B_MATRIX)
        kwargs["gradients_file"] = tmp_path / "gradients.txt"
    else:
        np.savetxt(tmp_path / "dwi.bvec", B_MATRIX[:, :3].T)
        np.savetxt(tmp_path / "dwi.bval", B_MATRIX[:, 3])
        kwargs["bvec_file"] = tmp_path / "dwi.bvec"
        kwargs["bval_file"] = tmp_path / "dwi.bval"

    dwi = load(tmp_path / "dwi.nii.gz", brainmask_file=tmp_path / "mask.nii.gz", **kwargs)

    assert isinstance(dwi, DWI)
    assert len(dwi) == B_MATRIX.shape[0] - 1
    assert np.allclose(dwi.gradients, B_MATRIX[1:], atol=1e-5)
    assert np.allclose(dwi.dataobj, data[..., 1:], rtol=1e-5)
    assert dwi.brainmask.all()

    with pytest.raises(RuntimeError, match=GRADIENT_DATA_MISSING_ERROR):
        from_nii(tmp_path / "dwi.nii.gz")

    with pytest.raises(ValueError, match="gradient table"):
        load(tmp_path / "dwi.nii.gz")
