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
"""Unit tests exercising the connectome data structure."""

import numpy as np
import pytest

from nilife.data import load_classification, load_connectome
from nilife.data.tractogram import (
    TCK_WEIGHTS_WARN_MSG,
    WEIGHTS_VALUE_ERROR_MSG,
    Connectome,
    as_fascicle_indices,
)
from nilife.exceptions import IndexOutOfRange, InvalidIndex


@pytest.fixture
def connectome(request):
    rng = request.node.rng
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    fascicles = [rng.uniform(0.0, 18.0, size=(n, 3)) for n in (5, 12, 2, 7)]
    return Connectome(
        fascicles=fascicles,
        affine=affine,
        shape=(10, 10, 10),
        weights=[0.5, 0.0, 1.5, 0.25],
    )


def test_immutability(connectome):
    with pytest.raises(ValueError):
        connectome.fascicles[0][0, 0] = 1.0

    with pytest.raises(ValueError):
        connectome.weights[0] = 1.0

    with pytest.raises(AttributeError):
        connectome.weights = None


@pytest.mark.parametrize(
    "kwargs, match",
    [
        ({"fascicles": [np.zeros((4, 2))]}, "must be an array of shape"),
        ({"weights": [1.0, 2.0]}, "2 weights were provided"),
        ({"weights": [-1.0]}, WEIGHTS_VALUE_ERROR_MSG),
        ({"weights": [np.nan]}, WEIGHTS_VALUE_ERROR_MSG),
        ({"shape": (10, 10)}, "must be 3D"),
    ],
)
def test_validation(kwargs, match):
    params = {"fascicles": [np.zeros((4, 3))], "affine": np.eye(4), "shape": (10, 10, 10)}
    params.update(kwargs)
    with pytest.raises(ValueError, match=match):
        Connectome(**params)


def test_empty_fascicle():
    connectome = Connectome(fascicles=[[]], affine=np.eye(4), shape=(2, 2, 2))
    assert connectome[0].shape == (0, 3)
    assert connectome.n_points.tolist() == [0]


def test_subset(connectome):
    subset = connectome.subset([3, 1, 1])

    assert len(subset) == 2
    # Stable order, deduplicated
    assert np.array_equal(subset[0], connectome[1])
    assert np.array_equal(subset[1], connectome[3])
    assert subset.weights.tolist() == [0.0, 0.25]

    # The parent is not modified
    assert len(connectome) == 4
    assert connectome.weights.tolist() == [0.5, 0.0, 1.5, 0.25]

    masked = connectome.subset(np.array([True, False, True, False]))
    assert masked.weights.tolist() == [0.5, 1.5]

    with pytest.raises(ValueError):
        connectome.subset(np.array([True, False]))


@pytest.mark.parametrize("indices", [[4], [-1], [0, 10]])
def test_check_indices(connectome, indices):
    with pytest.raises(IndexOutOfRange):
        connectome.check_indices(indices)

    with pytest.raises(IndexError):
        connectome.subset(indices)


def test_reduce(connectome):
    reduced, kept = connectome.reduce()
    assert kept.tolist() == [0, 2, 3]
    assert reduced.weights.tolist() == [0.5, 1.5, 0.25]

    reduced, kept = connectome.reduce(threshold=0.3)
    assert kept.tolist() == [0, 2]

    reduced, kept = connectome.reduce(predicate=lambda w: w < 1.0)
    assert kept.tolist() == [0, 1, 3]
    assert len(reduced) == 3

    with pytest.raises(ValueError, match="without weights"):
        connectome.with_weights(None).reduce()


def test_hdf5_roundtrip(tmp_path, connectome):
    filename = connectome.to_filename(tmp_path / "connectome")
    assert filename.suffix == ".h5"

    loaded = load_connectome(filename)
    assert loaded == connectome
    assert loaded != connectome.with_weights(None)

    unweighted = connectome.with_weights(None).to_filename(tmp_path / "unweighted.h5")
    assert Connectome.from_filename(unweighted).weights is None


def test_trk_roundtrip(tmp_path, connectome):
    filename = connectome.to_tractogram(tmp_path / "connectome.trk")

    loaded = load_connectome(filename)
    assert len(loaded) == len(connectome)
    assert loaded.shape == connectome.shape
    assert np.allclose(loaded.affine, connectome.affine)
    assert np.allclose(loaded.weights, connectome.weights)
    for original, fascicle in zip(connectome, loaded, strict=True):
        assert np.allclose(original, fascicle, atol=1e-3)


def test_tck_requires_reference(tmp_path, connectome):
    with pytest.warns(UserWarning, match=TCK_WEIGHTS_WARN_MSG[:30]):
        filename = connectome.to_tractogram(tmp_path / "connectome.tck")

    with pytest.raises(ValueError, match="reference"):
        load_connectome(filename)

    loaded = load_connectome(filename, reference=connectome.grid)
    assert loaded.weights is None
    assert loaded.shape == connectome.shape


@pytest.mark.parametrize("suffix", [".json", ".yml"])
def test_load_classification(tmp_path, suffix):
    filename = tmp_path / f"tracts{suffix}"
    if suffix == ".json":
        filename.write_text('{"CST": [0, 2], "SLF": [1]}')
    else:
        filename.write_text("CST: [0, 2]\nSLF: [1]\n")

    classification = load_classification(filename)
    assert list(classification) == ["CST", "SLF"]
    assert classification["CST"].tolist() == [0, 2]

    filename.write_text("[0, 1]" if suffix == ".json" else "- 0\n- 1\n")
    with pytest.raises(ValueError, match="must be a mapping"):
        load_classification(filename)


def test_load_classification_non_integer(tmp_path):
    filename = tmp_path / "tracts.json"
    filename.write_text('{"CST": [0, 2], "SLF": [0.5], "AF": ["a", 1]}')
    with pytest.warns(UserWarning, match="non-integer"):
        classification = load_classification(filename)

    assert list(classification) == ["CST", "SLF", "AF"]
    assert classification["CST"].tolist() == [0, 2]
    assert classification["SLF"] == [0.5]
    assert classification["AF"] == ["a", 1]


@pytest.mark.parametrize(
    "indices, expected",
    [
        ([2, 0], [2, 0]),
        ([[1], [3.0]], [1, 3]),
        ([], []),
        (np.array([1], dtype=np.uint8), [1]),
    ],
)
def test_as_fascicle_indices(indices, expected):
    assert as_fascicle_indices(indices).tolist() == expected


@pytest.mark.parametrize(
    "indices", [[0.5], [np.nan], [True, False], ["1"], [1, None], [[0], [1, 2]]]
)
def test_as_fascicle_indices_invalid(connectome, indices):
    with pytest.raises(InvalidIndex, match="must be integers"):
        as_fascicle_indices(indices)

    with pytest.raises(TypeError):
        connectome.check_indices(indices)
