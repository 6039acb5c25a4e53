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
"""py.test configuration."""

import os
from pathlib import Path

import numpy as np
import pytest

from nilife.data.tractogram import Connectome
from nilife.model.forward import build_forward_model
from nilife.testing.simulations import (
    create_single_shell_gradients,
    simulate_dwi,
    straight_fascicle,
)

test_output_dir = os.getenv("TEST_OUTPUT_DIR")
test_seed = int(os.getenv("NILIFE_TEST_SEED", 20210324))


def pytest_report_header(config):
    return f"""\
NILIFE_TEST_SEED={test_seed}.
TEST_OUTPUT_DIR={test_output_dir or "<unset> (output files will be discarded)"}.
"""


def pytest_runtest_setup(item):
    """Attach a seeded random number generator to every test item."""
    item.rng = np.random.default_rng(test_seed)


@pytest.fixture(scope="session")
def outdir():
    """Determine if test artifacts should be stored somewhere or deleted."""
    return None if test_output_dir is None else Path(test_output_dir)


@pytest.fixture(scope="session")
def gradients():
    """A single-shell gradient table (one b=0 followed by 32 directions)."""
    return create_single_shell_gradients(hsph_dirs=32, bval_shell=1000.0, iterations=200)


@pytest.fixture(scope="session")
def grid_affine():
    """A 2 mm isotropic grid centered on the origin."""
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    affine[:3, 3] = -8.0
    return affine


def _voxel_center(affine, ijk):
    return affine[:3, :3] @ np.asarray(ijk, dtype=float) + affine[:3, 3]


@pytest.fixture(scope="session")
def phantom(gradients, grid_affine):
    """
    A small connectome and the noise-free DWI data it generates.

    Four straight bundles cross a 9x9x9 grid: two parallel fascicles along x (tract
    ``"X"``), one along y, one along z, and one oblique fascicle with zero weight.

    """
    fascicles = [
        straight_fascicle(
            _voxel_center(grid_affine, (0, 4, 4)), _voxel_center(grid_affine, (8, 4, 4)), 40
        ),
        straight_fascicle(
            _voxel_center(grid_affine, (0, 5, 4)), _voxel_center(grid_affine, (8, 5, 4)), 40
        ),
        straight_fascicle(
            _voxel_center(grid_affine, (4, 0, 4)), _voxel_center(grid_affine, (4, 8, 4)), 40
        ),
        straight_fascicle(
            _voxel_center(grid_affine, (2, 2, 0)), _voxel_center(grid_affine, (2, 2, 8)), 40
        ),
        straight_fascicle(
            _voxel_center(grid_affine, (6, 0, 1)), _voxel_center(grid_affine, (6, 8, 7)), 40
        ),
    ]
    weights = np.array([0.8, 0.5, 1.2, 0.3, 0.0])
    connectome = Connectome(fascicles=fascicles, affine=grid_affine, shape=(9, 9, 9))
    dwi = simulate_dwi(connectome, gradients, weights)
    return {
        "connectome": connectome,
        "dwi": dwi,
        "weights": weights,
        "classification": {"X": [0, 1], "Y": [2], "Z": [3], "oblique": [4]},
    }


@pytest.fixture(scope="session")
def phantom_model(phantom):
    """The forward model of the phantom."""
    return build_forward_model(phantom["connectome"], phantom["dwi"], n_jobs=1)


def pytest_addoption(parser):
    parser.addoption(
        "--warnings-as-errors",
        action="store_true",
        help="Consider all uncaught warnings as errors.",
    )


@pytest.hookimpl(trylast=True)
def pytest_sessionfinish(session, exitstatus):
    have_werrors = os.getenv("NILIFE_WERRORS", False)
    have_werrors = session.config.getoption("--warnings-as-errors", False) or have_werrors
    if have_werrors:
        # Check if there were any warnings during the test session
        reporter = session.config.pluginmanager.get_plugin("terminalreporter")
        if reporter.stats.get("warnings", None):
            session.exitstatus = 2


@pytest.hookimpl
def pytest_terminal_summary(terminalreporter, exitstatus, config):
    have_werrors = os.getenv("NILIFE_WERRORS", False)
    have_werrors = config.getoption("--warnings-as-errors", False) or have_werrors
    have_warnings = terminalreporter.stats.get("warnings", None)
    if have_warnings and have_werrors:
        terminalreporter.ensure_newline()
        terminalreporter.section("Werrors", sep="=", red=True, bold=True)
        terminalreporter.line(
            "Warnings as errors: Activated.\n"
            f"{len(have_warnings)} warnings were raised and treated as errors.\n"
        )
