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
"""Parser module."""

from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser
from pathlib import Path

from nilife.analysis.virtual_lesion import (
    DEFAULT_NBINS,
    DEFAULT_NBOOT,
    DEFAULT_NMONTECARLO,
    DEFAULT_SEED,
    INDEX_SPACES,
)
from nilife.model.forward import DEFAULT_CHUNK_SIZE, DEFAULT_EVALS
from nilife.model.solver import SolverConfig


def build_parser() -> ArgumentParser:
    """
    Build parser object.

    Returns
    -------
    :obj:`~argparse.ArgumentParser`
        The parser object defining the interface for the command-line.
    """
    parser = ArgumentParser(
        description=(
            "Linear fascicle evaluation: fit a connectome to diffusion MRI data, prune "
            "unsupported fascicles, and measure the evidence supporting each tract."
        ),
        formatter_class=ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "input_file",
        action="store",
        type=Path,
        help="Path to the DWI data (NIfTI, or HDF5 as written by NiLiFE).",
    )
    parser.add_argument(
        "tractogram",
        action="store",
        type=Path,
        help="Path to the tractogram (.trk, .tck, or a NiLiFE HDF5 connectome).",
    )

    parser.add_argument(
        "--brainmask", action="store", type=Path, help="Path to a brain mask in NIfTI format."
    )
    parser.add_argument(
        "--classification",
        action="store",
        type=Path,
        default=None,
        help="JSON or YAML file mapping tract names to fascicle indices.",
    )
    parser.add_argument(
        "--solver-config",
        action="store",
        type=SolverConfig.from_yaml,
        default=None,
        help="Path to the yaml file containing the settings of the non-negative solver.",
    )
    parser.add_argument(
        "-J",
        "--n-jobs",
        "--njobs",
        dest="n_jobs",
        action="store",
        type=int,
        default=None,
        help="Number of parallel jobs.",
    )
    parser.add_argument(
        "--output-dir",
        action="store",
        type=Path,
        default=Path.cwd(),
        help=(
            "Path to the output directory. Defaults to the current directory. "
            "Output files are named after the input file."
        ),
    )
    parser.add_argument(
        "--no-progress",
        dest="progress",
        action="store_false",
        help="Do not display progress bars.",
    )

    g_dmri = parser.add_argument_group("Options for dMRI inputs")
    g_dmri.add_argument(
        "--gradient-file",
        action="store",
        nargs="+",
        type=Path,
        metavar="FILE",
        help="A gradient file containing b-vectors and b-values, or a bvec and a bval file",
    )
    g_dmri.add_argument(
        "--b0-file",
        action="store",
        type=Path,
        metavar="FILE",
        help="A NIfTI file containing the b-zero reference",
    )
    g_dmri.add_argument(
        "--no-normalize",
        dest="normalize",
        action="store_false",
        help="Fit the raw demeaned signal instead of the signal relative to the b-zero",
    )

    g_model = parser.add_argument_group("Options of the forward model")
    g_model.add_argument(
        "--evals",
        action="store",
        nargs=3,
        type=float,
        default=DEFAULT_EVALS,
        metavar="EVAL",
        help="Eigenvalues (mm²/s) of the tensor modeling each fascicle node",
    )
    g_model.add_argument(
        "--chunk-size",
        action="store",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help="Number of fascicles per parallel job when building the matrix",
    )
    g_model.add_argument(
        "--threshold",
        action="store",
        type=float,
        default=0.0,
        help="Fascicles with weights not above this value are pruned",
    )

    g_lesion = parser.add_argument_group("Options of the virtual lesion")
    g_lesion.add_argument(
        "--index-space",
        action="store",
        choices=INDEX_SPACES,
        default="original",
        help=(
            "Whether tract indices refer to the input tractogram (original) or "
            "to the pruned connectome (model)"
        ),
    )
    g_lesion.add_argument(
        "--nbins", action="store", type=int, default=DEFAULT_NBINS, help="Histogram bins"
    )
    g_lesion.add_argument(
        "--nboot", action="store", type=int, default=DEFAULT_NBOOT, help="Bootstrap resamples"
    )
    g_lesion.add_argument(
        "--nmontecarlo",
        action="store",
        type=int,
        default=DEFAULT_NMONTECARLO,
        help="Monte Carlo repeats of the bootstrap",
    )
    g_lesion.add_argument(
        "--seed",
        action="store",
        type=int,
        default=DEFAULT_SEED,
        help="Seed the random number generator for deterministic estimation.",
    )

    g_out = parser.add_argument_group("Optional outputs")
    g_out.add_argument(
        "--write-trk", action="store_true", help="Write the pruned connectome as a .trk file also"
    )
    g_out.add_argument(
        "--write-rmse", action="store_true", help="Write the voxelwise RMSE map in NIfTI format"
    )

    return parser
