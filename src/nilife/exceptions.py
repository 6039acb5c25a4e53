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
"""Exceptions and warnings raised while evaluating connectomes."""


class NiLiFEError(Exception):
    """Base class for all errors raised by *NiLiFE*."""


class GeometryMismatch(NiLiFEError, ValueError):
    """Fascicle coordinates and the signal volume are not in the same reference frame."""


class IndexOutOfRange(NiLiFEError, IndexError):
    """A tract references a fascicle index beyond the bounds of the connectome."""


class InvalidIndex(NiLiFEError, TypeError):
    """A tract references fascicles with values that are not integer indices."""


class EmptyTract(NiLiFEError):
    """A tract does not contain any fascicle."""


class NoEvidence(NiLiFEError):
    """A tract does not traverse any voxel of the model, so no evidence can be computed."""


class SolverNonConvergence(UserWarning):
    """The constrained solver hit its iteration cap before meeting its tolerances."""
