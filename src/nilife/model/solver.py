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
r"""
Non-negative least-squares solver for large, sparse design matrices.

Solves

.. math::

    \min_{w} \frac{1}{2} \lVert M w - y \rVert_2^2 \quad \text{s.t.} \quad w \geq 0

with a projected gradient method whose step lengths follow the Barzilai-Borwein rule
(alternating the two BB formulas), safeguarded by an Armijo backtracking line search
along the projection arc.
The line search only accepts steps that do not increase the objective, so the
residual norm is non-increasing across iterations.

The cost of each iteration is dominated by two sparse matrix-vector products
(:math:`M w` and :math:`M^\top r`), which are split into row blocks that may be
evaluated by a pool of threads.

"""

from __future__ import annotations

from contextlib import nullcontext
from pathlib import Path
from warnings import warn

import attrs
import numpy as np
import numpy.typing as npt
import yaml
from joblib import Parallel, delayed
from scipy import sparse
from tqdm import tqdm

from nilife.data.base import _data_repr, _readonly
from nilife.exceptions import SolverNonConvergence

DEFAULT_MAX_ITER = 500
"""Maximum number of iterations (the solver's only cancellation mechanism)."""

DEFAULT_PGTOL = 1e-6
"""Convergence threshold on the projected-gradient norm, relative to its initial value."""

DEFAULT_FTOL = 1e-10
"""Convergence threshold on the relative decrease of the objective between iterations."""

DEFAULT_ARMIJO = 1e-4
"""Sufficient-decrease constant of the Armijo line search."""

DEFAULT_BACKTRACK = 0.5
"""Step shrinkage factor of the line search."""

DEFAULT_MAX_BACKTRACKS = 50
"""Maximum number of step shrinkages per iteration."""

DEFAULT_MIN_STEP = 1e-12
"""Lower bound of the Barzilai-Borwein step length."""

DEFAULT_MAX_STEP = 1e12
"""Upper bound of the Barzilai-Borwein step length."""

NONCONVERGENCE_WARN_MSG = """\
The NNLS solver did not converge after {n_iter} iterations \
(projected gradient norm: {pgnorm:.3g}); weights are provisional."""
"""Solver non-convergence warning message."""

SHAPE_MISMATCH_ERROR_MSG = "Design matrix has {rows} rows, but the signal has {size} samples."
"""Matrix and signal mismatch error message."""


def _positive(inst, attr, value):
    if value <= 0:
        raise ValueError(f"'{attr.name}' must be positive; got {value}.")


def _fraction(inst, attr, value):
    if not 0 < value < 1:
        raise ValueError(f"'{attr.name}' must be in the (0, 1) range; got {value}.")


@attrs.frozen
class SolverConfig:
    """Tolerances and limits of the constrained solver."""

    max_iter: int = attrs.field(default=DEFAULT_MAX_ITER, converter=int, validator=_positive)
    """Maximum number of iterations."""
    pgtol: float = attrs.field(default=DEFAULT_PGTOL, converter=float)
    """Relative projected-gradient norm tolerance."""
    ftol: float = attrs.field(default=DEFAULT_FTOL, converter=float)
    """Relative objective decrease tolerance."""
    armijo: float = attrs.field(default=DEFAULT_ARMIJO, converter=float, validator=_fraction)
    """Sufficient-decrease constant."""
    backtrack: float = attrs.field(
        default=DEFAULT_BACKTRACK, converter=float, validator=_fraction
    )
    """Step shrinkage factor."""
    max_backtracks: int = attrs.field(
        default=DEFAULT_MAX_BACKTRACKS, converter=int, validator=_positive
    )
    """Maximum step shrinkages per iteration."""
    min_step: float = attrs.field(default=DEFAULT_MIN_STEP, converter=float, validator=_positive)
    """Lower bound of the step length."""
    max_step: float = attrs.field(default=DEFAULT_MAX_STEP, converter=float, validator=_positive)
    """Upper bound of the step length."""
    n_jobs: int = attrs.field(default=1, converter=int, validator=_positive)
    """Number of threads evaluating the matrix-vector products."""

    @classmethod
    def from_dict(cls, settings: dict | None) -> SolverConfig:
        """Create a configuration, rejecting unknown keys."""
        settings = dict(settings or {})
        unknown = set(settings) - {f.name for f in attrs.fields(cls)}
        if unknown:
            raise ValueError(f"Unknown solver settings: {', '.join(sorted(unknown))}.")
        return cls(**settings)

    @classmethod
    def from_yaml(cls, filename: Path | str) -> SolverConfig:
        """Read the configuration from a YAML file."""
        with open(filename) as file:
            return cls.from_dict(yaml.safe_load(file))


@attrs.frozen(eq=False)
class FitResult:
    """Weights estimated by the solver, and its diagnostics."""

    weights: np.ndarray = attrs.field(converter=_readonly, repr=_data_repr)
    """Non-negative weights (one per column)."""
    n_iter: int
    """Number of iterations run."""
    residual_norm: float
    r"""Final :math:`\lVert M w - y \rVert_2`."""
    converged: bool
    """Whether the tolerances were met before reaching the iteration cap."""
    projected_gradient_norm: float
    """Final projected-gradient norm."""
    objective_history: np.ndarray = attrs.field(converter=_readonly, repr=_data_repr)
    r"""Objective :math:`\frac{1}{2}\lVert M w - y \rVert_2^2`, initial value first."""
    message: str = ""
    """Termination reason."""

    def to_dict(self) -> dict:
        """Summarize the diagnostics of the fit (weights excluded)."""
        return {
            "converged": bool(self.converged),
            "n_iter": int(self.n_iter),
            "residual_norm": float(self.residual_norm),
            "projected_gradient_norm": float(self.projected_gradient_norm),
            "message": self.message,
            "n_weights": int(self.weights.shape[0]),
            "n_nonzero": int(np.count_nonzero(self.weights)),
        }


def _dot(block, x):
    return block @ x


class _BlockOperator:
    """Row-block partition of a sparse matrix and its transpose for parallel products."""

    __slots__ = ("_blocks", "_tblocks", "_executor")

    def __init__(self, matrix: sparse.spmatrix, executor: Parallel | None = None):
        n_blocks = executor.n_jobs if executor is not None else 1
        csr = sparse.csr_matrix(matrix)
        tcsr = sparse.csr_matrix(matrix.T)
        self._blocks = [csr[rows] for rows in _splits(csr.shape[0], n_blocks)]
        self._tblocks = [tcsr[rows] for rows in _splits(tcsr.shape[0], n_blocks)]
        self._executor = executor

    def _product(self, blocks, x):
        if self._executor is None or len(blocks) == 1:
            return np.concatenate([block @ x for block in blocks])
        return np.concatenate(self._executor(delayed(_dot)(block, x) for block in blocks))

    def matvec(self, x: np.ndarray) -> np.ndarray:
        return self._product(self._blocks, x)

    def rmatvec(self, x: np.ndarray) -> np.ndarray:
        return self._product(self._tblocks, x)


def _splits(size: int, n_blocks: int) -> list[slice]:
    edges = np.linspace(0, size, min(max(n_blocks, 1), max(size, 1)) + 1).astype(int)
    return [slice(a, b) for a, b in zip(edges[:-1], edges[1:], strict=True)]


def projected_gradient_norm(w: np.ndarray, grad: np.ndarray) -> float:
    """Norm of the gradient projected onto the feasible set at ``w``."""
    pgrad = np.where(w > 0, grad, np.minimum(grad, 0.0))
    return float(np.linalg.norm(pgrad))


def solve_nnls(
    matrix: sparse.spmatrix,
    signal: npt.ArrayLike,
    config: SolverConfig | None = None,
    x0: npt.ArrayLike | None = None,
    progress: bool = False,
) -> FitResult:
    """
    Solve a sparse non-negative least-squares problem.

    Parameters
    ----------
    matrix : :obj:`~scipy.sparse.spmatrix`
        The ``(R, F)`` design matrix.
    signal : :obj:`~numpy.ndarray`
        The ``(R,)`` target vector.
    config : :obj:`~nilife.model.solver.SolverConfig`, optional
        Solver settings.
    x0 : :obj:`~numpy.ndarray`, optional
        Initial guess, projected onto the feasible set.
    progress : :obj:`bool`, optional
        Show a progress bar.

    Returns
    -------
    :obj:`~nilife.model.solver.FitResult`
        Weights and diagnostics.
        If the iteration cap is reached, ``converged`` is :obj:`False` and a
        :class:`~nilife.exceptions.SolverNonConvergence` warning is emitted.

    """
    config = config or SolverConfig()
    y = np.asarray(signal, dtype=float).ravel()
    if matrix.shape[0] != y.shape[0]:
        raise ValueError(SHAPE_MISMATCH_ERROR_MSG.format(rows=matrix.shape[0], size=y.shape[0]))

    n_cols = matrix.shape[1]
    w = np.zeros(n_cols) if x0 is None else np.maximum(np.asarray(x0, dtype=float).ravel(), 0)
    if w.shape[0] != n_cols:
        raise ValueError(f"Initial guess must have {n_cols} elements; got {w.shape[0]}.")

    if n_cols == 0:
        f0 = 0.5 * float(y @ y)
        return FitResult(
            weights=w,
            n_iter=0,
            residual_norm=float(np.sqrt(2 * f0)),
            converged=True,
            projected_gradient_norm=0.0,
            objective_history=np.array([f0]),
            message="empty design matrix",
        )

    context = (
        Parallel(n_jobs=config.n_jobs, prefer="threads") if config.n_jobs > 1 else nullcontext()
    )
    with context as executor:
        op = _BlockOperator(matrix, executor)
        residual = op.matvec(w) - y
        fval = 0.5 * float(residual @ residual)
        grad = op.rmatvec(residual)
        pgnorm0 = pgnorm = projected_gradient_norm(w, grad)
        history = [fval]

        # Initial step: exact minimizer along the projected steepest descent direction
        direction = np.where(w > 0, grad, np.minimum(grad, 0.0))
        md = op.matvec(direction)
        step = float(direction @ direction) / float(md @ md) if md @ md > 0 else 1.0
        step = float(np.clip(step, config.min_step, config.max_step))

        converged = pgnorm0 == 0.0
        message = "initial point is optimal" if converged else ""
        n_iter = 0

        with tqdm(total=config.max_iter, unit="iter.", disable=not progress) as pbar:
            while not converged and n_iter < config.max_iter:
                n_iter += 1

                alpha = step
                for _ in range(config.max_backtracks + 1):
                    w_new = np.maximum(w - alpha * grad, 0.0)
                    delta = w_new - w
                    residual_new = op.matvec(w_new) - y
                    fval_new = 0.5 * float(residual_new @ residual_new)
                    if fval_new <= fval + config.armijo * float(grad @ delta):
                        break
                    alpha *= config.backtrack
                else:
                    message = "line search failed"
                    break

                grad_new = op.rmatvec(residual_new)
                dgrad = grad_new - grad
                sy = float(delta @ dgrad)
                if sy <= 0:
                    step = alpha
                elif n_iter % 2:
                    step = float(delta @ delta) / sy
                else:
                    step = sy / float(dgrad @ dgrad)
                step = float(np.clip(step, config.min_step, config.max_step))

                decrease = (fval - fval_new) / max(fval, np.finfo(float).tiny)
                w, residual, fval, grad = w_new, residual_new, fval_new, grad_new
                history.append(fval)
                pgnorm = projected_gradient_norm(w, grad)

                pbar.set_description_str(f"NNLS objective <{fval:.4g}>")
                pbar.update()

                if pgnorm <= config.pgtol * pgnorm0:
                    converged = True
                    message = "projected gradient tolerance reached"
                elif decrease <= config.ftol:
                    converged = True
                    message = "objective tolerance reached"

    if not converged:
        message = message or "maximum number of iterations reached"
        warn(
            NONCONVERGENCE_WARN_MSG.format(n_iter=n_iter, pgnorm=pgnorm),
            SolverNonConvergence,
            stacklevel=2,
        )

    return FitResult(
        weights=w,
        n_iter=n_iter,
        residual_norm=float(np.sqrt(2 * fval)),
        converged=converged,
        projected_gradient_norm=pgnorm,
        objective_history=np.asarray(history),
        message=message,
    )
