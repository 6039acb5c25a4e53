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
Virtual lesion evaluation of tracts.

The evidence supporting a tract is measured by removing its fascicles from a fitted model
(the *lesion*) and comparing how well the lesioned and the full models predict the signal
in the voxels the tract traverses.
Because the model is linear, the lesioned prediction is obtained without refitting:

.. math::

    \hat{y}_\text{lesion} = M w - M_{:, T} w_T.

The comparison is summarized by the per-voxel root-mean-squared prediction error, from which a
bootstrapped *strength of evidence*, the earth mover's distance, and histogram divergences are
derived.

"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path

import attrs
import numpy as np
import numpy.typing as npt
from joblib import Parallel, delayed
from scipy import stats
from tqdm import tqdm

from nilife.data.base import _data_repr, _readonly
from nilife.data.tractogram import as_fascicle_indices
from nilife.exceptions import EmptyTract, IndexOutOfRange, InvalidIndex, NoEvidence
from nilife.model.life import FittedModel, to_model_indices

DEFAULT_NBINS = 200
"""Number of histogram bins of the RMSE distributions."""

DEFAULT_NBOOT = 5000
"""Number of bootstrap resamples per Monte Carlo repeat."""

DEFAULT_NMONTECARLO = 5
"""Number of Monte Carlo repeats of the bootstrap."""

DEFAULT_SEED = 20210324
"""Seed of the bootstrap random number generator."""

BOOTSTRAP_BLOCK_SIZE = 10_000_000
"""Maximum number of resampled values held in memory at once."""

STATUS_OK = "ok"
STATUS_NO_EVIDENCE = "no_evidence"
STATUS_EMPTY_TRACT = "empty_tract"
STATUS_INDEX_OUT_OF_RANGE = "index_out_of_range"
STATUS_INVALID_INDEX = "invalid_index"

INDEX_SPACES = ("model", "original")
"""Index spaces tract indices may refer to."""


def _float_field():
    return attrs.field(converter=float)


@attrs.frozen
class EvidenceStatistics:
    """Statistics comparing the lesioned and full models over the lesioned voxels."""

    strength_of_evidence: float = _float_field()
    """Standardized difference of the bootstrapped mean RMSE (lesion minus full)."""
    earth_movers_distance: float = _float_field()
    """Wasserstein-1 distance between the lesioned and full RMSE samples."""
    kl_divergence: float = _float_field()
    """Kullback-Leibler divergence of the lesioned RMSE histogram from the full one."""
    jeffreys_divergence: float = _float_field()
    """Symmetrized Kullback-Leibler divergence of the RMSE histograms."""
    rmse_lesion_mean: float = _float_field()
    rmse_full_mean: float = _float_field()
    r2_full: float = _float_field()
    """Variance of the lesioned rows explained by the full model."""
    r2_lesion: float = _float_field()
    """Variance of the lesioned rows explained by the lesioned model."""
    r2_delta: float = _float_field()
    """Loss of explained variance caused by the lesion."""
    n_voxels: int = attrs.field(converter=int)
    """Number of lesioned voxels."""

    @classmethod
    def zero(cls) -> EvidenceStatistics:
        """Statistics of a lesion that leaves the prediction untouched and covers no voxel."""
        return cls(
            strength_of_evidence=0.0,
            earth_movers_distance=0.0,
            kl_divergence=0.0,
            jeffreys_divergence=0.0,
            rmse_lesion_mean=np.nan,
            rmse_full_mean=np.nan,
            r2_full=np.nan,
            r2_lesion=np.nan,
            r2_delta=0.0,
            n_voxels=0,
        )

    def to_dict(self) -> dict:
        return attrs.asdict(self)


@attrs.frozen(eq=False)
class VirtualLesionResult:
    """Outcome of the virtual lesion of one tract."""

    tract: str | None
    """Name of the tract."""
    status: str
    """
    One of ``ok``, ``no_evidence``, ``empty_tract``, ``index_out_of_range`` or
    ``invalid_index``.
    """
    reason: str = ""
    """Explanation of a non-``ok`` status."""
    statistics: EvidenceStatistics | None = None
    """Evidence statistics (``None`` unless the status is ``ok``)."""
    fascicles: np.ndarray | None = attrs.field(default=None, converter=_readonly, repr=_data_repr)
    """Lesioned fascicles, as indices into the fitted model."""
    voxel_coords: np.ndarray | None = attrs.field(
        default=None, converter=_readonly, repr=_data_repr
    )
    """``(V, 3)`` coordinates of the lesioned voxels."""
    rmse_lesion: np.ndarray | None = attrs.field(
        default=None, converter=_readonly, repr=_data_repr
    )
    """Per-voxel RMSE of the lesioned model."""
    rmse_full: np.ndarray | None = attrs.field(default=None, converter=_readonly, repr=_data_repr)
    """Per-voxel RMSE of the full model."""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self, arrays: bool = False) -> dict:
        """
        Serialize the result into plain Python types.

        Parameters
        ----------
        arrays : :obj:`bool`, optional
            Also include the per-voxel arrays.

        """
        out = {
            "tract": self.tract,
            "status": self.status,
            "reason": self.reason,
            "n_fascicles": None if self.fascicles is None else int(self.fascicles.size),
            "statistics": None if self.statistics is None else self.statistics.to_dict(),
        }
        if arrays:
            for name in ("fascicles", "voxel_coords", "rmse_lesion", "rmse_full"):
                value = getattr(self, name)
                out[name] = None if value is None else value.tolist()
        return out


class VirtualLesionResults(Mapping):
    """Virtual lesion results of a set of tracts, in evaluation order."""

    def __init__(self, results: Mapping[str, VirtualLesionResult]):
        self._results = dict(results)

    def __getitem__(self, key: str) -> VirtualLesionResult:
        return self._results[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def __repr__(self) -> str:
        statuses = {name: result.status for name, result in self._results.items()}
        return f"{self.__class__.__name__}({statuses})"

    def filter(self, status: str = STATUS_OK) -> VirtualLesionResults:
        """Return the results with the given status."""
        return VirtualLesionResults(
            {name: result for name, result in self._results.items() if result.status == status}
        )

    def to_dict(self, arrays: bool = False) -> dict:
        return {name: _jsonable(result.to_dict(arrays=arrays)) for name, result in self.items()}

    def to_json(self, filename: str | Path | None = None, arrays: bool = False) -> str:
        """
        Serialize the results as JSON (non-finite numbers become ``null``).

        If ``filename`` is given, the document is also written to disk.

        """
        document = json.dumps(self.to_dict(arrays=arrays), indent=2)
        if filename is not None:
            Path(filename).write_text(document)
        return document


def _jsonable(value):
    if isinstance(value, dict):
        return {key: _jsonable(val) for key, val in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(val) for val in value]
    if isinstance(value, float | np.floating):
        return float(value) if np.isfinite(value) else None
    if isinstance(value, np.integer):
        return int(value)
    return value


def voxel_rmse(errors: np.ndarray, n_directions: int) -> np.ndarray:
    """Root-mean-squared error of each voxel, given the flattened per-sample errors."""
    return np.sqrt(np.mean(np.reshape(errors, (-1, n_directions)) ** 2, axis=-1))


def _strength(lesion: np.ndarray, full: np.ndarray) -> float:
    difference = float(lesion.mean() - full.mean())
    if difference == 0:
        return 0.0

    spread = float(np.sqrt(lesion.std() ** 2 + full.std() ** 2))
    if spread == 0:
        return float(np.copysign(np.inf, difference))
    return difference / spread


def strength_of_evidence(
    rmse_lesion: np.ndarray,
    rmse_full: np.ndarray,
    nboot: int = DEFAULT_NBOOT,
    nmontecarlo: int = DEFAULT_NMONTECARLO,
    rng: np.random.Generator | None = None,
) -> float:
    """
    Bootstrapped strength of evidence.

    Voxels are resampled with replacement (the same resample is applied to both error
    samples, which are paired by voxel), and the mean RMSE of each resample is computed.
    The strength of evidence is the difference of the means of the bootstrap distributions,
    divided by the square root of the sum of their variances.
    The statistic is averaged over ``nmontecarlo`` independent repeats.

    Parameters
    ----------
    rmse_lesion : :obj:`~numpy.ndarray`
        Per-voxel RMSE of the lesioned model.
    rmse_full : :obj:`~numpy.ndarray`
        Per-voxel RMSE of the full model.
    nboot : :obj:`int`, optional
        Number of resamples per repeat.
    nmontecarlo : :obj:`int`, optional
        Number of repeats.
    rng : :obj:`~numpy.random.Generator`, optional
        Random number generator.

    Returns
    -------
    :obj:`float`
        The strength of evidence; zero when the samples have equal means.

    Examples
    --------
    >>> errors = np.linspace(0.1, 0.2, 10)
    >>> strength_of_evidence(errors, errors)
    0.0

    """
    rmse_lesion = np.asarray(rmse_lesion, dtype=float).ravel()
    rmse_full = np.asarray(rmse_full, dtype=float).ravel()
    if rmse_lesion.shape != rmse_full.shape:
        raise ValueError("RMSE samples must be paired.")
    if rmse_full.size == 0:
        raise NoEvidence("Cannot bootstrap empty RMSE samples.")

    if np.array_equal(rmse_lesion, rmse_full):
        return 0.0

    rng = rng if rng is not None else np.random.default_rng(DEFAULT_SEED)
    n_voxels = rmse_full.size
    block = max(1, BOOTSTRAP_BLOCK_SIZE // n_voxels)

    values = []
    for _ in range(nmontecarlo):
        lesion = np.empty(nboot)
        full = np.empty(nboot)
        for start in range(0, nboot, block):
            stop = min(start + block, nboot)
            sample = rng.integers(0, n_voxels, size=(stop - start, n_voxels))
            lesion[start:stop] = rmse_lesion[sample].mean(axis=1)
            full[start:stop] = rmse_full[sample].mean(axis=1)
        values.append(_strength(lesion, full))
    return float(np.mean(values))


def histogram_divergences(
    rmse_lesion: np.ndarray,
    rmse_full: np.ndarray,
    nbins: int = DEFAULT_NBINS,
) -> tuple[float, float]:
    r"""
    Kullback-Leibler and Jeffreys divergences between the RMSE histograms.

    Both samples are binned on shared edges spanning their joint range, and normalized to
    probability mass functions :math:`P` (lesion) and :math:`Q` (full).
    Bins where either mass function is empty are excluded from the sums:

    .. math::

        D_{KL} = \sum_i P_i \log \frac{P_i}{Q_i}, \qquad
        D_J = \sum_i (P_i - Q_i) \log \frac{P_i}{Q_i}.

    """
    edges = np.histogram_bin_edges(np.concatenate((rmse_lesion, rmse_full)), bins=nbins)
    p = np.histogram(rmse_lesion, bins=edges)[0].astype(float)
    q = np.histogram(rmse_full, bins=edges)[0].astype(float)
    p /= p.sum()
    q /= q.sum()

    valid = (p > 0) & (q > 0)
    log_ratio = np.log(p[valid] / q[valid])
    kl = float(np.sum(p[valid] * log_ratio))
    jeffreys = float(np.sum((p[valid] - q[valid]) * log_ratio))
    return kl, jeffreys


def _r2(errors: np.ndarray, signal: np.ndarray) -> float:
    total = float(signal @ signal)
    if total == 0:
        return float("nan")
    return 1.0 - float(errors @ errors) / total


def evidence_statistics(
    signal: np.ndarray,
    prediction_full: np.ndarray,
    prediction_lesion: np.ndarray,
    n_directions: int,
    nbins: int = DEFAULT_NBINS,
    nboot: int = DEFAULT_NBOOT,
    nmontecarlo: int = DEFAULT_NMONTECARLO,
    rng: np.random.Generator | None = None,
) -> tuple[EvidenceStatistics, np.ndarray, np.ndarray]:
    """
    Compare the lesioned and full predictions of the signal at the lesioned rows.

    Returns
    -------
    statistics : :obj:`~nilife.analysis.virtual_lesion.EvidenceStatistics`
        The evidence statistics.
    rmse_lesion : :obj:`~numpy.ndarray`
        Per-voxel RMSE of the lesioned model.
    rmse_full : :obj:`~numpy.ndarray`
        Per-voxel RMSE of the full model.

    """
    errors_full = prediction_full - signal
    errors_lesion = prediction_lesion - signal
    rmse_full = voxel_rmse(errors_full, n_directions)
    rmse_lesion = voxel_rmse(errors_lesion, n_directions)

    kl, jeffreys = histogram_divergences(rmse_lesion, rmse_full, nbins=nbins)
    r2_full = _r2(errors_full, signal)
    r2_lesion = _r2(errors_lesion, signal)
    statistics = EvidenceStatistics(
        strength_of_evidence=strength_of_evidence(
            rmse_lesion, rmse_full, nboot=nboot, nmontecarlo=nmontecarlo, rng=rng
        ),
        earth_movers_distance=stats.wasserstein_distance(rmse_lesion, rmse_full),
        kl_divergence=kl,
        jeffreys_divergence=jeffreys,
        rmse_lesion_mean=rmse_lesion.mean(),
        rmse_full_mean=rmse_full.mean(),
        r2_full=r2_full,
        r2_lesion=r2_lesion,
        r2_delta=r2_full - r2_lesion,
        n_voxels=rmse_full.size,
    )
    return statistics, rmse_lesion, rmse_full


def _check_settings(index_space: str, nbins: int, nboot: int, nmontecarlo: int) -> None:
    if index_space not in INDEX_SPACES:
        raise ValueError(f"Unknown index space <{index_space}>; expected one of {INDEX_SPACES}.")
    for name, value in (("nbins", nbins), ("nboot", nboot), ("nmontecarlo", nmontecarlo)):
        if int(value) < 1:
            raise ValueError(f"<{name}> must be a positive integer (got {value}).")


def _lesion(
    fitted: FittedModel,
    tract_indices: npt.ArrayLike,
    tract: str | None,
    index_space: str,
    nbins: int,
    nboot: int,
    nmontecarlo: int,
    seed: int | None,
    prediction: np.ndarray | None,
) -> VirtualLesionResult:
    indices = as_fascicle_indices(tract_indices)
    if indices.size == 0:
        raise EmptyTract(f"Tract <{tract}> has no fascicles.")

    forward = fitted.forward
    if index_space == "original":
        indices, pruned = to_model_indices(fitted, indices)
        if indices.size == 0:
            return VirtualLesionResult(
                tract=tract,
                status=STATUS_OK,
                reason=f"All {pruned.size} fascicles were removed by reduction.",
                statistics=EvidenceStatistics.zero(),
                fascicles=indices,
                voxel_coords=np.zeros((0, 3), dtype=np.intp),
                rmse_lesion=np.zeros(0),
                rmse_full=np.zeros(0),
            )
    else:
        indices = forward.connectome.check_indices(indices)

    indices = np.unique(indices)
    voxels = forward.traversed_voxels(indices)
    if voxels.size == 0:
        raise NoEvidence(f"Tract <{tract}> does not traverse any modeled voxel.")

    rows = forward.voxel_rows(voxels)
    full = fitted.predict() if prediction is None else np.asarray(prediction)
    contribution = np.asarray(forward.matrix[:, indices] @ fitted.weights[indices]).ravel()

    statistics, rmse_lesion, rmse_full = evidence_statistics(
        fitted.signal[rows],
        full[rows],
        full[rows] - contribution[rows],
        forward.n_directions,
        nbins=nbins,
        nboot=nboot,
        nmontecarlo=nmontecarlo,
        rng=np.random.default_rng(seed),
    )
    return VirtualLesionResult(
        tract=tract,
        status=STATUS_OK,
        statistics=statistics,
        fascicles=indices,
        voxel_coords=forward.voxel_coords[voxels],
        rmse_lesion=rmse_lesion,
        rmse_full=rmse_full,
    )


def virtual_lesion(
    fitted: FittedModel,
    tract_indices: npt.ArrayLike,
    *,
    tract: str | None = None,
    index_space: str = "model",
    nbins: int = DEFAULT_NBINS,
    nboot: int = DEFAULT_NBOOT,
    nmontecarlo: int = DEFAULT_NMONTECARLO,
    seed: int | None = DEFAULT_SEED,
    prediction: np.ndarray | None = None,
) -> VirtualLesionResult:
    """
    Evaluate the evidence a tract adds to a fitted model.

    The fitted model is not modified, and repeated calls with the same arguments return
    identical results.

    Parameters
    ----------
    fitted : :obj:`~nilife.model.life.FittedModel`
        The fitted (and possibly reduced) model.
    tract_indices : :obj:`~numpy.ndarray`
        Indices of the fascicles of the tract.
    tract : :obj:`str`, optional
        Name of the tract.
    index_space : :obj:`str`, optional
        ``"model"`` if ``tract_indices`` index the fascicles of ``fitted``, or ``"original"``
        if they index the connectome before reduction.
    nbins : :obj:`int`, optional
        Number of histogram bins.
    nboot : :obj:`int`, optional
        Number of bootstrap resamples.
    nmontecarlo : :obj:`int`, optional
        Number of Monte Carlo repeats of the bootstrap.
    seed : :obj:`int`, optional
        Seed of the bootstrap.
    prediction : :obj:`~numpy.ndarray`, optional
        Precomputed full prediction of ``fitted``, shared across tracts.

    Returns
    -------
    :obj:`~nilife.analysis.virtual_lesion.VirtualLesionResult`
        The result. Empty tracts, tracts that traverse no voxel, and out-of-range or
        non-integer indices are reported through its ``status`` rather than raised.

    """
    _check_settings(index_space, nbins, nboot, nmontecarlo)
    try:
        return _lesion(
            fitted,
            tract_indices,
            tract,
            index_space,
            int(nbins),
            int(nboot),
            int(nmontecarlo),
            seed,
            prediction,
        )
    except IndexOutOfRange as exc:
        status = STATUS_INDEX_OUT_OF_RANGE
        reason = str(exc)
    except InvalidIndex as exc:
        status = STATUS_INVALID_INDEX
        reason = str(exc)
    except EmptyTract as exc:
        status = STATUS_EMPTY_TRACT
        reason = str(exc)
    except NoEvidence as exc:
        status = STATUS_NO_EVIDENCE
        reason = str(exc)

    return VirtualLesionResult(tract=tract, status=status, reason=reason)


def evaluate_tracts(
    fitted: FittedModel,
    classification: Mapping[str, Sequence[int]],
    n_jobs: int | None = None,
    progress: bool = False,
    **kwargs,
) -> VirtualLesionResults:
    """
    Run the virtual lesion of every tract of a classification.

    Tracts are evaluated independently on a thread pool; a tract that cannot be evaluated
    is recorded with the corresponding status and does not interrupt the batch.

    Parameters
    ----------
    fitted : :obj:`~nilife.model.life.FittedModel`
        The fitted model.
    classification : :obj:`dict`
        Mapping of tract names to fascicle indices.
    n_jobs : :obj:`int`, optional
        Number of parallel jobs.
    progress : :obj:`bool`, optional
        Show a progress bar.
    **kwargs
        Keyword arguments forwarded to :func:`virtual_lesion`.

    Returns
    -------
    :obj:`~nilife.analysis.virtual_lesion.VirtualLesionResults`
        The results, in the order of ``classification``.

    """
    _check_settings(
        kwargs.get("index_space", "model"),
        kwargs.get("nbins", DEFAULT_NBINS),
        kwargs.get("nboot", DEFAULT_NBOOT),
        kwargs.get("nmontecarlo", DEFAULT_NMONTECARLO),
    )

    prediction = fitted.predict()
    names = list(classification)
    tracts = tqdm(names, desc="Virtual lesions", unit="tract", disable=not progress)

    with Parallel(n_jobs=n_jobs, prefer="threads") as executor:
        results = executor(
            delayed(virtual_lesion)(
                fitted, classification[name], tract=name, prediction=prediction, **kwargs
            )
            for name in tracts
        )

    return VirtualLesionResults(dict(zip(names, results, strict=True)))
