"""
knotfit/crossval.py

Leave-one-strain-out cross-validation of the hierarchical curve model.

For every gene-subset size K and every held-out strain, one fold:

    1. Ranks genes and computes reference statistics from the other strains
       only (early-stage samples form the reference).
    2. Scores every sample, held-out strain included, by Mahalanobis distance
       over the top-K genes.
    3. Fits the curve model to all strains' log distances. In truncated mode
       the held-out strain's observations after its second time point are
       latent, so their values are predicted rather than fitted.
    4. Returns a FoldResult: posterior quantiles, onset timing, predictions
       for the held-out strain, convergence summary.

Folds share nothing. ``run_fold`` never raises for a per-fold failure; the
error is recorded on the FoldResult and the fold is left out of aggregate
tables.
"""

import dataclasses
import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np
import pandas as pd

from knotfit.config import CrossValidationConfig
from knotfit.diagnostics import check_convergence, pool_chains
from knotfit.distance import mahalanobis_distance, rank_features, reference_statistics
from knotfit.errors import InputValidationError, SamplerInitializationError
from knotfit.mcmc import run_chains
from knotfit.model import CurveModel
from knotfit.preprocess import sample_strains, sample_times, stage_labels, to_observations
from knotfit.spline import N_DAYS
from knotfit.stats import (
    onset_summary,
    posterior_quantiles,
    prediction_error,
    prediction_table,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FoldSpec:
    """What one fold holds out and how."""

    k: int
    held_out: Optional[str] = None
    truncate: bool = False

    @property
    def fold_id(self) -> str:
        target = self.held_out if self.held_out is not None else "full"
        return f"K{self.k}_{target}" + ("_truncated" if self.truncate else "")


@dataclass
class FoldResult:
    """Outcome of one fold. ``status`` is "ok" or "failed"."""

    fold_id: str
    k: int
    held_out: Optional[str]
    truncated: bool
    status: str
    error: Optional[str] = None
    genes: tuple = ()
    ranking_strains: tuple = ()
    reference_strains: tuple = ()
    n_latent: int = 0
    quantiles: Optional[pd.DataFrame] = None
    onset: Optional[pd.DataFrame] = None
    predictions: Optional[pd.DataFrame] = None
    psrf: dict = field(default_factory=dict)
    converged: bool = False
    failed_chains: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def run_fold(
    matrix: pd.DataFrame,
    spec: FoldSpec,
    config: Optional[CrossValidationConfig] = None,
    ranker: Callable = rank_features,
) -> FoldResult:
    """
    Run one cross-validation fold (or a full-data fit when held_out is None).

    Parameters
    ----------
    matrix : pd.DataFrame
        Samples × genes matrix indexed by (strain, replicate, time), as from
        knotfit.preprocess.to_sample_matrix.
    spec : FoldSpec
        K, held-out strain and truncation mode.
    config : CrossValidationConfig, optional
        Stage split, truncation point and sampler settings.
    ranker : callable
        ``ranker(matrix, labels, seed) -> list of genes``. Receives only the
        training strains' samples.

    Returns
    -------
    FoldResult
        Failed folds carry ``status="failed"`` and the error message. Bad
        input (any ValueError, including InputValidationError from the ranker
        or scorer) and sampler initialisation failures fail the fold; other
        exceptions propagate.
    """
    config = config or CrossValidationConfig()
    sampler = config.sampler
    logger.info("fold %s: starting", spec.fold_id)

    try:
        strains = sample_strains(matrix)
        all_strains = sorted(set(strains.tolist()))
        if spec.held_out is not None and spec.held_out not in all_strains:
            raise InputValidationError(
                f"Held-out strain {spec.held_out!r} not in data.", record=spec.held_out
            )

        if spec.held_out is None:
            train = matrix
        else:
            train = matrix[strains != spec.held_out]
        labels = stage_labels(train, config.stage_split)
        genes = list(ranker(train, labels, sampler.seed))[: spec.k]
        if len(genes) < spec.k:
            raise InputValidationError(
                f"Ranker returned {len(genes)} genes, fewer than K={spec.k}."
            )

        early = train[labels == 0]
        reference = reference_statistics(early, genes)
        distances = mahalanobis_distance(matrix, reference)

        times = sample_times(matrix)
        in_window = (times >= 1) & (times <= N_DAYS)
        distances = distances[in_window]
        latent = _truncation_mask(distances, spec, config.truncate_after)
        with np.errstate(divide="ignore"):
            actual = np.log(distances.to_numpy())

        observations = to_observations(distances, latent)
        model = CurveModel(observations, strains=all_strains, sigma_prior=sampler.sigma_prior)
        result = run_chains(model, sampler)
        report = check_convergence(result, sampler.psrf_threshold)
        pooled = pool_chains(result, report)

        predictions = None
        if spec.held_out is not None:
            predictions = prediction_table(pooled, observations, actual, spec.held_out)
            predictions.insert(0, "fold", spec.fold_id)

    except (ValueError, SamplerInitializationError) as exc:
        logger.warning("fold %s failed: %s", spec.fold_id, exc)
        return FoldResult(
            fold_id=spec.fold_id,
            k=spec.k,
            held_out=spec.held_out,
            truncated=spec.truncate,
            status="failed",
            error=f"{type(exc).__name__}: {exc}",
        )

    logger.info(
        "fold %s: done (max PSRF %.3f, %d latent)",
        spec.fold_id, report.summary["max"], model.n_latent,
    )
    return FoldResult(
        fold_id=spec.fold_id,
        k=spec.k,
        held_out=spec.held_out,
        truncated=spec.truncate,
        status="ok",
        genes=tuple(genes),
        ranking_strains=tuple(sorted(set(sample_strains(train).tolist()))),
        reference_strains=tuple(sorted(set(sample_strains(early).tolist()))),
        n_latent=model.n_latent,
        quantiles=posterior_quantiles(pooled, fold=spec.fold_id),
        onset=onset_summary(pooled, all_strains),
        predictions=predictions,
        psrf=report.summary,
        converged=report.converged,
        failed_chains=list(result.failures),
    )


def fit_curves(
    matrix: pd.DataFrame,
    k: int,
    config: Optional[CrossValidationConfig] = None,
    ranker: Callable = rank_features,
) -> FoldResult:
    """Fit every strain's curve on the full data set (no strain held out)."""
    return run_fold(matrix, FoldSpec(k=k), config, ranker)


@dataclass
class CrossValidationResult:
    """Ordered fold results of a sweep plus aggregate views over the ok folds."""

    folds: list

    def completed(self) -> list:
        return [f for f in self.folds if f.ok]

    def failures(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(f.fold_id, f.k, f.held_out, f.error) for f in self.folds if not f.ok],
            columns=["fold", "k", "held_out", "error"],
        )

    def quantile_table(self) -> pd.DataFrame:
        frames = [f.quantiles for f in self.completed()]
        return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()

    def prediction_table(self) -> pd.DataFrame:
        frames = [f.predictions for f in self.completed() if f.predictions is not None]
        return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()

    def gene_ranks(self) -> pd.DataFrame:
        """Selected genes per fold: columns fold, k, held_out, rank, gene."""
        rows = [
            (f.fold_id, f.k, f.held_out, rank, gene)
            for f in self.completed()
            for rank, gene in enumerate(f.genes, start=1)
        ]
        return pd.DataFrame(rows, columns=["fold", "k", "held_out", "rank", "gene"])

    def prediction_errors(self) -> pd.DataFrame:
        """
        Out-of-sample accuracy per fold.

        Truncated folds are scored on their latent observations only; full
        folds on all held-out observations.
        """
        rows = []
        for f in self.completed():
            if f.predictions is None:
                continue
            scores = prediction_error(f.predictions, latent_only=f.truncated)
            rows.append({"fold": f.fold_id, "k": f.k, "held_out": f.held_out, **scores})
        return pd.DataFrame(rows, columns=["fold", "k", "held_out", "n", "rmse", "mae", "coverage"])

    def convergence_table(self) -> pd.DataFrame:
        rows = [
            {"fold": f.fold_id, **f.psrf, "converged": f.converged, "failed_chains": len(f.failed_chains)}
            for f in self.completed()
        ]
        return pd.DataFrame(rows)


def cross_validate(
    matrix: pd.DataFrame,
    config: Optional[CrossValidationConfig] = None,
    truncate: bool = False,
    ranker: Callable = rank_features,
) -> CrossValidationResult:
    """
    Leave-one-strain-out sweep over every K in ``config.k_values``.

    Parameters
    ----------
    matrix : pd.DataFrame
        Samples × genes matrix indexed by (strain, replicate, time).
    config : CrossValidationConfig, optional
        Sweep and sampler settings. With ``n_jobs > 1`` folds run in a
        process pool and chains within a fold run serially.
    truncate : bool
        Withhold the held-out strain's observations after its
        ``truncate_after``-th time point.
    ranker : callable
        Feature ranker, see run_fold. Must be picklable when n_jobs > 1.

    Returns
    -------
    CrossValidationResult
        Fold results in (K, strain) order.
    """
    config = config or CrossValidationConfig()
    strains = sorted(set(sample_strains(matrix).tolist()))
    specs = [FoldSpec(k=k, held_out=s, truncate=truncate) for k in config.k_values for s in strains]
    logger.info("cross-validation: %d folds (truncate=%s)", len(specs), truncate)

    if config.n_jobs > 1 and len(specs) > 1:
        fold_config = dataclasses.replace(
            config, sampler=dataclasses.replace(config.sampler, n_jobs=1)
        )
        with ProcessPoolExecutor(max_workers=config.n_jobs) as pool:
            folds = list(pool.map(
                run_fold,
                [matrix] * len(specs),
                specs,
                [fold_config] * len(specs),
                [ranker] * len(specs),
            ))
    else:
        folds = [run_fold(matrix, spec, config, ranker) for spec in specs]

    n_failed = sum(not f.ok for f in folds)
    if n_failed:
        logger.warning("cross-validation: %d of %d folds failed", n_failed, len(folds))
    return CrossValidationResult(folds=folds)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _truncation_mask(distances: pd.Series, spec: FoldSpec, keep: int) -> np.ndarray:
    """True for held-out observations after the strain's ``keep``-th distinct time."""
    latent = np.zeros(len(distances), dtype=bool)
    if not spec.truncate or spec.held_out is None:
        return latent
    strains = distances.index.get_level_values("strain").to_numpy()
    times = distances.index.get_level_values("time").to_numpy(dtype=float)
    held = strains == spec.held_out
    distinct = np.unique(times[held])
    if distinct.size <= keep:
        return latent
    return held & (times > distinct[keep - 1])
