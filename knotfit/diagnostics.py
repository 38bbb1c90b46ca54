"""
knotfit/diagnostics.py

Multi-chain convergence diagnostics.

    psrf               - Gelman-Rubin potential scale reduction factor per
                         quantity, from m chains of n retained draws.
    psrf_summary       - median / 90th / 95th percentile / max across quantities.
    effective_sample_size
                       - initial-positive-sequence ESS per quantity, summed
                         over chains.
    check_convergence  - PSRF + ESS for an McmcResult; warns when the max PSRF
                         exceeds the threshold.
    pool_chains        - concatenate chains once a report exists.

The diagnostics never re-run anything: a high PSRF is surfaced to the caller,
who decides whether to lengthen the run.
"""

import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd

from knotfit.errors import ConvergenceWarning
from knotfit.mcmc import McmcResult

_EPS = 1e-12


def psrf(chains) -> np.ndarray:
    """
    Potential scale reduction factor for each column.

    Parameters
    ----------
    chains : sequence of np.ndarray or np.ndarray
        m arrays of shape (n, p), or one array of shape (m, n, p). Chains are
        truncated to the shortest length.

    Returns
    -------
    np.ndarray
        Shape (p,). Quantities that are constant across all draws get 1.0;
        quantities constant within chains but different between them get inf.
        With fewer than two chains or two draws the result is all-NaN.

    Notes
    -----
    With W the mean within-chain variance and B/n the variance of the chain
    means::

        V    = (n - 1) / n * W + B / n
        PSRF = sqrt(V / W)
    """
    chains = [np.asarray(c, dtype=float) for c in chains]
    if not chains:
        raise ValueError("psrf needs at least one chain.")
    p = chains[0].shape[1]
    m = len(chains)
    n = min(c.shape[0] for c in chains)
    if m < 2 or n < 2:
        return np.full(p, np.nan)

    x = np.stack([c[:n] for c in chains])           # (m, n, p)
    chain_means = x.mean(axis=1)                     # (m, p)
    W = x.var(axis=1, ddof=1).mean(axis=0)
    B = n * chain_means.var(axis=0, ddof=1)
    V = (n - 1) / n * W + B / n

    out = np.ones(p)
    ok = W > _EPS
    out[ok] = np.sqrt(V[ok] / W[ok])
    out[~ok & (B > _EPS)] = np.inf
    return out


def psrf_summary(values) -> dict:
    """Median, 90th, 95th percentile and max of finite-or-inf PSRF values."""
    v = np.asarray(values, dtype=float)
    v = v[~np.isnan(v)]
    if v.size == 0:
        return {"median": np.nan, "q90": np.nan, "q95": np.nan, "max": np.nan}
    with np.errstate(invalid="ignore"):
        q = np.quantile(v, [0.5, 0.90, 0.95])
    # interpolating towards an inf neighbour yields nan
    q = np.where(np.isnan(q), np.inf, q)
    return {
        "median": float(q[0]),
        "q90": float(q[1]),
        "q95": float(q[2]),
        "max": float(np.max(v)),
    }


def effective_sample_size(chains, max_lag=None) -> np.ndarray:
    """
    Effective sample size per column, summed over chains.

    Autocorrelations are accumulated until the first negative lag
    (initial positive sequence). Constant columns count every draw.
    """
    chains = [np.asarray(c, dtype=float) for c in chains]
    p = chains[0].shape[1]
    total = np.zeros(p)
    for x in chains:
        n = x.shape[0]
        if n < 2:
            total += n
            continue
        lag_cap = min(1000, n // 5) if max_lag is None else int(max_lag)
        lag_cap = max(1, min(lag_cap, n // 2))
        xc = x - x.mean(axis=0)
        var = (xc * xc).mean(axis=0)
        ess = np.full(p, float(n))
        for j in np.flatnonzero(var > _EPS):
            acf_sum = 0.0
            for lag in range(1, lag_cap + 1):
                acf = float(np.dot(xc[:-lag, j], xc[lag:, j]) / ((n - lag) * var[j]))
                if acf < 0.0:
                    break
                acf_sum += acf
            ess[j] = n / max(1.0 + 2.0 * acf_sum, 1.0)
        total += ess
    return total


@dataclass
class ConvergenceReport:
    """PSRF and ESS per monitored quantity for one fit."""

    table: pd.DataFrame
    summary: dict
    threshold: float

    @property
    def converged(self) -> bool:
        return bool(self.summary["max"] <= self.threshold)

    def worst(self, n: int = 10) -> pd.DataFrame:
        return self.table[self.table["monitored"]].sort_values("psrf", ascending=False).head(n)


def check_convergence(result: McmcResult, threshold: float = 1.1) -> ConvergenceReport:
    """
    Compute PSRF and ESS for every monitored quantity of ``result``.

    Emits a ConvergenceWarning if the largest PSRF exceeds ``threshold`` (or
    only one chain is available, so mixing cannot be assessed).

    Quantities that never move (the fixed end knots) and alpha[2], which
    mirrors alpha[1], are reported in the table but left out of ``summary``.

    Returns
    -------
    ConvergenceReport
        ``table`` has columns parameter, index, strain, psrf, ess, monitored.
    """
    draws = [c.draws for c in result.chains]
    r = psrf(draws) if len(draws) > 1 else np.full(len(result.keys), np.nan)
    ess = effective_sample_size(draws)

    stacked = np.vstack(draws)
    varies = ~np.all(stacked == stacked[:1], axis=0)
    mirrored = np.array([k.name == "alpha" and k.index == 2 for k in result.keys], dtype=bool)
    monitored = varies & ~mirrored

    table = pd.DataFrame(
        [(k.name, k.index, k.strain) for k in result.keys],
        columns=["parameter", "index", "strain"],
    )
    table["psrf"] = r
    table["ess"] = ess
    table["monitored"] = monitored
    # nothing moved at all: fall back to every quantity
    summary = psrf_summary(r[monitored] if monitored.any() else r)

    report = ConvergenceReport(table=table, summary=summary, threshold=threshold)
    if np.isnan(summary["max"]):
        warnings.warn(
            f"Only {result.n_chains} chain(s) available; convergence cannot be assessed.",
            ConvergenceWarning,
            stacklevel=2,
        )
    elif not report.converged:
        worst = report.worst(1).iloc[0]
        warnings.warn(
            f"Max PSRF {summary['max']:.3f} exceeds {threshold} "
            f"(worst: {worst['parameter']}[{worst['index']},{worst['strain']}]).",
            ConvergenceWarning,
            stacklevel=2,
        )
    return report


@dataclass
class PooledSamples:
    """All retained draws of a fit, chains concatenated in chain order."""

    keys: list
    draws: np.ndarray
    chain: np.ndarray
    converged: bool
    psrf_max: float

    def column(self, key) -> np.ndarray:
        return self.draws[:, self.keys.index(key)]

    def select(self, name: str, strain=None) -> tuple:
        """(keys, draws) restricted to one parameter name and optional strain."""
        idx = [
            i for i, k in enumerate(self.keys)
            if k.name == name and (strain is None or k.strain == strain)
        ]
        return [self.keys[i] for i in idx], self.draws[:, idx]


def pool_chains(result: McmcResult, report: ConvergenceReport) -> PooledSamples:
    """
    Concatenate all chains after a convergence check.

    The report verdict travels with the pooled draws so downstream tables can
    flag low-confidence fits.
    """
    if report is None:
        raise ValueError("pool_chains requires a ConvergenceReport from check_convergence().")
    return PooledSamples(
        keys=list(result.keys),
        draws=np.vstack([c.draws for c in result.chains]),
        chain=np.concatenate([np.full(c.n_draws, c.chain_id) for c in result.chains]),
        converged=report.converged,
        psrf_max=report.summary["max"],
    )
