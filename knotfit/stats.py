"""
knotfit/stats.py

Posterior summaries and out-of-sample scoring.

    posterior_quantiles - long table (quantile, parameter, index, strain, fold)
                          → value for curve and knot-time posteriors.
    onset_summary       - per-strain onset (kappa[2]) and peak (kappa[3]) timing.
    prediction_table    - per-observation predicted vs actual log distance for
                          one strain.
    prediction_error    - RMSE, MAE and interval coverage of a prediction table.
"""

import numpy as np
import pandas as pd

from knotfit.model import ParameterKey

DEFAULT_QUANTILES = (0.025, 0.5, 0.975)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def posterior_quantiles(
    pooled,
    fold: str = "full",
    parameters: tuple = ("mu", "kappa"),
    quantiles: tuple = DEFAULT_QUANTILES,
) -> pd.DataFrame:
    """
    Quantiles of pooled posterior draws in long format.

    Parameters
    ----------
    pooled : PooledSamples
        Output of knotfit.diagnostics.pool_chains.
    fold : str
        Fold identifier stamped on every row.
    parameters : tuple of str
        Parameter names to summarise ("mu", "kappa", "alpha", "iota",
        "sigma", "d").
    quantiles : tuple of float
        Probabilities in [0, 1].

    Returns
    -------
    pd.DataFrame
        Columns: quantile, parameter, index, strain, fold, value, converged.
        ``index`` is the day for mu and the knot number for kappa/alpha.
    """
    frames = []
    for name in parameters:
        keys, draws = pooled.select(name)
        if not keys:
            continue
        q = np.quantile(draws, quantiles, axis=0)  # (n_quantiles, n_keys)
        for qi, prob in enumerate(quantiles):
            frames.append(pd.DataFrame({
                "quantile": prob,
                "parameter": name,
                "index": [k.index for k in keys],
                "strain": [k.strain for k in keys],
                "fold": fold,
                "value": q[qi],
            }))

    columns = ["quantile", "parameter", "index", "strain", "fold", "value"]
    if not frames:
        return pd.DataFrame(columns=columns + ["converged"])
    out = pd.concat(frames, ignore_index=True)[columns]
    out["converged"] = pooled.converged
    return out


def onset_summary(pooled, strains) -> pd.DataFrame:
    """
    Onset and peak timing per strain.

    Returns
    -------
    pd.DataFrame
        One row per strain with columns strain, onset_median, onset_lower,
        onset_upper (kappa[2]) and peak_median, peak_lower, peak_upper
        (kappa[3]); bounds are the 2.5% and 97.5% quantiles.
    """
    records = []
    for strain in strains:
        row = {"strain": strain}
        for label, idx in (("onset", 2), ("peak", 3)):
            draws = pooled.column(ParameterKey("kappa", idx, strain))
            lo, med, hi = np.quantile(draws, DEFAULT_QUANTILES)
            row[f"{label}_median"] = float(med)
            row[f"{label}_lower"] = float(lo)
            row[f"{label}_upper"] = float(hi)
        records.append(row)
    return pd.DataFrame(records)


def prediction_table(pooled, observations, actual: np.ndarray, strain: str) -> pd.DataFrame:
    """
    Predicted versus actual log distances for the observations of one strain.

    Parameters
    ----------
    pooled : PooledSamples
    observations : sequence of Observation
        The observations the model was fitted on (observed and latent).
    actual : np.ndarray
        True log distance per observation, including the values that were
        withheld as latent.
    strain : str
        Strain to score.

    Returns
    -------
    pd.DataFrame
        One row per observation of ``strain`` with columns position, strain,
        replicate, time, latent, actual, predicted (posterior median of the
        curve at that day), lower and upper (2.5% / 97.5% of the posterior
        predictive: the latent draw for latent observations, curve plus noise
        otherwise).
    """
    sigma = np.abs(pooled.column(ParameterKey("sigma")))
    rng = np.random.default_rng(0)
    records = []
    for pos, obs in enumerate(observations):
        if obs.strain != strain:
            continue
        mu = pooled.column(ParameterKey("mu", obs.day, strain))
        if obs.is_latent:
            predictive = pooled.column(ParameterKey("d", pos, strain))
        else:
            predictive = mu + sigma * rng.standard_normal(mu.size)
        lo, hi = np.quantile(predictive, (DEFAULT_QUANTILES[0], DEFAULT_QUANTILES[2]))
        records.append({
            "position": pos,
            "strain": strain,
            "replicate": obs.replicate,
            "time": obs.time,
            "latent": obs.is_latent,
            "actual": float(actual[pos]),
            "predicted": float(np.median(mu)),
            "lower": float(lo),
            "upper": float(hi),
        })
    return pd.DataFrame(records)


def prediction_error(table: pd.DataFrame, latent_only: bool = False) -> dict:
    """
    Accuracy of a prediction table.

    Parameters
    ----------
    table : pd.DataFrame
        Output of prediction_table (possibly concatenated across folds).
    latent_only : bool
        Score only rows that were withheld from the fit.

    Returns
    -------
    dict
        n         - number of scored rows
        rmse      - root mean squared error of predicted vs actual
        mae       - mean absolute error
        coverage  - fraction of actual values inside [lower, upper]
    """
    if latent_only and len(table):
        table = table[table["latent"]]
    if len(table) == 0:
        return {"n": 0, "rmse": np.nan, "mae": np.nan, "coverage": np.nan}
    err = table["predicted"].to_numpy() - table["actual"].to_numpy()
    inside = (table["actual"] >= table["lower"]) & (table["actual"] <= table["upper"])
    return {
        "n": int(len(table)),
        "rmse": round(float(np.sqrt(np.mean(err ** 2))), 6),
        "mae": round(float(np.mean(np.abs(err))), 6),
        "coverage": round(float(inside.mean()), 4),
    }
