"""
knotfit/simulate.py

Simulation framework for validating curve recovery.

Generates long-format expression data for several strains measured at a few
days post infection, with a known onset and peak embedded in a chosen set of
informative genes. The remaining genes carry only noise, so feature ranking,
distance scoring and curve fitting can be checked against ground truth.

Core design:
    - Every gene has one baseline level shared by all strains
    - Informative genes respond on a log scale: the shift above baseline is
      noise_sd * (exp(c(t)) - 1), with c(t) a hinge curve that is flat at 0
      until the onset day, rises to ``peak_level`` at the peak day and moves
      linearly to ``end_level`` at day 28
    - Onset and peak days can vary per strain (``strain_jitter``)
    - Replicates differ only by measurement noise
"""

import numpy as np
import pandas as pd
from typing import Optional

from knotfit.spline import N_DAYS, evaluate_spline


# ---------------------------------------------------------------------------
# Primary simulation entry point
# ---------------------------------------------------------------------------

def simulate_strains(
    n_strains: int = 7,
    times: tuple = (1, 7, 14, 21),
    n_replicates: int = 3,
    n_genes: int = 10,
    informative_genes: Optional[list] = None,
    onset_day: float = 6.0,
    peak_day: float = 14.0,
    peak_level: float = 4.0,
    end_level: float = 2.0,
    noise_sd: float = 0.3,
    baseline_mean: float = 5.0,
    strain_jitter: float = 0.0,
    seed: Optional[int] = 42,
) -> pd.DataFrame:
    """
    Simulate per-strain expression time courses with a known response curve.

    Parameters
    ----------
    n_strains : int
        Number of strains ("S1", "S2", ...).
    times : tuple of float
        Sampling days, shared by all strains.
    n_replicates : int
        Replicates per (strain, time).
    n_genes : int
        Total number of genes.
    informative_genes : list of int, optional
        Indices of genes carrying the response. Defaults to [0].
    onset_day : float
        Day the response starts rising.
    peak_day : float
        Day of maximal response.
    peak_level : float
        Log-scale response at the peak.
    end_level : float
        Log-scale response at day 28.
    noise_sd : float
        Measurement noise SD, also the unit of the response amplitude.
    baseline_mean : float
        Mean of the per-gene baseline levels.
    strain_jitter : float
        SD of per-strain shifts applied to onset and peak days.
    seed : int, optional
        Random seed for reproducibility.

    Returns
    -------
    pd.DataFrame
        Long-format dataframe with columns gene_id, strain, replicate, time,
        value. Ground truth is stored in ``df.attrs``.

    Raises
    ------
    ValueError
        If onset_day and peak_day are not ordered inside (0, 28).

    Examples
    --------
    >>> df = simulate_strains(n_strains=5, times=(1, 10, 14, 18), seed=0)
    >>> df.head()
    """
    if not 0 < onset_day < peak_day < N_DAYS:
        raise ValueError(
            f"Need 0 < onset_day < peak_day < {N_DAYS}, got {onset_day} and {peak_day}."
        )
    rng = np.random.default_rng(seed)

    if informative_genes is None:
        informative_genes = [0]

    strains = [f"S{i + 1}" for i in range(n_strains)]
    genes = [f"gene_{g:03d}" for g in range(n_genes)]
    gene_baseline = rng.normal(baseline_mean, 1.0, size=n_genes)
    times = np.asarray(times, dtype=float)

    onsets, peaks = {}, {}
    records = []
    for strain in strains:
        onset = onset_day + rng.normal(0.0, strain_jitter) if strain_jitter else onset_day
        peak = peak_day + rng.normal(0.0, strain_jitter) if strain_jitter else peak_day
        onset = float(np.clip(onset, 0.5, N_DAYS - 2.0))
        peak = float(np.clip(peak, onset + 0.5, N_DAYS - 1.0))
        onsets[strain], peaks[strain] = onset, peak

        response = response_curve(onset, peak, peak_level, end_level, times)
        shift = noise_sd * np.expm1(response)

        for r in range(n_replicates):
            for ti, t in enumerate(times):
                values = gene_baseline + rng.normal(0.0, noise_sd, size=n_genes)
                values[informative_genes] += shift[ti]
                for g, gene in enumerate(genes):
                    records.append({
                        "gene_id": gene,
                        "strain": strain,
                        "replicate": f"r{r + 1}",
                        "time": t,
                        "value": values[g],
                    })

    df = pd.DataFrame(records)

    df.attrs["informative_genes"] = [genes[g] for g in informative_genes]
    df.attrs["onset_days"] = onsets
    df.attrs["peak_days"] = peaks
    df.attrs["times"] = tuple(times.tolist())
    df.attrs["peak_level"] = peak_level
    df.attrs["end_level"] = end_level
    df.attrs["noise_sd"] = noise_sd

    return df


def response_curve(onset, peak, peak_level, end_level, times=None) -> np.ndarray:
    """Log-scale response: 0 until onset, up to peak_level at peak, then to end_level at day 28."""
    return evaluate_spline(
        [0.0, onset, peak, float(N_DAYS)], [0.0, 0.0, peak_level, end_level], times
    )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def get_ground_truth(df: pd.DataFrame) -> dict:
    """
    Extract ground truth metadata from a simulated dataframe.

    Parameters
    ----------
    df : pd.DataFrame
        Output of simulate_strains.

    Returns
    -------
    dict
        informative_genes, onset_days, peak_days, times, strains.
    """
    if not df.attrs:
        raise ValueError(
            "This dataframe does not have simulation metadata. "
            "Make sure it was generated by simulate_strains."
        )
    return {
        "informative_genes": df.attrs.get("informative_genes"),
        "onset_days": df.attrs.get("onset_days"),
        "peak_days": df.attrs.get("peak_days"),
        "times": df.attrs.get("times"),
        "strains": sorted(df["strain"].unique().tolist()),
    }


def evaluation_report(onset: pd.DataFrame, df: pd.DataFrame, selected_genes=None) -> dict:
    """
    Compare fitted onset/peak timing against known ground truth.

    Parameters
    ----------
    onset : pd.DataFrame
        Output of knotfit.stats.onset_summary.
    df : pd.DataFrame
        Simulated dataframe with ground truth in attrs.
    selected_genes : list of str, optional
        Genes chosen by the ranker; scored for recall of informative genes.

    Returns
    -------
    dict
        peak_mae, onset_mae, peak_coverage (fraction of strains whose true
        peak lies in the 95% interval), gene_recall (if selected_genes given).
    """
    truth = get_ground_truth(df)
    merged = onset.assign(
        true_onset=onset["strain"].map(truth["onset_days"]),
        true_peak=onset["strain"].map(truth["peak_days"]),
    )
    covered = merged["true_peak"].between(merged["peak_lower"], merged["peak_upper"])
    report = {
        "peak_mae": round(float((merged["peak_median"] - merged["true_peak"]).abs().mean()), 3),
        "onset_mae": round(float((merged["onset_median"] - merged["true_onset"]).abs().mean()), 3),
        "peak_coverage": round(float(covered.mean()), 3),
    }
    if selected_genes is not None:
        true_genes = set(truth["informative_genes"])
        hit = true_genes & set(selected_genes)
        report["gene_recall"] = round(len(hit) / len(true_genes), 3) if true_genes else 0.0
    return report
