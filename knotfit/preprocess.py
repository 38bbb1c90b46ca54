"""
knotfit/preprocess.py

Reshaping helpers between the uniform long-format expression table and the
inputs of the distance scorer and curve model.

The long format has one row per measurement with columns
gene_id, strain, replicate, time, value. Source-specific parsing happens
upstream; these helpers only check that table, align gene sets across
sources, pivot to a samples × genes matrix, and turn distances into model
observations.
"""

import numpy as np
import pandas as pd
from typing import Optional

from knotfit.errors import InputValidationError
from knotfit.model import Latent, Observation, Observed

EXPRESSION_COLUMNS = ("gene_id", "strain", "replicate", "time", "value")
SAMPLE_KEYS = ["strain", "replicate", "time"]


def validate_expression(df: pd.DataFrame) -> None:
    """
    Check a long-format expression table.

    Raises
    ------
    InputValidationError
        If a required column is missing, a time or value is not finite, or a
        (gene_id, strain, replicate, time) key appears more than once. The
        first offending row is attached as ``record``.
    """
    missing = [c for c in EXPRESSION_COLUMNS if c not in df.columns]
    if missing:
        raise InputValidationError(f"Expression table is missing columns: {missing}.")

    for col in ("time", "value"):
        vals = pd.to_numeric(df[col], errors="coerce")
        bad = ~np.isfinite(vals.to_numpy(dtype=float))
        if bad.any():
            row = df[bad].iloc[0].to_dict()
            raise InputValidationError(f"Non-finite {col} in expression table: {row}", record=row)

    dup = df.duplicated(subset=["gene_id"] + SAMPLE_KEYS)
    if dup.any():
        row = df[dup].iloc[0].to_dict()
        raise InputValidationError(f"Duplicate measurement key: {row}", record=row)


def map_time_labels(labels, lookup: Optional[dict] = None) -> np.ndarray:
    """
    Convert experiment time labels to days post infection.

    Parameters
    ----------
    labels : array-like
        Raw time labels, e.g. "D3", "day_14" via ``lookup``, or numeric strings.
    lookup : dict, optional
        Fixed label → day table. Labels absent from the table are parsed as
        numbers.

    Returns
    -------
    np.ndarray
        Float days, same length as ``labels``.

    Raises
    ------
    InputValidationError
        If a label is neither in ``lookup`` nor numeric.
    """
    labels = pd.Series(labels, dtype=object)
    mapped = labels.map(lookup) if lookup else pd.Series(np.nan, index=labels.index)
    parsed = pd.to_numeric(labels.where(mapped.isna()), errors="coerce")
    days = mapped.astype(float).fillna(parsed)
    if days.isna().any():
        bad = labels[days.isna()].iloc[0]
        raise InputValidationError(f"Cannot map time label {bad!r} to a day.", record=bad)
    return days.to_numpy(dtype=float)


def intersect_genes(*frames: pd.DataFrame) -> tuple:
    """
    Restrict several long-format tables to the gene ids present in all of them.

    Returns
    -------
    tuple of pd.DataFrame
        One filtered copy per input, in the same order.
    """
    if not frames:
        return ()
    shared = set(frames[0]["gene_id"])
    for df in frames[1:]:
        shared &= set(df["gene_id"])
    if not shared:
        raise InputValidationError("No gene ids are shared across the input tables.")
    return tuple(df[df["gene_id"].isin(shared)].copy() for df in frames)


def to_sample_matrix(df: pd.DataFrame) -> pd.DataFrame:
    """
    Pivot a long-format table to a samples × genes matrix.

    Parameters
    ----------
    df : pd.DataFrame
        Long format with columns gene_id, strain, replicate, time, value.

    Returns
    -------
    pd.DataFrame
        Index is a (strain, replicate, time) MultiIndex sorted by strain then
        time; columns are gene ids in sorted order.

    Raises
    ------
    InputValidationError
        If the table fails ``validate_expression`` or some sample lacks a
        value for some gene.
    """
    validate_expression(df)
    wide = (
        df.pivot(index=SAMPLE_KEYS, columns="gene_id", values="value")
        .sort_index(level=["strain", "time", "replicate"])
        .sort_index(axis=1)
    )
    wide.columns.name = None
    if wide.isna().any().any():
        row, gene = np.argwhere(wide.isna().to_numpy())[0]
        raise InputValidationError(
            f"Sample {wide.index[row]} has no value for gene {wide.columns[gene]!r}.",
            record=(wide.index[row], wide.columns[gene]),
        )
    return wide


def sample_times(matrix: pd.DataFrame) -> np.ndarray:
    return matrix.index.get_level_values("time").to_numpy(dtype=float)


def sample_strains(matrix: pd.DataFrame) -> np.ndarray:
    return matrix.index.get_level_values("strain").to_numpy()


def stage_labels(matrix: pd.DataFrame, stage_split: float) -> np.ndarray:
    """Binary stage per sample: 0 (early) if time < stage_split, else 1 (late)."""
    return (sample_times(matrix) >= stage_split).astype(int)


def to_observations(
    distances: pd.Series,
    latent: Optional[np.ndarray] = None,
) -> list:
    """
    Turn per-sample Mahalanobis distances into model observations.

    Parameters
    ----------
    distances : pd.Series
        Positive distances indexed by (strain, replicate, time).
    latent : np.ndarray of bool, optional
        Samples to withhold; they become ``Latent`` observations.

    Returns
    -------
    list of Observation
        One per sample, value = log(distance).

    Raises
    ------
    InputValidationError
        If a non-latent distance is not strictly positive.
    """
    latent = np.zeros(len(distances), dtype=bool) if latent is None else np.asarray(latent)
    observations = []
    for (strain, replicate, time), dist, hide in zip(distances.index, distances.values, latent):
        if hide:
            outcome = Latent()
        else:
            if not dist > 0:
                raise InputValidationError(
                    f"Distance {dist} for sample {(strain, replicate, time)} is not positive; "
                    "cannot take its log.",
                    record=(strain, replicate, time),
                )
            outcome = Observed(float(np.log(dist)))
        observations.append(
            Observation(strain=str(strain), time=float(time), outcome=outcome, replicate=str(replicate))
        )
    return observations
