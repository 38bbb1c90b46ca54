"""
knotfit/distance.py

Multivariate novelty scores for expression samples.

    rank_features         - order genes by random-forest importance for an
                            early/late stage split.
    reference_statistics  - mean, covariance and pseudo-inverse of the
                            reference (early-stage) samples over a gene subset.
    mahalanobis_distance  - sqrt((x - mean)^T S^+ (x - mean)) for every sample.

The pseudo-inverse keeps the distance defined when the gene subset is as large
as, or larger than, the number of reference samples.
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import linalg

from knotfit.errors import InputValidationError, SingularCovarianceWarning


@dataclass(frozen=True)
class ReferenceStatistics:
    """Location and scale of the reference samples over ``genes``."""

    genes: tuple
    mean: np.ndarray
    covariance: np.ndarray
    precision: np.ndarray
    n_reference: int
    rank: int

    @property
    def singular(self) -> bool:
        return self.rank < len(self.genes) or self.n_reference <= len(self.genes)


def rank_features(
    matrix: pd.DataFrame,
    labels,
    seed: Optional[int] = 0,
    n_estimators: int = 500,
) -> list:
    """
    Rank genes by how well they separate early from late samples.

    Fits a scikit-learn RandomForestClassifier on the sample × gene matrix and
    orders genes by impurity-based importance, highest first. Ties are broken
    by gene id so the order is deterministic for a given seed.

    Parameters
    ----------
    matrix : pd.DataFrame
        Samples × genes expression matrix.
    labels : array-like
        Binary stage label per row of ``matrix`` (0 = early, 1 = late).
    seed : int, optional
        random_state for the forest.
    n_estimators : int
        Number of trees.

    Returns
    -------
    list of str
        Gene ids, most important first.

    Raises
    ------
    ValueError
        If ``labels`` does not match the matrix.
    InputValidationError
        If ``labels`` holds a single class.
    """
    from sklearn.ensemble import RandomForestClassifier

    y = np.asarray(labels)
    if y.shape[0] != matrix.shape[0]:
        raise ValueError(
            f"labels has {y.shape[0]} entries but matrix has {matrix.shape[0]} rows."
        )
    if np.unique(y).size < 2:
        raise InputValidationError("rank_features needs both early and late samples.")

    forest = RandomForestClassifier(n_estimators=n_estimators, random_state=seed)
    forest.fit(matrix.values, y)

    genes = np.asarray(matrix.columns, dtype=str)
    order = np.lexsort((genes, -forest.feature_importances_))
    return genes[order].tolist()


def reference_statistics(
    matrix: pd.DataFrame,
    genes: Sequence[str],
) -> ReferenceStatistics:
    """
    Mean, covariance and pseudo-inverse of reference samples over ``genes``.

    Parameters
    ----------
    matrix : pd.DataFrame
        Reference samples × genes (typically early-stage samples of the
        training strains only).
    genes : sequence of str
        Gene subset, e.g. the top-K of ``rank_features``.

    Returns
    -------
    ReferenceStatistics

    Raises
    ------
    InputValidationError
        If a gene is missing from ``matrix`` or fewer than two reference
        samples are available.

    Warns
    -----
    SingularCovarianceWarning
        If the covariance is rank-deficient (for example n_reference <= K).
    """
    genes = tuple(genes)
    missing = [g for g in genes if g not in matrix.columns]
    if missing:
        raise InputValidationError(
            f"Genes not present in the expression matrix: {missing[:5]}", record=missing
        )
    if matrix.shape[0] < 2:
        raise InputValidationError(
            f"Need at least 2 reference samples, got {matrix.shape[0]}."
        )

    x = matrix.loc[:, list(genes)].to_numpy(dtype=float)
    mean = x.mean(axis=0)
    cov = np.atleast_2d(np.cov(x, rowvar=False))
    precision, rank = linalg.pinvh(cov, return_rank=True)

    stats = ReferenceStatistics(
        genes=genes,
        mean=mean,
        covariance=cov,
        precision=precision,
        n_reference=int(x.shape[0]),
        rank=int(rank),
    )
    if stats.singular:
        warnings.warn(
            f"Reference covariance has rank {rank} < {len(genes)} genes "
            f"({stats.n_reference} reference samples); using the pseudo-inverse.",
            SingularCovarianceWarning,
            stacklevel=2,
        )
    return stats


def mahalanobis_distance(matrix: pd.DataFrame, reference: ReferenceStatistics) -> pd.Series:
    """
    Mahalanobis distance of every sample from the reference mean.

    Parameters
    ----------
    matrix : pd.DataFrame
        Samples × genes; must contain ``reference.genes``.
    reference : ReferenceStatistics

    Returns
    -------
    pd.Series
        Non-negative distances, indexed like ``matrix``, named "distance".
    """
    x = matrix.loc[:, list(reference.genes)].to_numpy(dtype=float) - reference.mean
    q = np.einsum("ij,jk,ik->i", x, reference.precision, x)
    # pseudo-inverse round-off can leave tiny negative quadratic forms
    return pd.Series(np.sqrt(np.clip(q, 0.0, None)), index=matrix.index, name="distance")
