"""
knotfit - Knot-based Onset Trajectory fitting

Top-level package exposing the knotfit public API.
"""

from knotfit import simulate
from knotfit.spline import evaluate_spline, hinge_basis
from knotfit.model import CurveModel, Observation, Observed, Latent, ParameterKey
from knotfit.mcmc import run_chains, AdaptiveMetropolis
from knotfit.diagnostics import psrf, psrf_summary, effective_sample_size, check_convergence, pool_chains
from knotfit.distance import rank_features, reference_statistics, mahalanobis_distance
from knotfit.preprocess import to_sample_matrix, intersect_genes, map_time_labels, stage_labels
from knotfit.stats import posterior_quantiles, onset_summary, prediction_error
from knotfit.crossval import FoldSpec, run_fold, fit_curves, cross_validate
from knotfit.config import SamplerConfig, CrossValidationConfig, load_config
from knotfit.errors import (
    InputValidationError,
    SamplerInitializationError,
    ConvergenceWarning,
    SingularCovarianceWarning,
)

__version__ = "0.1.0"
__all__ = [
    "simulate",
    "evaluate_spline",
    "hinge_basis",
    "CurveModel",
    "Observation",
    "Observed",
    "Latent",
    "ParameterKey",
    "run_chains",
    "AdaptiveMetropolis",
    "psrf",
    "psrf_summary",
    "effective_sample_size",
    "check_convergence",
    "pool_chains",
    "rank_features",
    "reference_statistics",
    "mahalanobis_distance",
    "to_sample_matrix",
    "intersect_genes",
    "map_time_labels",
    "stage_labels",
    "posterior_quantiles",
    "onset_summary",
    "prediction_error",
    "FoldSpec",
    "run_fold",
    "fit_curves",
    "cross_validate",
    "SamplerConfig",
    "CrossValidationConfig",
    "load_config",
    "InputValidationError",
    "SamplerInitializationError",
    "ConvergenceWarning",
    "SingularCovarianceWarning",
]
