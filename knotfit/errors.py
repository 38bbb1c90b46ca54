"""
knotfit/errors.py

Error and warning types raised by the curve-fitting pipeline.

    InputValidationError        - malformed observation or key mismatch;
                                  fatal for the fold that hit it.
    SamplerInitializationError  - no valid starting state within the retry
                                  budget; fatal for the chain.
    ConvergenceWarning          - PSRF above threshold; results still pooled.
    SingularCovarianceWarning   - reference covariance near-singular; the
                                  pseudo-inverse is used instead.
"""


class InputValidationError(ValueError):
    """Raised when an observation or input table cannot be used."""

    def __init__(self, message: str, record=None):
        super().__init__(message)
        self.record = record


class SamplerInitializationError(RuntimeError):
    """Raised when a chain cannot draw a valid initial state."""


class ConvergenceWarning(RuntimeWarning):
    """Chains have not mixed: PSRF exceeds the configured threshold."""


class SingularCovarianceWarning(RuntimeWarning):
    """Reference covariance is rank-deficient for the chosen gene subset."""
