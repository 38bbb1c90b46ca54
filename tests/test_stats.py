"""
tests/test_stats.py

Unit tests for knotfit.stats.

Posterior summaries are computed from hand-built PooledSamples whose
quantiles are known exactly.
"""

import pytest
import numpy as np
import pandas as pd
from knotfit.diagnostics import PooledSamples
from knotfit.model import Latent, Observation, Observed, ParameterKey
from knotfit.stats import (
    onset_summary,
    posterior_quantiles,
    prediction_error,
    prediction_table,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

N = 1001


@pytest.fixture
def pooled():
    """Strain A: kappa2 uniform on [4, 6], kappa3 on [13, 15], curve flat at 1.0."""
    keys = [
        ParameterKey("kappa", 2, "A"),
        ParameterKey("kappa", 3, "A"),
        ParameterKey("sigma"),
    ]
    keys += [ParameterKey("mu", day, "A") for day in range(1, 29)]
    keys += [ParameterKey("d", 1, "A")]

    draws = np.empty((N, len(keys)))
    draws[:, 0] = np.linspace(4.0, 6.0, N)
    draws[:, 1] = np.linspace(13.0, 15.0, N)
    draws[:, 2] = 0.1
    draws[:, 3:31] = 1.0
    draws[:, 31] = np.linspace(0.0, 2.0, N)
    return PooledSamples(keys=keys, draws=draws, chain=np.zeros(N, dtype=int), converged=True, psrf_max=1.01)


@pytest.fixture
def observations():
    return [
        Observation("A", 7.0, Observed(1.2), replicate="r1"),
        Observation("A", 14.0, Latent(), replicate="r1"),
        Observation("B", 7.0, Observed(0.5), replicate="r1"),
    ]


# ---------------------------------------------------------------------------
# posterior_quantiles
# ---------------------------------------------------------------------------

class TestPosteriorQuantiles:

    def test_columns(self, pooled):
        q = posterior_quantiles(pooled, fold="K5_A")
        assert list(q.columns) == ["quantile", "parameter", "index", "strain", "fold", "value", "converged"]
        assert (q["fold"] == "K5_A").all()
        assert q["converged"].all()

    def test_row_count(self, pooled):
        q = posterior_quantiles(pooled)
        # 28 mu + 2 kappa keys, three quantiles each
        assert len(q) == 3 * 30

    def test_values(self, pooled):
        q = posterior_quantiles(pooled, parameters=("kappa",))
        med = q[(q["quantile"] == 0.5) & (q["index"] == 3)]["value"].iloc[0]
        lo = q[(q["quantile"] == 0.025) & (q["index"] == 2)]["value"].iloc[0]
        assert med == pytest.approx(14.0)
        assert lo == pytest.approx(4.05)

    def test_absent_parameter_empty(self, pooled):
        q = posterior_quantiles(pooled, parameters=("iota",))
        assert q.empty
        assert "converged" in q.columns


# ---------------------------------------------------------------------------
# onset_summary
# ---------------------------------------------------------------------------

class TestOnsetSummary:

    def test_one_row_per_strain(self, pooled):
        onset = onset_summary(pooled, ["A"])
        assert onset["strain"].tolist() == ["A"]
        assert onset["onset_median"].iloc[0] == pytest.approx(5.0)
        assert onset["peak_median"].iloc[0] == pytest.approx(14.0)
        assert onset["peak_lower"].iloc[0] == pytest.approx(13.05)
        assert onset["peak_upper"].iloc[0] == pytest.approx(14.95)


# ---------------------------------------------------------------------------
# prediction_table / prediction_error
# ---------------------------------------------------------------------------

class TestPredictionTable:

    def test_rows_for_strain_only(self, pooled, observations):
        table = prediction_table(pooled, observations, np.array([1.2, 0.9, 0.5]), "A")
        assert table["position"].tolist() == [0, 1]
        assert table["latent"].tolist() == [False, True]
        np.testing.assert_allclose(table["predicted"], 1.0)
        np.testing.assert_allclose(table["actual"], [1.2, 0.9])

    def test_latent_interval_from_draws(self, pooled, observations):
        table = prediction_table(pooled, observations, np.array([1.2, 0.9, 0.5]), "A")
        row = table.iloc[1]
        assert row["lower"] == pytest.approx(0.05)
        assert row["upper"] == pytest.approx(1.95)

    def test_observed_interval_from_noise(self, pooled, observations):
        table = prediction_table(pooled, observations, np.array([1.2, 0.9, 0.5]), "A")
        row = table.iloc[0]
        assert row["lower"] < 1.0 < row["upper"]
        assert row["upper"] - row["lower"] == pytest.approx(2 * 1.96 * 0.1, rel=0.2)


class TestPredictionError:

    @pytest.fixture
    def table(self):
        return pd.DataFrame({
            "latent": [False, True, True],
            "actual": [1.0, 2.0, 3.0],
            "predicted": [1.0, 2.5, 2.0],
            "lower": [0.5, 2.1, 1.0],
            "upper": [1.5, 3.0, 4.0],
        })

    def test_all_rows(self, table):
        err = prediction_error(table)
        assert err["n"] == 3
        assert err["mae"] == pytest.approx(0.5)
        assert err["rmse"] == pytest.approx(np.sqrt((0.25 + 1.0) / 3), abs=1e-6)
        assert err["coverage"] == pytest.approx(2 / 3, abs=1e-4)

    def test_latent_only(self, table):
        err = prediction_error(table, latent_only=True)
        assert err["n"] == 2
        assert err["mae"] == pytest.approx(0.75)
        assert err["coverage"] == pytest.approx(0.5)

    def test_empty(self, table):
        err = prediction_error(table[~table["latent"]], latent_only=True)
        assert err["n"] == 0
        assert np.isnan(err["rmse"])
