"""
tests/test_distance.py

Unit tests for knotfit.distance.
"""

import pytest
import numpy as np
import pandas as pd
from scipy.stats import chi
from knotfit.distance import mahalanobis_distance, rank_features, reference_statistics
from knotfit.errors import InputValidationError, SingularCovarianceWarning


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def reference():
    rng = np.random.default_rng(0)
    cov = np.array([[1.0, 0.5, 0.0], [0.5, 2.0, 0.3], [0.0, 0.3, 0.5]])
    x = rng.multivariate_normal([1.0, 2.0, 3.0], cov, size=200)
    return pd.DataFrame(x, columns=["g1", "g2", "g3"])


@pytest.fixture
def staged():
    """gene_a separates early from late; the others are noise."""
    rng = np.random.default_rng(1)
    labels = np.repeat([0, 1], 20)
    df = pd.DataFrame({
        "gene_a": labels * 5.0 + rng.normal(0, 0.3, 40),
        "gene_b": rng.normal(0, 1, 40),
        "gene_c": rng.normal(0, 1, 40),
    })
    return df, labels


# ---------------------------------------------------------------------------
# reference_statistics / mahalanobis_distance
# ---------------------------------------------------------------------------

class TestMahalanobis:

    def test_mean_has_zero_distance(self, reference):
        stats = reference_statistics(reference, ["g1", "g2", "g3"])
        at_mean = pd.DataFrame([stats.mean], columns=["g1", "g2", "g3"])
        assert mahalanobis_distance(at_mean, stats).iloc[0] == pytest.approx(0.0, abs=1e-10)

    def test_in_sample_mean_square(self, reference):
        """Mean squared distance of the reference itself is K (n - 1) / n."""
        stats = reference_statistics(reference, ["g1", "g2", "g3"])
        d = mahalanobis_distance(reference, stats)
        n = len(reference)
        assert np.mean(d ** 2) == pytest.approx(3 * (n - 1) / n, rel=1e-8)

    def test_fresh_draws_follow_chi(self):
        """Standard normal draws scored against a standard normal reference are chi(K)."""
        k = 4
        genes = [f"g{j}" for j in range(k)]
        rng = np.random.default_rng(12)
        ref = pd.DataFrame(rng.standard_normal((2000, k)), columns=genes)
        fresh = pd.DataFrame(rng.standard_normal((5000, k)), columns=genes)

        d = mahalanobis_distance(fresh, reference_statistics(ref, genes))
        assert np.mean(d ** 2) == pytest.approx(k, rel=0.05)
        probs = [0.25, 0.5, 0.75, 0.9]
        np.testing.assert_allclose(np.quantile(d, probs), chi(k).ppf(probs), rtol=0.05)

    def test_matches_explicit_inverse(self, reference):
        stats = reference_statistics(reference, ["g1", "g3"])
        x = reference[["g1", "g3"]].to_numpy()[:5] - stats.mean
        inv = np.linalg.inv(stats.covariance)
        expected = np.sqrt(np.einsum("ij,jk,ik->i", x, inv, x))
        np.testing.assert_allclose(mahalanobis_distance(reference.iloc[:5], stats), expected)

    def test_series_indexed_like_input(self, reference):
        stats = reference_statistics(reference, ["g2"])
        d = mahalanobis_distance(reference, stats)
        assert d.name == "distance"
        assert d.index.equals(reference.index)
        assert (d >= 0).all()

    def test_gene_subset_order(self, reference):
        stats = reference_statistics(reference, ["g3", "g1"])
        assert stats.genes == ("g3", "g1")
        assert stats.covariance.shape == (2, 2)
        assert not stats.singular

    def test_missing_gene_raises(self, reference):
        with pytest.raises(InputValidationError, match="not present"):
            reference_statistics(reference, ["g1", "nope"])

    def test_single_sample_raises(self, reference):
        with pytest.raises(InputValidationError, match="at least 2"):
            reference_statistics(reference.iloc[:1], ["g1"])

    def test_singular_covariance_warns(self, reference):
        small = reference.iloc[:3]
        with pytest.warns(SingularCovarianceWarning):
            stats = reference_statistics(small, ["g1", "g2", "g3"])
        assert stats.singular
        assert stats.rank < 3
        d = mahalanobis_distance(reference, stats)
        assert np.all(np.isfinite(d)) and (d >= 0).all()

    def test_collinear_genes_warn(self, reference):
        df = reference.assign(g4=reference["g1"] * 2.0)
        with pytest.warns(SingularCovarianceWarning):
            reference_statistics(df, ["g1", "g4"])


# ---------------------------------------------------------------------------
# rank_features
# ---------------------------------------------------------------------------

class TestRankFeatures:

    def test_informative_gene_first(self, staged):
        df, labels = staged
        ranked = rank_features(df, labels, seed=0, n_estimators=100)
        assert ranked[0] == "gene_a"
        assert sorted(ranked) == ["gene_a", "gene_b", "gene_c"]

    def test_deterministic_for_seed(self, staged):
        df, labels = staged
        a = rank_features(df, labels, seed=3, n_estimators=50)
        b = rank_features(df, labels, seed=3, n_estimators=50)
        assert a == b

    def test_ties_broken_by_gene(self):
        labels = np.repeat([0, 1], 5)
        df = pd.DataFrame({"z": np.zeros(10), "y": labels * 1.0, "x": np.zeros(10)})
        assert rank_features(df, labels, n_estimators=10) == ["y", "x", "z"]

    def test_label_length_mismatch(self, staged):
        df, labels = staged
        with pytest.raises(ValueError, match="labels"):
            rank_features(df, labels[:-1])

    def test_single_class_raises(self, staged):
        df, _ = staged
        with pytest.raises(ValueError, match="early and late"):
            rank_features(df, np.zeros(len(df), dtype=int))
