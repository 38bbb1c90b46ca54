"""
tests/test_mcmc.py

Unit tests for knotfit.mcmc.

Runs are kept short (a few hundred sweeps); the tests check structural
properties of the draws rather than posterior accuracy.
"""

import pytest
import numpy as np
from knotfit.config import SamplerConfig
from knotfit.diagnostics import check_convergence
from knotfit.errors import SamplerInitializationError
from knotfit.mcmc import AdaptiveMetropolis, McmcResult, run_chains
from knotfit.model import CurveModel, Latent, Observation, Observed, ParameterKey
from knotfit.spline import evaluate_spline


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def model():
    rng = np.random.default_rng(3)
    shape = {1.0: 0.0, 7.0: 1.0, 14.0: 3.0, 21.0: 2.0}
    obs = []
    for strain in ("A", "B", "C"):
        for rep in ("r1", "r2"):
            for t, v in shape.items():
                outcome = Latent() if (strain == "C" and t == 21.0) else Observed(v + rng.normal(0, 0.2))
                obs.append(Observation(strain, t, outcome, replicate=rep))
    return CurveModel(obs)


@pytest.fixture(scope="module")
def config():
    return SamplerConfig(n_chains=2, niter=300, nburnin=150, thin=3, seed=1, adapt_batch=25)


@pytest.fixture(scope="module")
def result(model, config):
    return run_chains(model, config)


# ---------------------------------------------------------------------------
# run_chains - shapes and bookkeeping
# ---------------------------------------------------------------------------

class TestRunChains:

    def test_returns_result(self, result):
        assert isinstance(result, McmcResult)
        assert result.n_chains == 2
        assert result.failures == []

    def test_draw_shape(self, result, model, config):
        for chain in result.chains:
            assert chain.draws.shape == (config.n_draws, len(model.keys()))

    def test_stacked_shape(self, result, config, model):
        assert result.stacked().shape == (2, config.n_draws, len(model.keys()))

    def test_chains_differ(self, result):
        assert not np.array_equal(result.chains[0].draws, result.chains[1].draws)

    def test_reproducible(self, model, config, result):
        again = run_chains(model, config)
        for a, b in zip(result.chains, again.chains):
            np.testing.assert_array_equal(a.draws, b.draws)

    def test_explicit_seeds(self, model):
        cfg = SamplerConfig(n_chains=2, niter=60, nburnin=30, thin=1, seeds=[11, 12])
        res = run_chains(model, cfg)
        assert [c.seed for c in res.chains] == [11, 12]

    def test_acceptance_rates_in_unit_interval(self, result):
        for chain in result.chains:
            rates = np.array(list(chain.acceptance.values()))
            assert np.all((rates >= 0.0) & (rates <= 1.0))
            assert ("kappa3", 0) in chain.acceptance

    def test_parallel_matches_serial(self, model):
        serial = SamplerConfig(n_chains=2, niter=60, nburnin=30, thin=2, seed=9)
        parallel = SamplerConfig(n_chains=2, niter=60, nburnin=30, thin=2, seed=9, n_jobs=2)
        a = run_chains(model, serial)
        b = run_chains(model, parallel)
        for ca, cb in zip(a.chains, b.chains):
            np.testing.assert_array_equal(ca.draws, cb.draws)

    def test_same_seed_chains_psrf_near_one(self, model):
        cfg = SamplerConfig(n_chains=2, niter=300, nburnin=150, thin=1, seeds=[5, 5])
        res = run_chains(model, cfg)
        np.testing.assert_array_equal(res.chains[0].draws, res.chains[1].draws)
        report = check_convergence(res)
        assert report.converged
        assert report.summary["max"] == pytest.approx(1.0, abs=1e-2)


# ---------------------------------------------------------------------------
# Constraints hold on every retained draw
# ---------------------------------------------------------------------------

class TestDrawConstraints:

    def test_knot_order(self, result, model):
        for chain in result.chains:
            for s in model.strains:
                k2 = chain.column(ParameterKey("kappa", 2, s))
                k3 = chain.column(ParameterKey("kappa", 3, s))
                assert np.all((k2 > 0) & (k2 < 10))
                assert np.all(k2 < k3)
                assert np.all(k3 < 28)

    def test_fixed_knots(self, result):
        chain = result.chains[0]
        np.testing.assert_array_equal(chain.column(ParameterKey("kappa", 1, "A")), 0.0)
        np.testing.assert_array_equal(chain.column(ParameterKey("kappa", 4, "B")), 28.0)

    def test_alpha2_equals_alpha1(self, result, model):
        for chain in result.chains:
            for s in model.strains:
                np.testing.assert_array_equal(
                    chain.column(ParameterKey("alpha", 1, s)),
                    chain.column(ParameterKey("alpha", 2, s)),
                )

    def test_sigma_positive(self, result):
        for chain in result.chains:
            assert np.all(chain.column(ParameterKey("sigma")) > 0)

    def test_iota_in_bounds(self, result):
        for chain in result.chains:
            for j in (1, 2, 3):
                iota = chain.column(ParameterKey("iota", j))
                assert np.all((iota > 0) & (iota < 10))

    def test_mu_matches_knots(self, result, model):
        """Cached curves agree with the spline through each draw's knots."""
        chain = result.chains[1]
        for s in model.strains:
            for i in (0, chain.n_draws // 2, chain.n_draws - 1):
                knots = [chain.column(ParameterKey("kappa", j, s))[i] for j in range(1, 5)]
                values = [chain.column(ParameterKey("alpha", j, s))[i] for j in range(1, 5)]
                mu = [chain.column(ParameterKey("mu", d, s))[i] for d in range(1, 29)]
                np.testing.assert_allclose(mu, evaluate_spline(knots, values), atol=1e-10)

    def test_latent_draws_move(self, result):
        d = result.chains[0].column(ParameterKey("d", 23, "C"))
        assert np.unique(d).size > 1


# ---------------------------------------------------------------------------
# Initialisation failures
# ---------------------------------------------------------------------------

class TestInitialisationFailures:

    def test_all_chains_fail_raises(self, model, monkeypatch):
        def fail(rng, max_attempts=100):
            raise SamplerInitializationError("no valid start")

        monkeypatch.setattr(model, "initial_state", fail)
        cfg = SamplerConfig(n_chains=2, niter=20, nburnin=10, thin=1)
        with pytest.raises(SamplerInitializationError, match="All 2 chains"):
            run_chains(model, cfg)

    def test_partial_failure_recorded(self, model, monkeypatch):
        original = model.initial_state
        calls = []

        def flaky(rng, max_attempts=100):
            calls.append(1)
            if len(calls) == 1:
                raise SamplerInitializationError("no valid start")
            return original(rng, max_attempts)

        monkeypatch.setattr(model, "initial_state", flaky)
        cfg = SamplerConfig(n_chains=2, niter=20, nburnin=10, thin=1)
        res = run_chains(model, cfg)
        assert res.n_chains == 1
        assert res.chains[0].chain_id == 1
        assert res.failures[0][0] == 0
        assert "no valid start" in res.failures[0][1]

    def test_sampler_propagates_init_error(self, model, monkeypatch):
        def fail(rng, max_attempts=100):
            raise SamplerInitializationError("no valid start")

        monkeypatch.setattr(model, "initial_state", fail)
        with pytest.raises(SamplerInitializationError):
            AdaptiveMetropolis(model, SamplerConfig(niter=20, nburnin=10)).run(0, 1)
