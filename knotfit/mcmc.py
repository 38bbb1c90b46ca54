"""
knotfit/mcmc.py

Adaptive random-walk Metropolis-within-Gibbs sampler.

Each iteration sweeps every scalar node of a CurveModel once. A node gets a
Gaussian proposal centred on its current value; the proposal is accepted with
probability min(1, exp(delta)) where delta is the change in the node's local
log density. Proposals outside the support (bounds, or kappa[3] <= kappa[2])
have -inf density and are always rejected.

Step sizes are tuned per node during burn-in: after every ``adapt_batch``
iterations the log step of each node moves by min(0.01, 1/sqrt(batch)) toward
the target acceptance rate (0.44 is optimal for one-dimensional updates).
After burn-in the steps are frozen, so retained draws come from a
time-homogeneous chain.

Chains are independent. They run serially or in a process pool and are
returned unmerged; pooling happens only after a convergence check
(see knotfit.diagnostics).
"""

import logging
import math
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from knotfit.config import SamplerConfig
from knotfit.errors import SamplerInitializationError
from knotfit.model import CurveModel

logger = logging.getLogger(__name__)


@dataclass
class ChainSamples:
    """Retained draws of one chain: ``draws[i, j]`` is key ``keys[j]`` at draw i."""

    chain_id: int
    seed: int
    keys: list
    draws: np.ndarray
    acceptance: dict = field(default_factory=dict)
    step_sizes: dict = field(default_factory=dict)

    @property
    def n_draws(self) -> int:
        return int(self.draws.shape[0])

    def column(self, key) -> np.ndarray:
        return self.draws[:, self.keys.index(key)]


@dataclass
class McmcResult:
    """Per-chain samples plus the chains that failed to initialise."""

    keys: list
    chains: list
    failures: list = field(default_factory=list)

    @property
    def n_chains(self) -> int:
        return len(self.chains)

    def stacked(self) -> np.ndarray:
        """Draws as an array of shape (n_chains, n_draws, n_keys)."""
        return np.stack([c.draws for c in self.chains])


class AdaptiveMetropolis:
    """
    Single-chain sampler over the nodes of a CurveModel.

    Parameters
    ----------
    model : CurveModel
        Model whose nodes are updated.
    config : SamplerConfig
        Iteration budget, thinning and adaptation settings.
    """

    def __init__(self, model: CurveModel, config: SamplerConfig):
        self.model = model
        self.config = config
        self.nodes = model.nodes()

    def run(self, chain_id: int, seed: int) -> ChainSamples:
        """
        Run one chain and return its retained draws.

        Raises
        ------
        SamplerInitializationError
            If no valid starting state can be drawn.
        """
        cfg = self.config
        rng = np.random.default_rng(seed)
        state = self.model.initial_state(rng, max_attempts=cfg.max_init_attempts)

        n_nodes = len(self.nodes)
        log_step = np.log([node.scale for node in self.nodes])
        batch_accepts = np.zeros(n_nodes)
        total_accepts = np.zeros(n_nodes)
        n_batches = 0

        kept = []
        for it in range(cfg.niter):
            steps = np.exp(log_step)
            noise = rng.standard_normal(n_nodes)
            log_u = np.log1p(-rng.random(n_nodes))
            for n, node in enumerate(self.nodes):
                old = _value(state, node)
                # local densities depend on neighbouring nodes; recompute each sweep
                lp_old = self.model.local_log_density(state, node, old)
                proposal = old + steps[n] * noise[n]
                lp_new = self.model.local_log_density(state, node, proposal)
                if log_u[n] < lp_new - lp_old:
                    self.model.set_value(state, node, proposal)
                    batch_accepts[n] += 1
                    if it >= cfg.nburnin:
                        total_accepts[n] += 1

            if it < cfg.nburnin and (it + 1) % cfg.adapt_batch == 0:
                n_batches += 1
                delta = min(0.01, 1.0 / math.sqrt(n_batches))
                rate = batch_accepts / cfg.adapt_batch
                log_step += np.where(rate > cfg.target_accept, delta, -delta)
                batch_accepts[:] = 0

            if it >= cfg.nburnin and (it - cfg.nburnin + 1) % cfg.thin == 0:
                kept.append(self.model.flatten(state))

        keys = self.model.keys()
        draws = np.array(kept) if kept else np.empty((0, len(keys)))
        n_kept_sweeps = cfg.niter - cfg.nburnin
        acceptance = _per_parameter(self.nodes, total_accepts / n_kept_sweeps)
        step_sizes = _per_parameter(self.nodes, np.exp(log_step))
        logger.debug("chain %d final step sizes: %s", chain_id, step_sizes)
        return ChainSamples(
            chain_id=chain_id,
            seed=int(seed),
            keys=keys,
            draws=draws,
            acceptance=acceptance,
            step_sizes=step_sizes,
        )


def run_chains(model: CurveModel, config: Optional[SamplerConfig] = None) -> McmcResult:
    """
    Run ``config.n_chains`` independent chains on ``model``.

    Chains that cannot initialise are recorded in ``McmcResult.failures`` as
    (chain_id, message) pairs; the remaining chains are returned unmerged.

    Parameters
    ----------
    model : CurveModel
        The model to sample.
    config : SamplerConfig, optional
        Defaults to SamplerConfig().

    Returns
    -------
    McmcResult

    Raises
    ------
    SamplerInitializationError
        If every chain fails to initialise.
    """
    config = config or SamplerConfig()
    seeds = config.chain_seeds()
    tasks = [(model, config, chain_id, seed) for chain_id, seed in enumerate(seeds)]

    if config.n_jobs > 1 and len(tasks) > 1:
        with ProcessPoolExecutor(max_workers=min(config.n_jobs, len(tasks))) as pool:
            outcomes = list(pool.map(_run_chain_task, tasks))
    else:
        outcomes = [_run_chain_task(task) for task in tasks]

    chains, failures = [], []
    for chain_id, outcome in enumerate(outcomes):
        if isinstance(outcome, ChainSamples):
            chains.append(outcome)
        else:
            logger.warning("chain %d failed: %s", chain_id, outcome)
            failures.append((chain_id, outcome))

    if not chains:
        raise SamplerInitializationError(
            f"All {len(tasks)} chains failed to initialise: {failures[0][1]}"
        )

    logger.info(
        "sampled %d chain(s) x %d draws over %d quantities",
        len(chains), chains[0].n_draws, len(model.keys()),
    )
    return McmcResult(keys=model.keys(), chains=chains, failures=failures)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _run_chain_task(task):
    """Module-level so it can be shipped to worker processes."""
    model, config, chain_id, seed = task
    logger.info("chain %d starting (seed=%d, niter=%d)", chain_id, seed, config.niter)
    try:
        return AdaptiveMetropolis(model, config).run(chain_id, seed)
    except SamplerInitializationError as exc:
        return str(exc)


def _value(state, node) -> float:
    return float(getattr(state, node.name)[node.index])


def _per_parameter(nodes, values) -> dict:
    return {(node.name, node.index): float(v) for node, v in zip(nodes, values)}
