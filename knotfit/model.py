"""
knotfit/model.py

Hierarchical piecewise-linear curve model.

Each strain s carries a four-knot curve mu_s(t) on days 1..28:

    kappa[1,s] = 0                      alpha[1,s] ~ Normal(iota[1], 1)
    kappa[2,s] ~ Uniform(0, 10)         alpha[2,s] := alpha[1,s]
    kappa[3,s] ~ Uniform(kappa[2,s], 28) alpha[3,s] ~ Normal(iota[2], 0.5)
    kappa[4,s] = 28                     alpha[4,s] ~ Normal(iota[3], 0.5)

    iota[j] ~ Uniform(0, 10)            sigma ~ HalfNormal(1)

and every observation i, observed or latent, contributes

    d[i] ~ Normal(mu[day(i), strain(i)], sigma).

Observation days are rounded to the nearest integer (halves round up) after
checking that the raw time lies in [1, 28].

The model exposes the pieces a Metropolis-within-Gibbs sampler needs: the
list of updatable scalar nodes, the local log density of each node, and an
in-place update that refreshes the deterministic curve of the affected strain.
"""

import math
from dataclasses import dataclass
from typing import NamedTuple, Optional, Sequence, Union

import numpy as np

from knotfit.errors import InputValidationError, SamplerInitializationError
from knotfit.spline import N_DAYS, evaluate_spline

KAPPA_FIRST = 0.0
KAPPA_LAST = float(N_DAYS)
KAPPA2_UPPER = 10.0
IOTA_BOUNDS = (0.0, 10.0)
ALPHA_SD = (1.0, 0.5, 0.5)  # alpha[1], alpha[3], alpha[4]
SIGMA_SD = 1.0

CURVE_PARAMS = ("kappa2", "kappa3", "alpha1", "alpha3", "alpha4")

# Initialisation ranges: narrower than the priors so chains start inside
# the region where curves are biologically plausible.
INIT_KAPPA2 = (1.0, 9.0)
INIT_KAPPA3 = (5.0, 27.0)
INIT_SIGMA = (0.1, 1.0)

_HALF_LOG_2PI = 0.5 * math.log(2.0 * math.pi)


# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Observed:
    """A measured distance value."""

    value: float


@dataclass(frozen=True)
class Latent:
    """A withheld value, inferred by the model."""


@dataclass(frozen=True)
class Observation:
    """One (strain, time) measurement of the log distance score."""

    strain: str
    time: float
    outcome: Union[Observed, Latent]
    replicate: Optional[str] = None

    @property
    def is_latent(self) -> bool:
        return isinstance(self.outcome, Latent)

    @property
    def day(self) -> int:
        return round_day(self.time)


def round_day(time: float) -> int:
    """Nearest integer day, halves rounded up."""
    return int(math.floor(time + 0.5))


# ---------------------------------------------------------------------------
# Parameter keys, nodes and state
# ---------------------------------------------------------------------------

class ParameterKey(NamedTuple):
    """
    Identifies one scalar in a posterior snapshot.

    ``index`` is the knot index (kappa, alpha; 1-based), the day (mu), the
    hyperparameter index (iota; 1-based) or the observation position (d).
    ``strain`` is None for population-level quantities.
    """

    name: str
    index: Optional[int] = None
    strain: Optional[str] = None

    def label(self) -> str:
        parts = [str(p) for p in (self.index, self.strain) if p is not None]
        return f"{self.name}[{','.join(parts)}]" if parts else self.name


@dataclass(frozen=True)
class Node:
    """An updatable scalar: a field of CurveState plus its position."""

    name: str
    index: int
    lower: float
    upper: float
    scale: float


@dataclass
class CurveState:
    """Current values of every stochastic node plus the cached curves."""

    kappa2: np.ndarray
    kappa3: np.ndarray
    alpha1: np.ndarray
    alpha3: np.ndarray
    alpha4: np.ndarray
    iota: np.ndarray
    sigma: np.ndarray
    latent: np.ndarray
    mu: np.ndarray  # (N_DAYS, n_strains)

    @property
    def alpha2(self) -> np.ndarray:
        return self.alpha1

    def copy(self) -> "CurveState":
        return CurveState(**{k: v.copy() for k, v in vars(self).items()})


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

class CurveModel:
    """
    Joint density over strain curves, hyperparameters and latent observations.

    Parameters
    ----------
    observations : sequence of Observation
        Observed and latent measurements. Times must lie in [1, 28].
    strains : sequence of str, optional
        Strain order. Defaults to the sorted set of strains in
        ``observations``. Strains listed here but absent from the data get
        curves drawn from the hierarchical prior alone.
    sigma_prior : str
        "half_normal" - sigma ~ HalfNormal(1), sigma > 0.
        "normal"      - sigma ~ Normal(0, 1) unrestricted; the likelihood uses
                        |sigma| as the noise scale.

    Raises
    ------
    InputValidationError
        If there are no observations, a time lies outside [1, 28], an observed
        value is not finite, or an observation names an undeclared strain.
    """

    def __init__(
        self,
        observations: Sequence[Observation],
        strains: Optional[Sequence[str]] = None,
        sigma_prior: str = "half_normal",
    ):
        observations = tuple(observations)
        if not observations:
            raise InputValidationError("CurveModel needs at least one observation.")
        if sigma_prior not in ("half_normal", "normal"):
            raise ValueError(
                f"Unknown sigma_prior '{sigma_prior}'. Choose from: 'half_normal', 'normal'."
            )

        if strains is None:
            strains = sorted({o.strain for o in observations})
        self.strains = list(strains)
        if len(set(self.strains)) != len(self.strains):
            raise InputValidationError(f"Duplicate strain names in {self.strains}.")
        self.sigma_prior = sigma_prior
        self.observations = observations

        strain_idx = {s: i for i, s in enumerate(self.strains)}
        for obs in observations:
            _validate_observation(obs, strain_idx)

        strain_of = np.array([strain_idx[o.strain] for o in observations], dtype=int)
        day_of = np.array([o.day - 1 for o in observations], dtype=int)
        latent_mask = np.array([o.is_latent for o in observations], dtype=bool)
        values = np.array(
            [np.nan if o.is_latent else float(o.outcome.value) for o in observations]
        )

        self.latent_positions = np.flatnonzero(latent_mask)
        self._obs_strain = strain_of[~latent_mask]
        self._obs_day = day_of[~latent_mask]
        self._obs_value = values[~latent_mask]
        self._lat_strain = strain_of[latent_mask]
        self._lat_day = day_of[latent_mask]

        self._strain_obs = []
        self._strain_lat = []
        for s in range(self.n_strains):
            m = self._obs_strain == s
            self._strain_obs.append((self._obs_day[m], self._obs_value[m]))
            lat_ids = np.flatnonzero(self._lat_strain == s)
            self._strain_lat.append((self._lat_day[lat_ids], lat_ids))

        self._keys = self._build_keys()

    # -- sizes --------------------------------------------------------------

    @property
    def n_strains(self) -> int:
        return len(self.strains)

    @property
    def n_latent(self) -> int:
        return int(self.latent_positions.size)

    # -- deterministic nodes ------------------------------------------------

    @staticmethod
    def knot_times(kappa2: float, kappa3: float) -> np.ndarray:
        return np.array([KAPPA_FIRST, kappa2, kappa3, KAPPA_LAST])

    @staticmethod
    def knot_values(alpha1: float, alpha3: float, alpha4: float) -> np.ndarray:
        return np.array([alpha1, alpha1, alpha3, alpha4])

    def _curve(self, kappa2, kappa3, alpha1, alpha3, alpha4) -> np.ndarray:
        return evaluate_spline(
            self.knot_times(kappa2, kappa3), self.knot_values(alpha1, alpha3, alpha4)
        )

    def curve(self, state: CurveState, strain: Union[int, str]) -> np.ndarray:
        """mu[1..28] for one strain, recomputed from its knot parameters."""
        s = strain if isinstance(strain, (int, np.integer)) else self.strains.index(strain)
        return self._curve(*(getattr(state, p)[s] for p in CURVE_PARAMS))

    def _noise_sd(self, sigma: float) -> float:
        return abs(sigma) if self.sigma_prior == "normal" else sigma

    # -- nodes --------------------------------------------------------------

    def nodes(self) -> list:
        """Updatable scalar nodes in sweep order."""
        out = []
        for s in range(self.n_strains):
            out.append(Node("kappa2", s, KAPPA_FIRST, KAPPA2_UPPER, 1.0))
            out.append(Node("kappa3", s, KAPPA_FIRST, KAPPA_LAST, 1.0))
            out.append(Node("alpha1", s, -np.inf, np.inf, 0.25))
            out.append(Node("alpha3", s, -np.inf, np.inf, 0.25))
            out.append(Node("alpha4", s, -np.inf, np.inf, 0.25))
        for j in range(3):
            out.append(Node("iota", j, IOTA_BOUNDS[0], IOTA_BOUNDS[1], 0.25))
        sigma_lower = 0.0 if self.sigma_prior == "half_normal" else -np.inf
        out.append(Node("sigma", 0, sigma_lower, np.inf, 0.1))
        for i in range(self.n_latent):
            out.append(Node("latent", i, -np.inf, np.inf, 0.5))
        return out

    def local_log_density(self, state: CurveState, node: Node, value: float) -> float:
        """
        Log density of every factor that involves ``node``, with the node set
        to ``value`` and everything else taken from ``state``.

        Differences of this quantity between two values of the same node equal
        differences of the full joint log density. Returns -inf outside the
        support, including proposals that break kappa[2] < kappa[3].
        """
        if not node.lower < value < node.upper:
            return -np.inf

        name, j = node.name, node.index
        if name in CURVE_PARAMS:
            params = {p: getattr(state, p)[j] for p in CURVE_PARAMS}
            params[name] = value
            lp = self._strain_log_prior(state, params)
            if not np.isfinite(lp):
                return -np.inf
            mu = self._curve(*(params[p] for p in CURVE_PARAMS))
            return lp + self._strain_log_likelihood(state, j, mu, self._noise_sd(state.sigma[0]))

        if name == "iota":
            alpha = (state.alpha1, state.alpha3, state.alpha4)[j]
            return _normal_loglik(alpha, value, ALPHA_SD[j])

        if name == "sigma":
            sd = self._noise_sd(value)
            if not sd > 0:
                return -np.inf
            return self._sigma_log_prior(value) + self._log_likelihood(state, sd)

        if name == "latent":
            sd = self._noise_sd(state.sigma[0])
            mean = state.mu[self._lat_day[j], self._lat_strain[j]]
            return _normal_loglik(np.array([value]), mean, sd)

        raise ValueError(f"Unknown node '{name}'.")

    def set_value(self, state: CurveState, node: Node, value: float) -> None:
        """Assign ``value`` in place and refresh the strain curve if it depends on it."""
        getattr(state, node.name)[node.index] = value
        if node.name in CURVE_PARAMS:
            state.mu[:, node.index] = self.curve(state, node.index)

    # -- joint density ------------------------------------------------------

    def log_prior(self, state: CurveState) -> float:
        if not all(IOTA_BOUNDS[0] < v < IOTA_BOUNDS[1] for v in state.iota):
            return -np.inf
        if self.sigma_prior == "half_normal" and not state.sigma[0] > 0:
            return -np.inf
        lp = self._sigma_log_prior(state.sigma[0])
        for s in range(self.n_strains):
            lp += self._strain_log_prior(state, {p: getattr(state, p)[s] for p in CURVE_PARAMS})
        return lp

    def log_likelihood(self, state: CurveState) -> float:
        sd = self._noise_sd(state.sigma[0])
        if not sd > 0:
            return -np.inf
        return self._log_likelihood(state, sd)

    def log_density(self, state: CurveState) -> float:
        """Unnormalised joint log density of parameters, latents and data."""
        lp = self.log_prior(state)
        if not np.isfinite(lp):
            return -np.inf
        return lp + self.log_likelihood(state)

    def _strain_log_prior(self, state: CurveState, params: dict) -> float:
        k2, k3 = params["kappa2"], params["kappa3"]
        if not (KAPPA_FIRST < k2 < KAPPA2_UPPER and k2 < k3 < KAPPA_LAST):
            return -np.inf
        lp = -math.log(KAPPA2_UPPER - KAPPA_FIRST) - math.log(KAPPA_LAST - k2)
        alphas = (params["alpha1"], params["alpha3"], params["alpha4"])
        for a, centre, sd in zip(alphas, state.iota, ALPHA_SD):
            z = (a - centre) / sd
            lp += -0.5 * z * z - math.log(sd) - _HALF_LOG_2PI
        return lp

    def _sigma_log_prior(self, sigma: float) -> float:
        z = sigma / SIGMA_SD
        lp = -0.5 * z * z - math.log(SIGMA_SD) - _HALF_LOG_2PI
        return lp + math.log(2.0) if self.sigma_prior == "half_normal" else lp

    def _strain_log_likelihood(self, state, s, mu, sd) -> float:
        days, values = self._strain_obs[s]
        ll = _normal_loglik(values, mu[days], sd) if values.size else 0.0
        lat_days, lat_ids = self._strain_lat[s]
        if lat_ids.size:
            ll += _normal_loglik(state.latent[lat_ids], mu[lat_days], sd)
        return ll

    def _log_likelihood(self, state, sd) -> float:
        ll = _normal_loglik(self._obs_value, state.mu[self._obs_day, self._obs_strain], sd)
        if self.n_latent:
            ll += _normal_loglik(state.latent, state.mu[self._lat_day, self._lat_strain], sd)
        return ll

    # -- initialisation -----------------------------------------------------

    def initial_state(self, rng: np.random.Generator, max_attempts: int = 100) -> CurveState:
        """
        Draw a starting state with finite joint density.

        Knot times come from the INIT_* ranges and knot values from the range
        of the observed data, independently per strain; draws that violate an
        ordering or support constraint are discarded and redrawn.

        Raises
        ------
        SamplerInitializationError
            If no valid state is found within ``max_attempts`` draws.
        """
        if self._obs_value.size:
            lo, hi = float(self._obs_value.min()), float(self._obs_value.max())
        else:
            lo, hi = 0.0, 1.0
        if hi <= lo:
            hi = lo + 1.0

        S = self.n_strains
        for _ in range(max_attempts):
            alpha1 = rng.uniform(lo, hi, S)
            alpha3 = rng.uniform(lo, hi, S)
            alpha4 = rng.uniform(lo, hi, S)
            iota = np.clip(
                [alpha1.mean(), alpha3.mean(), alpha4.mean()],
                IOTA_BOUNDS[0] + 1e-3,
                IOTA_BOUNDS[1] - 1e-3,
            )
            state = CurveState(
                kappa2=rng.uniform(*INIT_KAPPA2, S),
                kappa3=rng.uniform(*INIT_KAPPA3, S),
                alpha1=alpha1,
                alpha3=alpha3,
                alpha4=alpha4,
                iota=np.asarray(iota, dtype=float),
                sigma=np.array([rng.uniform(*INIT_SIGMA)]),
                latent=np.zeros(self.n_latent),
                mu=np.zeros((N_DAYS, S)),
            )
            if np.any(state.kappa3 <= state.kappa2):
                continue
            for s in range(S):
                state.mu[:, s] = self.curve(state, s)
            if self.n_latent:
                state.latent = state.mu[self._lat_day, self._lat_strain] + rng.normal(
                    0.0, state.sigma[0], self.n_latent
                )
            if np.isfinite(self.log_density(state)):
                return state

        raise SamplerInitializationError(
            f"No valid initial state after {max_attempts} attempts."
        )

    # -- snapshots ----------------------------------------------------------

    def keys(self) -> list:
        """ParameterKeys in the order used by ``flatten``."""
        return list(self._keys)

    def _build_keys(self) -> list:
        keys = []
        for s in self.strains:
            keys.extend(ParameterKey("kappa", j, s) for j in range(1, 5))
        for s in self.strains:
            keys.extend(ParameterKey("alpha", j, s) for j in range(1, 5))
        keys.extend(ParameterKey("iota", j) for j in range(1, 4))
        keys.append(ParameterKey("sigma"))
        for s in self.strains:
            keys.extend(ParameterKey("mu", day, s) for day in range(1, N_DAYS + 1))
        for pos in self.latent_positions:
            keys.append(ParameterKey("d", int(pos), self.observations[pos].strain))
        return keys

    def flatten(self, state: CurveState) -> np.ndarray:
        """Snapshot of every monitored quantity as one vector (see ``keys``)."""
        S = self.n_strains
        kappa = np.vstack([
            np.full(S, KAPPA_FIRST), state.kappa2, state.kappa3, np.full(S, KAPPA_LAST)
        ])
        alpha = np.vstack([state.alpha1, state.alpha2, state.alpha3, state.alpha4])
        return np.concatenate([
            kappa.T.ravel(),
            alpha.T.ravel(),
            state.iota,
            state.sigma,
            state.mu.T.ravel(),
            state.latent,
        ])


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _validate_observation(obs: Observation, strain_idx: dict) -> None:
    if obs.strain not in strain_idx:
        raise InputValidationError(
            f"Observation for unknown strain '{obs.strain}'.", record=obs
        )
    if not np.isfinite(obs.time) or not 1.0 <= obs.time <= KAPPA_LAST:
        raise InputValidationError(
            f"Observation time {obs.time} is outside [1, {N_DAYS}].", record=obs
        )
    if not isinstance(obs.outcome, (Observed, Latent)):
        raise InputValidationError(
            f"Observation outcome must be Observed or Latent, got {type(obs.outcome).__name__}.",
            record=obs,
        )
    if isinstance(obs.outcome, Observed) and not np.isfinite(obs.outcome.value):
        raise InputValidationError(
            f"Observed value {obs.outcome.value} is not finite.", record=obs
        )


def _normal_loglik(x: np.ndarray, mean, sd: float) -> float:
    """Sum of Normal(mean, sd) log densities over x."""
    z = (np.asarray(x, dtype=float) - mean) / sd
    return float(-0.5 * np.sum(z * z) - z.size * (math.log(sd) + _HALF_LOG_2PI))
