"""
knotfit/config.py

Configuration surface for sampling and cross-validation.

Settings live in two dataclasses. Both can be built from a JSON object with
``load_config``; unknown keys are rejected so typos do not silently fall back
to defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Optional

import numpy as np

SIGMA_PRIORS = ("half_normal", "normal")


@dataclass
class SamplerConfig:
    """Settings for one multi-chain MCMC fit."""

    n_chains: int = 4
    niter: int = 10000
    nburnin: int = 5000
    thin: int = 5
    seed: Optional[int] = 42
    seeds: Optional[list] = None
    target_accept: float = 0.44
    adapt_batch: int = 50
    max_init_attempts: int = 100
    sigma_prior: str = "half_normal"
    psrf_threshold: float = 1.1
    n_jobs: int = 1

    def __post_init__(self):
        if self.n_chains < 1:
            raise ValueError(f"n_chains must be >= 1, got {self.n_chains}.")
        if self.thin < 1:
            raise ValueError(f"thin must be >= 1, got {self.thin}.")
        if not 0 <= self.nburnin < self.niter:
            raise ValueError(
                f"nburnin ({self.nburnin}) must be in [0, niter) with niter={self.niter}."
            )
        if not 0.0 < self.target_accept < 1.0:
            raise ValueError(f"target_accept must be in (0, 1), got {self.target_accept}.")
        if self.adapt_batch < 1:
            raise ValueError(f"adapt_batch must be >= 1, got {self.adapt_batch}.")
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {self.n_jobs}.")
        if self.max_init_attempts < 1:
            raise ValueError(
                f"max_init_attempts must be >= 1, got {self.max_init_attempts}."
            )
        if self.sigma_prior not in SIGMA_PRIORS:
            raise ValueError(
                f"Unknown sigma_prior '{self.sigma_prior}'. "
                f"Choose from: {', '.join(SIGMA_PRIORS)}."
            )
        if self.seeds is not None and len(self.seeds) != self.n_chains:
            raise ValueError(
                f"seeds has {len(self.seeds)} entries but n_chains={self.n_chains}."
            )

    @property
    def n_draws(self) -> int:
        """Number of retained draws per chain."""
        return (self.niter - self.nburnin) // self.thin

    def chain_seeds(self) -> list:
        """One integer seed per chain; explicit ``seeds`` take precedence."""
        if self.seeds is not None:
            return [int(s) for s in self.seeds]
        children = np.random.SeedSequence(self.seed).spawn(self.n_chains)
        return [int(c.generate_state(1)[0]) for c in children]


@dataclass
class CrossValidationConfig:
    """Settings for a leave-one-strain-out sweep."""

    k_values: tuple = (5, 10, 15, 20)
    stage_split: float = 7.0
    truncate_after: int = 2
    n_jobs: int = 1
    sampler: SamplerConfig = field(default_factory=SamplerConfig)

    def __post_init__(self):
        self.k_values = tuple(int(k) for k in self.k_values)
        if not self.k_values or min(self.k_values) < 1:
            raise ValueError(f"k_values must be positive integers, got {self.k_values}.")
        if self.truncate_after < 1:
            raise ValueError(f"truncate_after must be >= 1, got {self.truncate_after}.")
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {self.n_jobs}.")
        if isinstance(self.sampler, dict):
            self.sampler = _from_mapping(SamplerConfig, self.sampler, "sampler")

    def to_dict(self) -> dict:
        return asdict(self)


def load_json_config(path) -> dict:
    """Load a JSON config file and check that its root is an object."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, "
            f"got {type(data).__name__}."
        )
    return data


def load_config(path) -> CrossValidationConfig:
    """
    Build a CrossValidationConfig from a JSON file.

    Top-level keys are CrossValidationConfig fields; sampler settings go under
    a nested ``"sampler"`` object, e.g.::

        {"k_values": [5, 10], "sampler": {"niter": 4000, "nburnin": 2000}}
    """
    return _from_mapping(CrossValidationConfig, load_json_config(path), "config")


def _from_mapping(cls, data: dict, where: str) -> Any:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown keys in {where}: {', '.join(unknown)}.")
    return cls(**data)
