"""Utilities for probability distributions."""

import time
from functools import lru_cache

import numpy as np
from omegaconf import DictConfig


class PRNG:
    def __init__(self, cfg: DictConfig):
        self.seed = int(time.monotonic_ns() if cfg.seed is None else cfg.seed)
        self._random_state = np.random.RandomState(self.seed % 2 ** 32)
        self._one_way_latency_mean = cfg.one_way_latency_mean
        self._one_way_latency_variance = cfg.one_way_latency_variance

    def randint(self, low_inclusive: int, high_inclusive: int) -> int:
        # NumPy's rand_int excludes the high value, make it inclusive.
        return int(self._random_state.randint(low_inclusive, high_inclusive + 1))

    def choice(self, choices: list):
        # Index instead of choosing directly, numpy would coerce elements to arrays.
        return choices[self._random_state.randint(len(choices))]

    def exponential(self, scale: float) -> float:
        return self._random_state.exponential(scale)

    def one_way_latency_value(self) -> int:
        if self._one_way_latency_mean <= 0:
            return 0

        mu, sigma = _lognormal_params(
            self._one_way_latency_mean, self._one_way_latency_variance
        )
        return int(self._random_state.lognormal(mu, sigma))

    def register_value(self) -> int:
        """A small value, so that CAS operations have a fair chance to succeed."""
        return self.randint(0, 4)


@lru_cache
def _lognormal_params(mean: float, variance: float) -> tuple[float, float]:
    """Get lognormal distribution's mu and sigma for a desired mean and variance."""
    sigma_squared = np.log(variance / mean**2 + 1)
    mu = np.log(mean) - sigma_squared / 2
    return mu, np.sqrt(sigma_squared)
