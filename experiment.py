"""Utilities for running experiments."""
import itertools
from typing import Iterator

from omegaconf import DictConfig, ListConfig


def all_param_combos(params: DictConfig) -> Iterator[DictConfig]:
    """Expand list-valued params into one DictConfig per combination of values."""
    param_combos: dict[str, list] = {}
    for k, v in params.items():
        if isinstance(v, (list, tuple, ListConfig)):
            param_combos[k] = list(v)
        else:
            param_combos[k] = [v]

    for values in itertools.product(*param_combos.values()):
        yield DictConfig(dict(zip(param_combos.keys(), values)))


def swept_keys(params: DictConfig) -> list[str]:
    """Names of the params that vary between combinations."""
    return [k for k, v in params.items() if isinstance(v, (list, tuple, ListConfig))]
