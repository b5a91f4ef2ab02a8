"""Linearizability checking for register histories.

A Wing & Gong search: repeatedly pick an operation that could have taken effect
first (it was invoked before every still-pending operation returned), apply it to
the model, and backtrack when the model rejects it. Configurations already seen,
(set of linearized ops, model state), are not explored twice.

OK operations must be linearized. INFO operations may be linearized at any point
after their invocation, or never. FAIL operations never happened.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from history import Fn, History, Op, OpType

_logger = logging.getLogger("linearizability")

# Give up, and report validity as unknown, after exploring this many configurations.
MAX_CONFIGURATIONS = 1_000_000


class CASRegister:
    """A register with read, write and compare-and-set. None means never written."""

    def __init__(self, initial: Any = None):
        self.initial = initial

    def step(self, state: Any, f: Fn, value: Any) -> tuple[bool, Any]:
        """Apply an op to state. Returns (legal?, new state)."""
        if f is Fn.READ:
            return value == state, state
        if f is Fn.WRITE:
            return True, value
        if f is Fn.CAS:
            expected, proposed = value
            if state == expected:
                return True, proposed
            return False, state

        assert False, f"CAS register can't {f}"


@dataclass
class _Call:
    start: float
    end: float
    """math.inf for operations that may take effect arbitrarily late."""
    f: Fn
    value: Any
    required: bool
    op: Op


def _calls(pairs: list[tuple[Op, Op]], unwrap) -> list[_Call]:
    calls = []
    for invoke, completion in pairs:
        if completion.type is OpType.FAIL:
            continue

        if completion.type is OpType.INFO:
            if invoke.f is Fn.READ:
                continue  # A read of unknown outcome constrains nothing.
            end, required = math.inf, False
        else:
            end, required = completion.index, True

        value = unwrap(completion.value if invoke.f is Fn.READ else invoke.value)
        calls.append(_Call(start=invoke.index, end=end, f=invoke.f, value=value,
                           required=required, op=completion))

    calls.sort(key=lambda c: c.start)
    return calls


def check(pairs: list[tuple[Op, Op]], model: CASRegister, unwrap=lambda v: v) -> dict:
    """Check that invocation/completion pairs are linearizable with respect to model.

    Returns {"valid": True | False | None, ...}, None if the search gave up. For
    invalid histories, the deepest linearization found is the witness.
    """
    calls = _calls(pairs, unwrap)
    n = len(calls)
    required = 0
    for i, c in enumerate(calls):
        if c.required:
            required |= 1 << i

    start = (0, model.initial)
    parent: dict[tuple, tuple[tuple, int] | None] = {start: None}
    stack = [start]
    best, best_depth = start, 0
    explored = 0
    while stack:
        config = stack.pop()
        mask, state = config
        if mask & required == required:
            return {"valid": True, "op_count": n, "configurations": explored}

        explored += 1
        if explored > MAX_CONFIGURATIONS:
            _logger.warning(f"Gave up after {explored} configurations")
            return {"valid": None, "op_count": n, "configurations": explored}

        depth = bin(mask & required).count("1")
        if depth > best_depth:
            best, best_depth = config, depth

        pending = [i for i in range(n) if not mask >> i & 1]
        min_end = min(calls[i].end for i in pending)
        for i in pending:
            c = calls[i]
            if c.start > min_end:
                break  # Sorted by start, nothing later can go first either.

            legal, new_state = model.step(state, c.f, c.value)
            if not legal:
                continue

            successor = (mask | 1 << i, new_state)
            if successor not in parent:
                parent[successor] = (config, i)
                stack.append(successor)

    # Not linearizable. Report the longest prefix we could explain.
    path = []
    config = best
    while parent[config] is not None:
        config, i = parent[config]
        path.append(calls[i])
    path.reverse()

    mask, state = best
    min_end = min(c.end for i, c in enumerate(calls) if not mask >> i & 1)
    stuck = [c for i, c in enumerate(calls)
             if not mask >> i & 1 and c.start < min_end]
    return {
        "valid": False,
        "op_count": n,
        "configurations": explored,
        "linearized": [str(c.op) for c in path],
        "state": state,
        "unlinearizable": [str(c.op) for c in stuck],
    }


def check_independent(history: History, model_factory=CASRegister) -> dict:
    """Check each key of a (key, value) history separately."""
    by_key: defaultdict[Any, list[tuple[Op, Op]]] = defaultdict(list)
    for invoke, completion in history.pairs():
        if invoke.f in (Fn.READ, Fn.WRITE, Fn.CAS):
            by_key[invoke.value[0]].append((invoke, completion))

    results = {}
    for key in sorted(by_key):
        results[key] = check(by_key[key], model_factory(), unwrap=lambda v: v[1])
        _logger.info(f"Key {key}: {len(by_key[key])} ops,"
                     f" valid? {results[key]['valid']}")

    failures = [k for k, r in results.items() if r["valid"] is False]
    if failures:
        valid = False
    elif any(r["valid"] is None for r in results.values()):
        valid = None
    else:
        valid = True

    return {"valid": valid, "results": results, "failures": failures}
