"""Operations and the history they are recorded in.

An operation starts life as an INVOKE and is resolved by the client that runs it
into exactly one of OK, FAIL or INFO. INFO means the client can't tell whether the
operation took effect, and checkers must treat it as "maybe happened".
"""

import csv
import dataclasses
import enum
import logging
from dataclasses import dataclass
from typing import Any, Iterator

from simulate import Timestamp, get_current_ts

_logger = logging.getLogger("history")


class OpType(enum.Enum):
    INVOKE = "invoke"
    OK = "ok"
    FAIL = "fail"
    INFO = "info"


class Fn(enum.Enum):
    READ = "read"
    WRITE = "write"
    CAS = "cas"
    STRONG_READ = "strong-read"
    REJOIN = "rejoin"


@dataclass(frozen=True)
class Op:
    process: int
    f: Fn
    value: Any = None
    type: OpType = OpType.INVOKE
    error: str | None = None
    time: Timestamp | None = None
    """When the op was appended to the history."""
    index: int | None = None
    """Position in the history."""

    @classmethod
    def invoke(cls, process: int, f: Fn, value: Any = None) -> "Op":
        return cls(process=process, f=f, value=value)

    def complete(self, type: OpType, **changes) -> "Op":
        """A resolved copy of this invocation. Pass value= or error= to set them."""
        assert self.type is OpType.INVOKE, f"{self} is already resolved"
        assert type is not OpType.INVOKE
        return dataclasses.replace(self, type=type, time=None, index=None, **changes)

    def ok(self, **changes) -> "Op":
        return self.complete(OpType.OK, **changes)

    def fail(self, **changes) -> "Op":
        return self.complete(OpType.FAIL, **changes)

    def info(self, **changes) -> "Op":
        return self.complete(OpType.INFO, **changes)

    @property
    def is_ok(self) -> bool:
        return self.type is OpType.OK

    def __str__(self) -> str:
        s = f"{self.process} {self.type.value} {self.f.value} {self.value!r}"
        if self.error is not None:
            s += f" ({self.error})"
        return s


class History:
    """Append-only sequence of operations, in the order they happened."""

    def __init__(self, ops: list[Op] | None = None):
        self._ops: list[Op] = []
        for op in ops or []:
            self.append(op)

    def append(self, op: Op) -> Op:
        stamped = dataclasses.replace(
            op,
            index=len(self._ops),
            time=get_current_ts() if op.time is None else op.time)
        self._ops.append(stamped)
        _logger.debug(f"{stamped}")
        return stamped

    def __iter__(self) -> Iterator[Op]:
        return iter(self._ops)

    def __len__(self) -> int:
        return len(self._ops)

    def __getitem__(self, i: int) -> Op:
        return self._ops[i]

    def ok(self, f: Fn | None = None) -> list[Op]:
        return [op for op in self._ops if op.is_ok and (f is None or op.f is f)]

    def completions(self) -> list[Op]:
        return [op for op in self._ops if op.type is not OpType.INVOKE]

    def pairs(self) -> list[tuple[Op, Op]]:
        """Match each invocation with its completion.

        A process has at most one outstanding op. An invocation that never completed
        (the run ended first) is paired with a synthetic INFO completion, since it
        may or may not have taken effect.
        """
        pending: dict[int, Op] = {}
        pairs: list[tuple[Op, Op]] = []
        for op in self._ops:
            if op.type is OpType.INVOKE:
                assert op.process not in pending, (
                    f"process {op.process} invoked {op} while {pending[op.process]}"
                    f" is outstanding")
                pending[op.process] = op
            else:
                invoke = pending.pop(op.process, None)
                assert invoke is not None, f"{op} completes nothing"
                pairs.append((invoke, op))

        for invoke in pending.values():
            pairs.append((invoke, dataclasses.replace(
                invoke, type=OpType.INFO, time=None, index=None)))

        return sorted(pairs, key=lambda p: p[0].index)

    def to_csv(self, path: str) -> None:
        with open(path, "w", newline="") as f:
            writer = csv.DictWriter(
                f, fieldnames=["index", "time", "process", "type", "f", "value", "error"])
            writer.writeheader()
            writer.writerows({
                "index": op.index,
                "time": op.time,
                "process": op.process,
                "type": op.type.value,
                "f": op.f.value,
                "value": op.value,
                "error": op.error,
            } for op in self._ops)
