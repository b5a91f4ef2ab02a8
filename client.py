import abc
import logging
from dataclasses import dataclass

from omegaconf import DictConfig

from cluster import Cluster
from history import Op
from prob import PRNG

_logger = logging.getLogger("client")


@dataclass
class RunContext:
    """Everything a client or generator may consult about the run in progress."""
    params: DictConfig
    cluster: Cluster
    prng: PRNG

    @property
    def concurrency(self) -> int:
        return self.params.concurrency

    @property
    def node_ids(self) -> list[int]:
        return self.cluster.node_ids

    def thread(self, process: int) -> int:
        """Worker thread that runs process. Crashed processes are renumbered by
        +concurrency, so a thread keeps its index across process numbers."""
        return process % self.concurrency

    def node_for_thread(self, thread: int) -> int:
        return self.node_ids[thread % len(self.node_ids)]


class Once:
    """Single-assignment latch: deliver() is True for the first caller only."""

    def __init__(self):
        self._delivered = False

    def deliver(self) -> bool:
        if self._delivered:
            return False

        self._delivered = True
        return True

    @property
    def delivered(self) -> bool:
        return self._delivered


class Client(abc.ABC):
    """Runs operations against one node.

    The runner calls open() once per worker thread on an unbound prototype, setup()
    on each opened client, then invoke() sequentially, and finally close().
    """

    @abc.abstractmethod
    async def open(self, ctx: RunContext, node_id: int) -> "Client":
        """Return a copy of this client bound to node_id."""

    async def setup(self, ctx: RunContext) -> None:
        """Prepare the store, e.g. create tables. Must tolerate being called per copy."""

    @abc.abstractmethod
    async def invoke(self, ctx: RunContext, op: Op) -> Op:
        """Run op, return its completion: OK, FAIL or INFO."""

    def close(self, ctx: RunContext) -> None:
        pass
