"""Searches for dirty reads.

We're after cases where a partition master lets an unreplicated write be visible to
local reads before it is fully replicated. Since ordinary reads may be stale, a
normal read can't tell us whether a write really committed. Instead every thread
finishes with a strong read: a select plus an idempotent update, which the master
has to push through the replicated path like any write.

While one process writes to a node, the others on that node keep reading the value
it is writing, hoping to see it in the instant before the node dies.
"""

import itertools
import logging

from omegaconf import DictConfig

import store
from client import Client, Once, RunContext
from cluster import Cluster, Fragment, Procedure
from history import Fn, History, Op, OpType
from simulate import Timestamp, sleep
from store import ErrorKind, NoConnectionsError, ProcedureCallError, ProtocolDefect

_logger = logging.getLogger("dirty-read")

TABLE = "dirty_reads"

# After losing every connection, wait this long before reporting failure. The node
# should be back within a few seconds.
NO_CONNECTIONS_BACKOFF = 1000


def _strong_read(f: Fragment) -> list[dict]:
    rows = f.select(TABLE)
    f.touch(TABLE)
    return rows


def create_schema(cluster: Cluster) -> None:
    cluster.create_table(TABLE, ("id",))
    cluster.create_procedure(Procedure("DirtyReadStrongRead",
                                       _strong_read,
                                       partition_parameter=None,
                                       read_only=False))


class DirtyReadClient(Client):
    def __init__(self,
                 procedure_call_timeout: int = 1000,
                 connection_response_timeout: int = 1000,
                 initialized: Once | None = None,
                 node_id: int | None = None,
                 session: store.Session | None = None):
        self.procedure_call_timeout = procedure_call_timeout
        self.connection_response_timeout = connection_response_timeout
        self.initialized = initialized or Once()
        self.node_id = node_id
        self.session = session

    @classmethod
    def from_params(cls, params: DictConfig) -> "DirtyReadClient":
        return cls(procedure_call_timeout=params.procedure_call_timeout,
                   connection_response_timeout=params.connection_response_timeout)

    async def open(self, ctx: RunContext, node_id: int) -> "DirtyReadClient":
        session = await store.connect(
            ctx.cluster,
            node_id,
            procedure_call_timeout=self.procedure_call_timeout,
            connection_response_timeout=self.connection_response_timeout)
        return DirtyReadClient(procedure_call_timeout=self.procedure_call_timeout,
                               connection_response_timeout=self.connection_response_timeout,
                               initialized=self.initialized,
                               node_id=node_id,
                               session=session)

    async def setup(self, ctx: RunContext) -> None:
        if self.initialized.deliver():
            create_schema(ctx.cluster)
            _logger.info(f"n{self.node_id} table created")

    async def invoke(self, ctx: RunContext, op: Op) -> Op:
        try:
            if op.f is Fn.REJOIN:
                if ctx.cluster.is_up(self.node_id):
                    return op.ok(value="already-up")

                await ctx.cluster.rejoin(self.node_id)
                return op.ok(value="rejoined")

            if op.f is Fn.READ:
                rows = await self.session.call("DIRTY_READS.select", op.value)
                v = rows[0]["id"] if rows else None
                return op.complete(OpType.OK if v is not None else OpType.FAIL, value=v)

            if op.f is Fn.WRITE:
                try:
                    await self.session.call("DIRTY_READS.insert", op.value)
                except ProcedureCallError as e:
                    # Already there, e.g. a retried insert. Same outcome as success.
                    if e.kind is not ErrorKind.CONSTRAINT_VIOLATION:
                        raise
                return op.ok()

            if op.f is Fn.STRONG_READ:
                rows = await self.session.call("DirtyReadStrongRead")
                return op.ok(value=frozenset(r["id"] for r in rows))

            assert False, f"dirty-read client can't {op.f}"
        except NoConnectionsError:
            await sleep(NO_CONNECTIONS_BACKOFF)
            return op.fail(error=ErrorKind.NO_CONNECTIONS.value)
        except ProcedureCallError as e:
            return op.info(error=e.message)

    def close(self, ctx: RunContext) -> None:
        if self.session is not None:
            self.session.close()


class DirtyReadGenerator:
    """One writer per node; every other process on that node reads the value its
    writer issued most recently, whether or not the write has been acknowledged."""

    def __init__(self):
        # Values to write, starting above the ledger's initial 0.
        self._write = itertools.count(1)
        # The most recent write issued on each node, created on first use.
        self._in_flight: list[int] | None = None

    def op(self, ctx: RunContext, process: int) -> Op:
        if self._in_flight is None:
            self._in_flight = [0] * len(ctx.node_ids)

        t = ctx.thread(process)
        n = process % len(ctx.node_ids)
        if t == n:
            # The first len(nodes) threads write.
            v = next(self._write)
            self._in_flight[n] = v
            return Op.invoke(process, Fn.WRITE, v)

        return Op.invoke(process, Fn.READ, self._in_flight[n])

    def pause(self, ctx: RunContext) -> Timestamp:
        return ctx.prng.randint(0, 2 * ctx.params.stagger)

    @property
    def in_flight(self) -> list[int] | None:
        return None if self._in_flight is None else list(self._in_flight)


# What each thread does once faults have stopped: make sure its node is up, then take
# a strong read.
FINAL_FNS = [Fn.REJOIN, Fn.STRONG_READ]


def check_dirty_reads(history: History, concurrency: int) -> dict:
    """Verify that we never read an element from a write that did not commit (and so
    is missing from the final strong reads), and that every acknowledged write is
    present in the strong read set."""
    writes = {op.value for op in history.ok(Fn.WRITE)}
    reads = {op.value for op in history.ok(Fn.READ)}
    strong_read_sets = [set(op.value) for op in history.ok(Fn.STRONG_READ)]
    strong_reads = set().union(*strong_read_sets)
    unseen = strong_reads - reads
    dirty = reads - strong_reads
    lost = writes - strong_reads

    # We expect one strong read per thread.
    _logger.info(f"{len(strong_read_sets)} strong read sets, concurrency {concurrency}")
    if len(strong_read_sets) != concurrency:
        raise ProtocolDefect(f"Expected {concurrency} strong reads,"
                             f" got {len(strong_read_sets)}")

    # All strong reads had better agree.
    sizes = sorted({len(s) for s in strong_read_sets} | {len(strong_reads)})
    if len(sizes) != 1:
        raise ProtocolDefect(f"Strong reads disagree, sizes {sizes}")

    return {
        "valid": not dirty and not lost,
        "read_count": len(reads),
        "strong_read_count": len(strong_reads),
        "unseen_count": len(unseen),
        "unseen": sorted(unseen),
        "dirty_count": len(dirty),
        "dirty": sorted(dirty),
        "lost_count": len(lost),
        "lost": sorted(lost),
    }


def dirty_read_checker(ctx: RunContext, history: History) -> dict:
    return check_dirty_reads(history, ctx.concurrency)
