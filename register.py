"""A table of independent integer registers, checked for linearizability per key.

Threads read, write and compare-and-set registers identified by id. Each register
is its own little history; the linearizability checker verifies them one by one.
"""

import itertools
import logging

from omegaconf import DictConfig

import linearizability
import store
from client import Client, Once, RunContext
from cluster import Cluster, Fragment, Procedure
from history import Fn, History, Op, OpType
from simulate import Timestamp, get_current_ts
from store import ErrorKind, NoConnectionsError, ProcedureCallError, ProtocolDefect

_logger = logging.getLogger("register")

TABLE = "registers"

# Failures that leave a mutation's outcome unknown. Reads have no effect, so for
# them the same failures are definite.
_INDETERMINATE = (ErrorKind.TIMEOUT,
                  ErrorKind.CONNECTION_LOST,
                  ErrorKind.MASTERSHIP_CHANGE)


def _cas(f: Fragment, new_value: int, key: int, old_value: int) -> list[dict]:
    # UPDATE registers SET value = ? WHERE id = ? AND value = ?
    modified = f.update(TABLE, key, {"value": new_value}, where={"value": old_value})
    return [{"modified_tuples": modified}]


def _strong_read(f: Fragment, key: int) -> list[dict]:
    """Select plus an idempotent update, so the read is ordered with writes."""
    rows = f.select(TABLE, key)
    if rows:
        f.update(TABLE, key, {"value": rows[0]["value"]})
    else:
        f.touch(TABLE)
    return rows


def create_schema(cluster: Cluster) -> None:
    cluster.create_table(TABLE, ("id", "value"))
    cluster.create_procedure(
        Procedure("registers_cas", _cas, partition_parameter=1, read_only=False))
    cluster.create_procedure(
        Procedure("SRegisterStrongRead", _strong_read, read_only=False))


class RegisterClient(Client):
    """A single-register client. Options:

        strong_reads                 Whether to perform normal or strong selects
        procedure_call_timeout       How long in ms to wait for proc calls
        connection_response_timeout  How long in ms to wait for connections
    """

    def __init__(self,
                 strong_reads: bool = False,
                 procedure_call_timeout: int = 1000,
                 connection_response_timeout: int = 1000,
                 initialized: Once | None = None,
                 session: store.Session | None = None):
        self.strong_reads = strong_reads
        self.procedure_call_timeout = procedure_call_timeout
        self.connection_response_timeout = connection_response_timeout
        # Shared by every copy, so the schema is created once per run.
        self.initialized = initialized or Once()
        self.session = session

    @classmethod
    def from_params(cls, params: DictConfig) -> "RegisterClient":
        return cls(strong_reads=params.strong_reads,
                   procedure_call_timeout=params.procedure_call_timeout,
                   connection_response_timeout=params.connection_response_timeout)

    async def open(self, ctx: RunContext, node_id: int) -> "RegisterClient":
        session = await store.connect(
            ctx.cluster,
            node_id,
            procedure_call_timeout=self.procedure_call_timeout,
            connection_response_timeout=self.connection_response_timeout)
        return RegisterClient(strong_reads=self.strong_reads,
                              procedure_call_timeout=self.procedure_call_timeout,
                              connection_response_timeout=self.connection_response_timeout,
                              initialized=self.initialized,
                              session=session)

    async def setup(self, ctx: RunContext) -> None:
        if self.initialized.deliver():
            try:
                create_schema(ctx.cluster)
            except Exception:
                self.session.close()
                raise
            _logger.info(f"{self.session} table created")

    async def invoke(self, ctx: RunContext, op: Op) -> Op:
        key, value = op.value
        try:
            if op.f is Fn.READ:
                proc = "SRegisterStrongRead" if self.strong_reads else "REGISTERS.select"
                rows = await self.session.call(proc, key)
                v = rows[0]["value"] if rows else None
                return op.ok(value=(key, v))

            if op.f is Fn.WRITE:
                await self.session.call("REGISTERS.upsert", key, value)
                return op.ok()

            if op.f is Fn.CAS:
                expected, proposed = value
                rows = await self.session.call("registers_cas", proposed, key, expected)
                modified = rows[0]["modified_tuples"]
                if modified not in (0, 1):
                    raise ProtocolDefect(
                        f"CAS on register {key} modified {modified} rows")
                # Zero rows is the store's definite answer that nothing changed.
                return op.ok() if modified == 1 else op.fail()

            assert False, f"register client can't {op.f}"
        except NoConnectionsError:
            return op.fail(error=ErrorKind.NO_CONNECTIONS.value)
        except ProcedureCallError as e:
            if e.kind not in _INDETERMINATE:
                raise ProtocolDefect(f"{op}: {e.message}") from e

            type = OpType.FAIL if op.f is Fn.READ else OpType.INFO
            return op.complete(type, error=e.kind.value)

    def close(self, ctx: RunContext) -> None:
        if self.session is not None:
            self.session.close()


class RegisterGenerator:
    """Groups of threads_per_key threads share one register at a time.

    In each group the first half of the threads read (or CAS, with no_reads), the
    rest write or CAS at random. After key_time_limit a group moves on to a fresh key.
    """

    def __init__(self,
                 threads_per_key: int,
                 key_time_limit: Timestamp,
                 delay: Timestamp,
                 no_reads: bool = False):
        assert threads_per_key >= 1
        self.threads_per_key = threads_per_key
        self.key_time_limit = key_time_limit
        self.delay = delay
        self.no_reads = no_reads
        self._keys = itertools.count()
        # Group index -> (key, when the group started on it).
        self._groups: dict[int, tuple[int, Timestamp]] = {}

    @classmethod
    def from_params(cls, params: DictConfig) -> "RegisterGenerator":
        assert params.concurrency % params.threads_per_key == 0, (
            "concurrency must be a multiple of threads_per_key")
        return cls(threads_per_key=params.threads_per_key,
                   key_time_limit=params.key_time_limit,
                   delay=params.key_delay,
                   no_reads=params.no_reads)

    def key_for(self, group: int) -> int:
        now = get_current_ts()
        current = self._groups.get(group)
        if current is None or now - current[1] >= self.key_time_limit:
            current = (next(self._keys), now)
            self._groups[group] = current
            _logger.info(f"Threads of group {group} moving to key {current[0]}")

        return current[0]

    def op(self, ctx: RunContext, process: int) -> Op:
        t = ctx.thread(process)
        key = self.key_for(t // self.threads_per_key)
        if t % self.threads_per_key < self.threads_per_key // 2:
            f = Fn.CAS if self.no_reads else Fn.READ
        else:
            f = ctx.prng.choice([Fn.WRITE, Fn.CAS])

        if f is Fn.READ:
            value = None
        elif f is Fn.WRITE:
            value = ctx.prng.register_value()
        else:
            value = [ctx.prng.register_value(), ctx.prng.register_value()]

        return Op.invoke(process, f, (key, value))

    def pause(self, ctx: RunContext) -> Timestamp:
        return self.delay


def register_checker(ctx: RunContext, history: History) -> dict:
    return linearizability.check_independent(
        history, lambda: linearizability.CASRegister(None))
