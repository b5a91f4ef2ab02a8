"""A simulated partitioned, replicated relational store.

Tables are split into partitions by key. Each partition has one master, and every
other live node keeps a replica by pulling the master's log. Procedures run on the
partition master: read-only ones against its local state right away, others are
appended to the log and acknowledged once every live replica has them.

Failures are reported the way a real wire protocol would: as status strings. The
client side (store.py) decides what they mean.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

from omegaconf import DictConfig

from prob import PRNG
from simulate import Future, get_current_ts, get_event_loop, sleep

_logger = logging.getLogger("cluster")

_BUSY_WAIT = 5

CONNECTION_LOST = ("Connection to database host n{node_id} was lost before a response"
                   " was received")
MASTERSHIP_CHANGE = ("Transaction dropped due to change in mastership. It is possible"
                     " the transaction was committed")
CONSTRAINT_VIOLATION = ("Constraint violation: attempted to insert a duplicate"
                        " {table}.{column} {key}")
PROCEDURE_NOT_FOUND = "Procedure {name} was not found"


class ServerError(Exception):
    """A procedure call failed on the server. The message is the status string."""


@dataclass
class Procedure:
    name: str
    fn: Callable[..., list[dict]]
    """Called as fn(fragment, *args), returns result rows."""
    partition_parameter: int | None = 0
    """Index of the argument that selects the partition, None for all partitions."""
    read_only: bool = True


@dataclass
class Table:
    name: str
    columns: tuple[str, ...]
    """The first column is the primary key and the partitioning column."""


@dataclass(frozen=True)
class Entry:
    """One mutation in a partition's log. A None row changes nothing."""
    table: str
    key: int | None
    row: dict | None = field(hash=False)
    master_id: int = 0
    created_at_ts: int = 0


class Network:
    def __init__(self, prng: PRNG, node_ids: list[int]):
        self.prng = prng
        self.node_ids = node_ids
        self.components: list[set[int]] = [set(node_ids)]

    def send(self, from_id: int, method: Callable, **kwargs) -> None:
        """Deliver method(**kwargs) to the node that owns method, after a delay."""
        assert from_id in self.node_ids
        assert isinstance(method.__self__, Node)
        to_id = method.__self__.node_id
        assert to_id in self.node_ids
        if self.reachable(from_id, to_id):
            _logger.debug(f"{from_id} -> {to_id}: {method.__name__}")
            # After a network delay, check again for partition then deliver the message.
            get_event_loop().call_later(self.prng.one_way_latency_value(),
                                        self._deliver,
                                        from_id=from_id,
                                        method=method,
                                        **kwargs)
        else:
            _logger.debug(f"{from_id} -> {to_id}: {method.__name__} DROPPED")

    def make_partition(self, *components: set[int]) -> None:
        union = set().union(*components)
        assert sum(len(c) for c in components) == len(union), "Components overlap"
        assert union == set(self.node_ids)
        self.components = [set(c) for c in components]
        _logger.info(f"Partitioned {' | '.join(str(sorted(c)) for c in self.components)}")

    def isolate(self, node_id: int) -> None:
        self.make_partition({node_id}, set(self.node_ids) - {node_id})

    def reset_partition(self):
        self.components = [set(self.node_ids)]
        _logger.info("Healed partition")

    def is_isolated(self, node_id: int) -> bool:
        return len(self.components) > 1 and {node_id} in self.components

    def reachable(self, from_id: int, to_id: int) -> bool:
        return any(from_id in c and to_id in c for c in self.components)

    def _deliver(self, from_id: int, method: Callable, **kwargs) -> None:
        to_id = method.__self__.node_id
        if self.reachable(from_id, to_id):
            method(**kwargs)


class Fragment:
    """What a procedure sees of one partition while it runs on that partition's master."""

    def __init__(self, node: "Node", partition: int, read_only: bool):
        self.node = node
        self.partition = partition
        self.read_only = read_only

    def _table(self, name: str) -> tuple[Table, dict[int, dict]]:
        table = self.node.cluster.tables.get(name)
        if table is None:
            raise ServerError(f"Object not found: {name}")

        return table, self.node.tables[self.partition].setdefault(name, {})

    def select(self, table: str, key: int | None = None) -> list[dict]:
        _, rows = self._table(table)
        if key is not None:
            return [dict(rows[key])] if key in rows else []

        return [dict(rows[k]) for k in sorted(rows)]

    def insert(self, table: str, row: dict) -> int:
        t, rows = self._table(table)
        key = row[t.columns[0]]
        if key in rows:
            raise ServerError(CONSTRAINT_VIOLATION.format(
                table=t.name, column=t.columns[0], key=key))

        self._append(t, key, row)
        return 1

    def upsert(self, table: str, row: dict) -> int:
        t, _ = self._table(table)
        self._append(t, row[t.columns[0]], row)
        return 1

    def update(self, table: str, key: int, values: dict, where: dict | None = None) -> int:
        """UPDATE table SET values WHERE key = key AND where. Returns modified rows."""
        t, rows = self._table(table)
        row = rows.get(key)
        if row is None or any(row[c] != v for c, v in (where or {}).items()):
            return 0

        self._append(t, key, row | values)
        return 1

    def touch(self, table: str) -> None:
        """An update that changes nothing, but is ordered like any other write."""
        t, _ = self._table(table)
        self._append(t, None, None)

    def _append(self, table: Table, key: int | None, row: dict | None) -> None:
        if self.read_only:
            raise ServerError("Read-only procedure attempted to modify"
                              f" table {table.name}")

        self.node.append(self.partition, Entry(table=table.name,
                                               key=key,
                                               row=dict(row) if row else None,
                                               master_id=self.node.node_id,
                                               created_at_ts=get_current_ts()))


class Node:
    def __init__(self, node_id: int, cluster: "Cluster"):
        self.node_id = node_id
        self.cluster = cluster
        self.network = cluster.network
        self.prng = cluster.prng
        self.up = True
        self.rejoining = False
        # Bumped on every crash, so work started before a crash can't reply after it.
        self.incarnation = 0
        self.logs: dict[int, list[Entry]] = {}
        # Partition -> table name -> key -> row, materialized from the log.
        self.tables: dict[int, dict[str, dict[int, dict]]] = {}
        # On masters: partition -> node id -> node's last replicated log index.
        self.match_index: dict[int, dict[int, int]] = {}
        # Client calls coordinated here, failed if this node dies.
        self.pending_calls: set[Future] = set()
        # Fragments sent to partition masters: fragment -> (partition, client call).
        self.pending_fragments: dict[Future, tuple[int, Future]] = {}
        self.restore({p: [] for p in cluster.partition_ids})

    def initiate(self):
        get_event_loop().create_task(f"{self} replication", self.replicate()).ignore_future()

    def restore(self, logs: dict[int, list[Entry]]) -> None:
        """Replace all state with copies of logs, e.g. a snapshot from the masters."""
        self.logs = {p: list(entries) for p, entries in logs.items()}
        self.tables = {p: {} for p in logs}
        self.match_index = {p: {} for p in logs}
        for p, entries in self.logs.items():
            for e in entries:
                self._apply(p, e)

    def append(self, partition: int, entry: Entry) -> None:
        self.logs[partition].append(entry)
        self._apply(partition, entry)

    def _apply(self, partition: int, entry: Entry) -> None:
        if entry.row is not None:
            self.tables[partition].setdefault(entry.table, {})[entry.key] = dict(entry.row)

    def is_master(self, partition: int) -> bool:
        return self.cluster.masters[partition] == self.node_id

    # Client-facing coordinator.

    def receive_invocation(self, reply: Future, procedure: str, args: tuple) -> None:
        if not self.up:
            reply.set_exception(ServerError(CONNECTION_LOST.format(node_id=self.node_id)))
            return

        if reply.resolved:
            return  # The client gave up before the call arrived.

        self.pending_calls.add(reply)
        reply.add_done_callback(
            lambda result, exception: self._abandon(reply, exception))
        get_event_loop().create_task(
            f"{self} {procedure}", self._coordinate(reply, procedure, args))

    async def _coordinate(self, reply: Future, procedure: str, args: tuple) -> None:
        incarnation = self.incarnation
        rows, error = None, None
        try:
            proc = self.cluster.procedures.get(procedure)
            if proc is None:
                raise ServerError(PROCEDURE_NOT_FOUND.format(name=procedure))

            if proc.partition_parameter is None:
                partitions = self.cluster.partition_ids
            else:
                partitions = [self.cluster.partition_for(args[proc.partition_parameter])]

            rows = []
            for p in partitions:
                rows.extend(await self._send_fragment(reply, p, proc, args))
        except ServerError as e:
            rows, error = None, e

        if self.incarnation != incarnation or not self.up:
            return  # The client already heard the connection drop.

        self.pending_calls.discard(reply)
        if error is not None:
            self.cluster.client_send(reply.set_exception, exception=error)
        else:
            self.cluster.client_send(reply.resolve, result=rows)

    def _abandon(self, reply: Future, exception: Exception | None) -> None:
        """The call is over for the client, so stop waiting on its behalf."""
        self.pending_calls.discard(reply)
        if exception is None:
            return

        for fragment, (_, call) in list(self.pending_fragments.items()):
            if call is reply:
                fragment.set_exception(exception)

    def _send_fragment(self, reply: Future, partition: int, proc: Procedure,
                       args: tuple) -> Future:
        fragment_reply = Future()
        self.pending_fragments[fragment_reply] = (partition, reply)
        fragment_reply.add_done_callback(
            lambda result, exception: self.pending_fragments.pop(fragment_reply, None))
        master = self.cluster.nodes[self.cluster.masters[partition]]
        self.network.send(self.node_id,
                          master.execute_fragment,
                          origin_id=self.node_id,
                          reply=fragment_reply,
                          partition=partition,
                          procedure=proc.name,
                          args=args)
        return fragment_reply

    def fragment_done(self, reply: Future, rows: list[dict] | None,
                      error: ServerError | None) -> None:
        if not self.up:
            return

        if error is not None:
            reply.set_exception(error)
        else:
            reply.resolve(rows)

    # Partition master.

    def execute_fragment(self, origin_id: int, reply: Future, partition: int,
                         procedure: str, args: tuple) -> None:
        if not self.up:
            return

        get_event_loop().create_task(
            f"{self} fragment {procedure} p{partition}",
            self._execute(origin_id, reply, partition, procedure, args))

    async def _execute(self, origin_id: int, reply: Future, partition: int,
                       procedure: str, args: tuple) -> None:
        incarnation = self.incarnation
        rows, error = None, None
        try:
            if not self.is_master(partition):
                raise ServerError(MASTERSHIP_CHANGE)

            proc = self.cluster.procedures[procedure]
            rows = proc.fn(Fragment(self, partition, proc.read_only), *args)
            if not proc.read_only or self.cluster.safe_reads:
                await self._await_replicated(partition, len(self.logs[partition]) - 1)
        except ServerError as e:
            rows, error = None, e

        if self.incarnation != incarnation or not self.up:
            return

        self.network.send(self.node_id,
                          self.cluster.nodes[origin_id].fragment_done,
                          reply=reply,
                          rows=rows,
                          error=error)

    def _replicated(self, partition: int, index: int) -> bool:
        positions = self.match_index[partition]
        return all(positions.get(n, -1) >= index
                   for n in self.cluster.up_node_ids() if n != self.node_id)

    async def _await_replicated(self, partition: int, index: int) -> None:
        while not self._replicated(partition, index):
            await sleep(_BUSY_WAIT)
            if not self.up or not self.is_master(partition):
                raise ServerError(MASTERSHIP_CHANGE)

    def request_entries(self, node_id: int, incarnation: int, partition: int,
                        start: int) -> None:
        """A replica asks for log entries from index start onward."""
        if not self.up or not self.is_master(partition):
            return

        replica = self.cluster.nodes[node_id]
        if not replica.up or replica.incarnation != incarnation:
            return  # Sent before the replica crashed, its log has been replaced since.

        positions = self.match_index[partition]
        positions[node_id] = max(positions.get(node_id, -1), start - 1)
        entries = self.logs[partition][start:]
        if entries:
            self.network.send(self.node_id,
                              self.cluster.nodes[node_id].receive_entries,
                              master_id=self.node_id,
                              partition=partition,
                              start=start,
                              entries=entries)

    # Replica.

    async def replicate(self):
        """Eternal task that pulls new log entries from partition masters."""
        try:
            while True:
                await sleep(self.cluster.replication_interval)
                if not self.up:
                    continue

                for p in self.cluster.partition_ids:
                    master_id = self.cluster.masters[p]
                    if master_id == self.node_id:
                        continue

                    self.network.send(self.node_id,
                                      self.cluster.nodes[master_id].request_entries,
                                      node_id=self.node_id,
                                      incarnation=self.incarnation,
                                      partition=p,
                                      start=len(self.logs[p]))
        except Exception as e:
            _logger.exception(e)
            raise

    def receive_entries(self, master_id: int, partition: int, start: int,
                        entries: list[Entry]) -> None:
        if (not self.up
                or self.cluster.masters[partition] != master_id
                or start != len(self.logs[partition])):
            return  # Stale, a duplicate, or from a master that has since died.

        for e in entries:
            self.append(partition, e)

        lag = get_current_ts() - entries[-1].created_at_ts
        _logger.debug(f"{self} replicated p{partition} to {len(self.logs[partition]) - 1},"
                      f" lag {lag}")

    def __str__(self) -> str:
        return f"Node {self.node_id}"


class Cluster:
    def __init__(self, cfg: DictConfig, prng: PRNG):
        assert cfg.nodes >= 1, "Need at least one node"
        assert cfg.partitions >= 1, "Need at least one partition"
        self.prng = prng
        self.node_ids = list(range(1, cfg.nodes + 1))
        self.partition_ids = list(range(cfg.partitions))
        self.safe_reads: bool = cfg.safe_reads
        self.replication_interval: int = cfg.replication_interval
        self.rejoin_time: int = cfg.rejoin_time
        self.network = Network(prng=prng, node_ids=self.node_ids)
        self.masters: dict[int, int] = {
            p: self.node_ids[p % len(self.node_ids)] for p in self.partition_ids}
        self.tables: dict[str, Table] = {}
        self.procedures: dict[str, Procedure] = {}
        self.nodes: dict[int, Node] = {i: Node(node_id=i, cluster=self)
                                       for i in self.node_ids}

    def initiate(self) -> None:
        for n in self.nodes.values():
            n.initiate()

    def partition_for(self, key: int) -> int:
        return hash(key) % len(self.partition_ids)

    # Schema.

    def create_table(self, name: str, columns: tuple[str, ...]) -> None:
        if name in self.tables:
            raise ServerError(f"Object name conflict: {name} already exists")

        table = Table(name=name, columns=tuple(columns))
        self.tables[name] = table
        prefix = name.upper()

        def select(f: Fragment, key):
            return f.select(name, key)

        def insert(f: Fragment, *values):
            return [{"modified_tuples": f.insert(name, dict(zip(table.columns, values)))}]

        def upsert(f: Fragment, *values):
            return [{"modified_tuples": f.upsert(name, dict(zip(table.columns, values)))}]

        self.create_procedure(Procedure(f"{prefix}.select", select))
        self.create_procedure(Procedure(f"{prefix}.insert", insert, read_only=False))
        self.create_procedure(Procedure(f"{prefix}.upsert", upsert, read_only=False))
        _logger.info(f"Created table {name}{table.columns}")

    def create_procedure(self, procedure: Procedure) -> None:
        if procedure.name in self.procedures:
            raise ServerError(f"Object name conflict: {procedure.name} already exists")

        self.procedures[procedure.name] = procedure

    # Membership and faults.

    def is_up(self, node_id: int) -> bool:
        return self.nodes[node_id].up

    def up_node_ids(self) -> list[int]:
        return [n.node_id for n in self.nodes.values() if n.up]

    def kill(self, node_id: int) -> None:
        node = self.nodes[node_id]
        if not node.up:
            return

        assert len(self.up_node_ids()) > 1, "Refusing to kill the last live node"
        _logger.info(f"Killing {node}")
        node.up = False
        node.incarnation += 1
        calls = list(node.pending_calls)
        node.pending_calls.clear()
        node.pending_fragments.clear()
        for reply in calls:
            reply.set_exception(ServerError(CONNECTION_LOST.format(node_id=node_id)))

        for p, master_id in self.masters.items():
            if master_id == node_id:
                self._fail_over(p)

    def _fail_over(self, partition: int) -> None:
        # The most caught-up survivor; every other replica's log is a prefix of its log.
        survivors = [n for n in self.nodes.values() if n.up]
        new_master = max(survivors, key=lambda n: (len(n.logs[partition]), -n.node_id))
        self.masters[partition] = new_master.node_id
        new_master.match_index[partition] = {}
        _logger.info(f"Partition {partition} failed over to {new_master}")
        for n in survivors:
            for fragment, (p, _) in list(n.pending_fragments.items()):
                if p == partition:
                    fragment.set_exception(ServerError(MASTERSHIP_CHANGE))

    async def rejoin(self, node_id: int) -> bool:
        """Restart a dead node. Returns False if it was already up."""
        node = self.nodes[node_id]
        if node.up:
            return False

        if node.rejoining:
            while not node.up:
                await sleep(_BUSY_WAIT)
            return True

        node.rejoining = True
        _logger.info(f"Rejoining {node}")
        await sleep(self.rejoin_time)
        snapshot = {p: self.nodes[m].logs[p] for p, m in self.masters.items()}
        node.restore(snapshot)
        node.up = True
        node.rejoining = False
        for p, m in self.masters.items():
            self.nodes[m].match_index[p][node_id] = len(snapshot[p]) - 1
        _logger.info(f"{node} rejoined")
        return True

    def client_send(self, method: Callable, **kwargs) -> None:
        """Deliver a message between a client and a node. Clients are never partitioned."""
        get_event_loop().call_later(self.prng.one_way_latency_value(), method, **kwargs)


def setup_logging(cluster: Cluster) -> None:
    # Log messages show current timestamp and each node's state: 1 if it masters some
    # partition, 2 if it only holds replicas, i if isolated, x if down.
    class CustomFormatter(logging.Formatter):
        def format(self, record):
            original_msg = super().format(record)

            def state(n: Node) -> str:
                if not n.up:
                    return "x"
                if cluster.network.is_isolated(n.node_id):
                    return "i"
                return "1" if n.node_id in cluster.masters.values() else "2"

            node_states = " ".join(state(n) for n in cluster.nodes.values())
            return f"{get_current_ts(): 8} {node_states} {original_msg}"

    formatter = CustomFormatter(fmt="%(levelname)s: %(message)s")
    for h in logging.getLogger().handlers:
        h.setFormatter(formatter)
