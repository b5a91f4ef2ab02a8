import logging
import unittest
from unittest import TestCase

from client import Once
from dirty_read import (DirtyReadClient, DirtyReadGenerator, FINAL_FNS,
                        NO_CONNECTIONS_BACKOFF, check_dirty_reads)
from history import Fn, History, Op, OpType
from sim_testcase import ClusterTestCase
from simulate import get_current_ts, sleep
from store import ProtocolDefect

logging.basicConfig(level=logging.DEBUG)


def _history(*ops: tuple[Fn, object]) -> History:
    """Each op invoked and acknowledged in turn, by a process per op."""
    history = History()
    for process, (f, value) in enumerate(ops):
        history.append(Op.invoke(process, f, value))
        history.append(Op(process, f, value, OpType.OK))
    return history


class CheckDirtyReadsTest(TestCase):
    def test_clean(self):
        history = _history((Fn.WRITE, 1), (Fn.WRITE, 2), (Fn.READ, 1),
                           (Fn.STRONG_READ, frozenset({1, 2})),
                           (Fn.STRONG_READ, frozenset({1, 2})))
        result = check_dirty_reads(history, concurrency=2)
        self.assertTrue(result["valid"])
        self.assertEqual(result["read_count"], 1)
        self.assertEqual(result["strong_read_count"], 2)
        self.assertEqual(result["unseen"], [2])
        self.assertEqual(result["unseen_count"], 1)
        self.assertEqual(result["dirty"], [])
        self.assertEqual(result["lost"], [])

    def test_dirty_read(self):
        history = _history((Fn.WRITE, 1), (Fn.READ, 1), (Fn.READ, 5),
                           (Fn.STRONG_READ, frozenset({1})))
        result = check_dirty_reads(history, concurrency=1)
        self.assertFalse(result["valid"])
        self.assertEqual(result["dirty"], [5])
        self.assertEqual(result["dirty_count"], 1)
        self.assertEqual(result["lost"], [])

    def test_lost_write(self):
        history = _history((Fn.WRITE, 1), (Fn.WRITE, 2),
                           (Fn.STRONG_READ, frozenset({1})))
        result = check_dirty_reads(history, concurrency=1)
        self.assertFalse(result["valid"])
        self.assertEqual(result["lost"], [2])
        self.assertEqual(result["lost_count"], 1)
        self.assertEqual(result["dirty"], [])

    def test_write_read_strong_read_sets(self):
        def run(writes, reads, strong_read):
            history = _history(*[(Fn.WRITE, v) for v in writes],
                               *[(Fn.READ, v) for v in reads],
                               (Fn.STRONG_READ, frozenset(strong_read)))
            return check_dirty_reads(history, concurrency=1)

        result = run(writes={1, 2, 3}, reads={1, 2}, strong_read={1, 2, 3})
        self.assertEqual((result["valid"], result["dirty"], result["lost"]),
                         (True, [], []))
        result = run(writes={1, 2, 3}, reads={1, 2, 4}, strong_read={1, 2, 3})
        self.assertEqual((result["valid"], result["dirty"], result["lost"]),
                         (False, [4], []))
        result = run(writes={1, 2, 3}, reads=set(), strong_read={1, 2})
        self.assertEqual((result["valid"], result["dirty"], result["lost"]),
                         (False, [], [3]))

    def test_only_ok_ops_count(self):
        history = _history((Fn.STRONG_READ, frozenset({1})))
        history.append(Op.invoke(7, Fn.WRITE, 2))
        history.append(Op(7, Fn.WRITE, 2, OpType.INFO, error="timeout"))
        history.append(Op.invoke(8, Fn.READ, 3))
        history.append(Op(8, Fn.READ, None, OpType.FAIL))
        result = check_dirty_reads(history, concurrency=1)
        self.assertTrue(result["valid"])
        self.assertEqual(result["read_count"], 0)

    def test_idempotent(self):
        history = _history((Fn.WRITE, 1), (Fn.READ, 3),
                           (Fn.STRONG_READ, frozenset({1})))
        self.assertEqual(check_dirty_reads(history, 1), check_dirty_reads(history, 1))

    def test_strong_read_count_must_match_concurrency(self):
        history = _history((Fn.STRONG_READ, frozenset({1})))
        with self.assertRaises(ProtocolDefect):
            check_dirty_reads(history, concurrency=2)

    def test_strong_reads_must_agree(self):
        history = _history((Fn.STRONG_READ, frozenset({1, 2})),
                           (Fn.STRONG_READ, frozenset({1})))
        with self.assertRaises(ProtocolDefect):
            check_dirty_reads(history, concurrency=2)


class DirtyReadGeneratorTest(ClusterTestCase):
    def test_one_writer_per_node(self):
        gen = DirtyReadGenerator()
        self.assertIsNone(gen.in_flight)
        ops = {p: gen.op(self.ctx, p) for p in range(6)}
        self.assertEqual([ops[p].f for p in range(6)],
                         [Fn.WRITE] * 3 + [Fn.READ] * 3)
        self.assertEqual([ops[p].value for p in range(3)], [1, 2, 3])
        self.assertEqual(gen.in_flight, [1, 2, 3])
        # Readers read whatever their node's writer wrote last.
        self.assertEqual([ops[p].value for p in range(3, 6)], [1, 2, 3])

    def test_readers_follow_latest_write(self):
        gen = DirtyReadGenerator()
        gen.op(self.ctx, 1)
        gen.op(self.ctx, 1)
        self.assertEqual(gen.op(self.ctx, 4), Op.invoke(4, Fn.READ, 2))
        # Node 0's writer hasn't written yet.
        self.assertEqual(gen.op(self.ctx, 3), Op.invoke(3, Fn.READ, 0))

    def test_renumbered_processes_keep_roles(self):
        gen = DirtyReadGenerator()
        self.assertIs(gen.op(self.ctx, 6).f, Fn.WRITE)
        self.assertIs(gen.op(self.ctx, 9).f, Fn.READ)
        self.assertIs(gen.op(self.ctx, 13).f, Fn.WRITE)

    def test_pause(self):
        gen = DirtyReadGenerator()
        for _ in range(20):
            self.assertIn(gen.pause(self.ctx), range(2 * self.cfg.stagger + 1))

    def test_final_fns(self):
        self.assertEqual(FINAL_FNS, [Fn.REJOIN, Fn.STRONG_READ])


class DirtyReadClientTest(ClusterTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.initialized = Once()

    async def open(self, node_id: int) -> DirtyReadClient:
        prototype = DirtyReadClient(
            procedure_call_timeout=self.cfg.procedure_call_timeout,
            connection_response_timeout=self.cfg.connection_response_timeout,
            initialized=self.initialized)
        client = await prototype.open(self.ctx, node_id)
        await client.setup(self.ctx)
        return client

    async def invoke(self, client: DirtyReadClient, f: Fn, value=None) -> Op:
        return await client.invoke(self.ctx, Op.invoke(0, f, value))

    async def test_write_read_strong_read(self):
        c1 = await self.open(1)
        c2 = await self.open(2)
        self.assertIs((await self.invoke(c1, Fn.WRITE, 4)).type, OpType.OK)
        self.assertIs((await self.invoke(c1, Fn.WRITE, 5)).type, OpType.OK)
        read = await self.invoke(c2, Fn.READ, 4)
        self.assertIs(read.type, OpType.OK)
        self.assertEqual(read.value, 4)
        read = await self.invoke(c2, Fn.READ, 6)
        self.assertIs(read.type, OpType.FAIL)
        strong = await self.invoke(c2, Fn.STRONG_READ)
        self.assertIs(strong.type, OpType.OK)
        self.assertEqual(strong.value, frozenset({4, 5}))

    async def test_duplicate_write_is_ok(self):
        client = await self.open(1)
        await self.invoke(client, Fn.WRITE, 4)
        self.assertIs((await self.invoke(client, Fn.WRITE, 4)).type, OpType.OK)

    async def test_rejoin(self):
        client = await self.open(3)
        self.assertEqual((await self.invoke(client, Fn.REJOIN)).value, "already-up")
        self.cluster.kill(3)
        done = await self.invoke(client, Fn.REJOIN)
        self.assertIs(done.type, OpType.OK)
        self.assertEqual(done.value, "rejoined")
        self.assertTrue(self.cluster.is_up(3))

    async def test_no_connections_backs_off(self):
        client = await self.open(3)
        self.cluster.kill(3)
        start = get_current_ts()
        done = await self.invoke(client, Fn.READ, 1)
        self.assertIs(done.type, OpType.FAIL)
        self.assertEqual(done.error, "no-conns")
        self.assertEqual(get_current_ts() - start, NO_CONNECTIONS_BACKOFF)

    async def test_procedure_errors_are_info(self):
        # Key 1 is mastered by node 2.
        client = await self.open(1)
        self.cluster.network.isolate(2)
        for f, value in [(Fn.READ, 1), (Fn.WRITE, 1), (Fn.STRONG_READ, None)]:
            done = await self.invoke(client, f, value)
            self.assertIs(done.type, OpType.INFO)
            self.assertIn("No response received", done.error)

    async def test_lost_dirty_write(self):
        # A write accepted by an isolated master, read locally, then lost with it.
        writer = await self.open(2)
        reader = await self.open(2)
        survivor = await self.open(1)
        self.cluster.network.isolate(2)
        write = self.loop.create_task("write", self.invoke(writer, Fn.WRITE, 1))
        await sleep(50)
        self.assertIs((await self.invoke(reader, Fn.READ, 1)).type, OpType.OK)
        self.assertIs((await write).type, OpType.INFO)
        self.cluster.kill(2)
        self.cluster.network.reset_partition()
        strong = await self.invoke(survivor, Fn.STRONG_READ)
        self.assertEqual(strong.value, frozenset())


if __name__ == '__main__':
    unittest.main()
