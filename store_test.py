import logging
import unittest
from unittest import TestCase

import store
from cluster import CONNECTION_LOST, CONSTRAINT_VIOLATION, MASTERSHIP_CHANGE
from sim_testcase import ClusterTestCase
from simulate import get_current_ts, sleep
from store import ErrorKind, NoConnectionsError, ProcedureCallError, TIMEOUT

logging.basicConfig(level=logging.DEBUG)


class ClassifyTest(TestCase):
    def test_status_strings(self):
        cases = [
            (TIMEOUT, ErrorKind.TIMEOUT),
            (CONNECTION_LOST.format(node_id=3), ErrorKind.CONNECTION_LOST),
            (MASTERSHIP_CHANGE, ErrorKind.MASTERSHIP_CHANGE),
            (CONSTRAINT_VIOLATION.format(table="t", column="id", key=1),
             ErrorKind.CONSTRAINT_VIOLATION),
            ("Procedure Foo was not found", ErrorKind.UNKNOWN),
            ("", ErrorKind.UNKNOWN),
        ]
        for message, kind in cases:
            with self.subTest(message=message):
                self.assertIs(store.classify(message), kind)


class StoreTest(ClusterTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cluster.create_table("kv", ("id", "value"))

    async def connect(self, node_id: int) -> store.Session:
        return await store.connect(
            self.cluster,
            node_id,
            procedure_call_timeout=self.cfg.procedure_call_timeout,
            connection_response_timeout=self.cfg.connection_response_timeout)

    async def test_call_returns_rows(self):
        s1 = await self.connect(1)
        s3 = await self.connect(3)
        self.assertEqual(await s1.call("KV.upsert", 1, 10), [{"modified_tuples": 1}])
        self.assertEqual(await s3.call("KV.select", 1), [{"id": 1, "value": 10}])
        self.assertEqual(await s3.call("KV.select", 4), [])

    async def test_no_connections_when_node_down(self):
        session = await self.connect(1)
        self.cluster.kill(1)
        with self.assertRaises(NoConnectionsError) as cm:
            await session.call("KV.select", 1)
        self.assertIs(cm.exception.kind, ErrorKind.NO_CONNECTIONS)

    async def test_connect_gives_up(self):
        self.cluster.kill(1)
        start = get_current_ts()
        with self.assertRaises(NoConnectionsError):
            await self.connect(1)
        self.assertGreaterEqual(get_current_ts() - start,
                                self.cfg.connection_response_timeout)

    async def test_connect_waits_for_rejoin(self):
        self.cluster.kill(1)
        self.loop.create_task("rejoin", self.cluster.rejoin(1))
        session = await self.connect(1)
        self.assertTrue(self.cluster.is_up(1))
        await session.call("KV.upsert", 0, 1)

    async def test_session_survives_rejoin(self):
        session = await self.connect(1)
        self.cluster.kill(1)
        await self.cluster.rejoin(1)
        self.assertEqual(await session.call("KV.select", 1), [])

    async def test_timeout_when_master_unreachable(self):
        # Key 1 lives on partition 1, mastered by node 2.
        session = await self.connect(1)
        self.cluster.network.isolate(2)
        start = get_current_ts()
        with self.assertRaises(ProcedureCallError) as cm:
            await session.call("KV.select", 1)
        self.assertIs(cm.exception.kind, ErrorKind.TIMEOUT)
        self.assertEqual(cm.exception.message, TIMEOUT)
        self.assertEqual(get_current_ts() - start, self.cfg.procedure_call_timeout)

    async def test_timed_out_call_is_forgotten(self):
        session = await self.connect(1)
        self.cluster.network.isolate(2)
        with self.assertRaises(ProcedureCallError):
            await session.call("KV.select", 1)
        await sleep(1)
        node = self.cluster.nodes[1]
        self.assertEqual(len(node.pending_calls), 0)
        self.assertEqual(len(node.pending_fragments), 0)

    async def test_call_on_closed_session(self):
        session = await self.connect(1)
        session.close()
        with self.assertRaises(NoConnectionsError):
            await session.call("KV.select", 1)

    async def test_connection_lost_when_node_killed(self):
        session = await self.connect(1)
        self.cluster.network.isolate(2)
        call = self.loop.create_task("call", session.call("KV.upsert", 1, 1))
        await sleep(50)
        self.cluster.kill(1)
        with self.assertRaises(ProcedureCallError) as cm:
            await call
        self.assertIs(cm.exception.kind, ErrorKind.CONNECTION_LOST)
        self.assertIn("n1", cm.exception.message)

    async def test_mastership_change_on_failover(self):
        session = await self.connect(1)
        self.cluster.network.isolate(2)
        call = self.loop.create_task("call", session.call("KV.select", 1))
        await sleep(50)
        self.cluster.kill(2)
        self.assertNotEqual(self.cluster.masters[1], 2)
        with self.assertRaises(ProcedureCallError) as cm:
            await call
        self.assertIs(cm.exception.kind, ErrorKind.MASTERSHIP_CHANGE)
        self.assertLess(get_current_ts(), 50 + self.cfg.procedure_call_timeout)

    async def test_constraint_violation(self):
        session = await self.connect(1)
        await session.call("KV.insert", 7, 0)
        with self.assertRaises(ProcedureCallError) as cm:
            await session.call("KV.insert", 7, 0)
        self.assertIs(cm.exception.kind, ErrorKind.CONSTRAINT_VIOLATION)

    async def test_unknown_procedure(self):
        session = await self.connect(1)
        with self.assertRaises(ProcedureCallError) as cm:
            await session.call("Nope")
        self.assertIs(cm.exception.kind, ErrorKind.UNKNOWN)
        self.assertEqual(cm.exception.message, "Procedure Nope was not found")


if __name__ == '__main__':
    unittest.main()
