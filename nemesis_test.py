import logging
import unittest

from nemesis import NEMESES, final_recovery
from sim_testcase import ClusterTestCase
from simulate import get_current_ts, sleep

logging.basicConfig(level=logging.DEBUG)


class NemesisTest(ClusterTestCase):
    async def test_nemeses_leave_cluster_healed(self):
        for name, nemesis in NEMESES.items():
            with self.subTest(nemesis=name):
                deadline = get_current_ts() + 2000
                await nemesis(cluster=self.cluster,
                              prng=self.prng,
                              interval=200,
                              duration=100,
                              deadline=deadline)
                self.assertGreaterEqual(get_current_ts(), deadline)
                self.assertEqual(self.cluster.up_node_ids(), self.cluster.node_ids)
                self.assertEqual(len(self.cluster.network.components), 1)

    async def test_final_recovery(self):
        self.cluster.network.isolate(1)
        self.cluster.kill(2)
        self.cluster.kill(3)
        await final_recovery(self.cluster)
        self.assertEqual(self.cluster.up_node_ids(), [1, 2, 3])
        self.assertFalse(self.cluster.network.is_isolated(1))
        await sleep(50)
        for p in self.cluster.partition_ids:
            self.assertTrue(self.replicated(p))


if __name__ == '__main__':
    unittest.main()
