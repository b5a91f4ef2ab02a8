import copy
import inspect
from unittest import TestCase

from omegaconf import DictConfig

from client import RunContext
from cluster import Cluster
from params import BASE_PARAMS
from prob import PRNG
from simulate import get_event_loop, sleep


def simulator_test_func(func):
    def wrapper(self, *args, **kwargs) -> None:
        task = self.loop.create_task(func.__name__, func(self, *args, **kwargs))
        self.loop.run_until_complete(task)

    return wrapper


class DetectCoroutines(type):
    def __new__(cls, name, bases, dct):
        new_dct = {}
        for attr_name, attr_value in dct.items():
            if inspect.iscoroutinefunction(attr_value) and attr_name.startswith("test"):
                new_dct[attr_name] = simulator_test_func(attr_value)
            else:
                new_dct[attr_name] = attr_value
        return type.__new__(cls, name, bases, new_dct)


class SimulatorTestCase(TestCase, metaclass=DetectCoroutines):
    def setUp(self) -> None:
        self.loop = get_event_loop()
        self.loop.reset()

    def tearDown(self) -> None:
        self.loop.reset()


async def await_predicate(predicate, timeout: int = 60 * 1000):
    waited = 0
    while True:
        rv = predicate()
        if rv:
            return rv

        assert waited < timeout, "Predicate never came true"
        await sleep(1)
        waited += 1


TEST_CFG = BASE_PARAMS.copy()
TEST_CFG.update({
    "seed": 1,
    "nodes": 3,
    "partitions": 3,
    "concurrency": 6,
    "time_limit": 2000,
    "procedure_call_timeout": 500,
    "connection_response_timeout": 500,
    "one_way_latency_mean": 2,
    "one_way_latency_variance": 1,
    "rejoin_time": 100,
    "recovery_time": 200,
})


class ClusterTestCase(SimulatorTestCase):
    """Starts a fresh cluster with TEST_CFG, overridden by self.cfg_overrides."""
    cfg_overrides: dict = {}

    def setUp(self) -> None:
        super().setUp()
        self.cfg: DictConfig = copy.deepcopy(TEST_CFG)
        self.cfg.update(self.cfg_overrides)
        self.prng = PRNG(cfg=self.cfg)
        self.cluster = Cluster(cfg=self.cfg, prng=self.prng)
        self.cluster.initiate()
        self.ctx = RunContext(params=self.cfg, cluster=self.cluster, prng=self.prng)

    def replicated(self, partition: int) -> bool:
        master = self.cluster.nodes[self.cluster.masters[partition]]
        return all(n.logs[partition] == master.logs[partition]
                   for n in self.cluster.nodes.values() if n.up)
