import os.path
import tempfile
import unittest
from unittest import TestCase

from history import Fn, History, Op, OpType
from perf import latencies, perf_checker, summarize


def _history() -> History:
    history = History()
    for process, (f, type, start, latency) in enumerate([
        (Fn.WRITE, OpType.OK, 0, 10),
        (Fn.WRITE, OpType.OK, 5, 20),
        (Fn.WRITE, OpType.INFO, 7, 1000),
        (Fn.READ, OpType.OK, 12, 4),
    ]):
        invoke = Op.invoke(process, f, 1)
        history.append(_at(invoke, start))
        history.append(_at(invoke.complete(type), start + latency))

    # Never completed.
    history.append(_at(Op.invoke(9, Fn.READ, 1), 50))
    return history


def _at(op: Op, time: int) -> Op:
    return Op(op.process, op.f, op.value, op.type, op.error, time)


class PerfTest(TestCase):
    def test_latencies(self):
        df = latencies(_history())
        self.assertEqual(len(df), 4)
        self.assertEqual(list(df["latency"]), [10, 20, 1000, 4])
        self.assertEqual(list(df["type"]), ["ok", "ok", "info", "ok"])

    def test_summarize(self):
        stats = summarize(latencies(_history()))
        self.assertEqual(set(stats), {"write ok", "write info", "read ok"})
        self.assertEqual(stats["write ok"]["count"], 2)
        self.assertEqual(stats["write ok"]["mean"], 15)
        self.assertEqual(stats["write ok"]["max"], 20)
        self.assertEqual(stats["read ok"]["p50"], 4)

    def test_empty(self):
        self.assertEqual(perf_checker(History()), {"valid": True, "latency": {}})

    def test_chart(self):
        with tempfile.TemporaryDirectory() as store_dir:
            result = perf_checker(_history(), store_dir=store_dir)
            self.assertTrue(result["valid"])
            self.assertTrue(os.path.exists(os.path.join(store_dir, "latency.png")))


if __name__ == '__main__':
    unittest.main()
