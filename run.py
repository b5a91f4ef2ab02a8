import csv
import logging
import os.path
import pprint
import sys
from dataclasses import dataclass, field
from typing import Any, Callable

import yaml
from omegaconf import DictConfig

import dirty_read
from client import Client, RunContext
from cluster import Cluster, setup_logging
from dirty_read import DirtyReadClient, DirtyReadGenerator, dirty_read_checker
from experiment import all_param_combos, swept_keys
from history import Fn, History, Op, OpType
from nemesis import NEMESES, final_recovery
from params import BASE_PARAMS
from perf import perf_checker
from prob import PRNG
from register import RegisterClient, RegisterGenerator, register_checker
from simulate import get_current_ts, get_event_loop, sleep, Timestamp

_logger = logging.getLogger("run")


@dataclass
class Workload:
    client: Client
    generator: Any
    """Has op(ctx, process) -> Op and pause(ctx) -> delay before the next op."""
    checker: Callable[[RunContext, History], dict]
    final_fns: list[Fn] = field(default_factory=list)
    """Each thread runs these once, in order, after faults have stopped."""


def make_workload(params: DictConfig) -> Workload:
    if params.workload == "register":
        return Workload(client=RegisterClient.from_params(params),
                        generator=RegisterGenerator.from_params(params),
                        checker=register_checker)

    if params.workload == "dirty-read":
        return Workload(client=DirtyReadClient.from_params(params),
                        generator=DirtyReadGenerator(),
                        checker=dirty_read_checker,
                        final_fns=dirty_read.FINAL_FNS)

    raise ValueError(f"Unknown workload {params.workload!r}")


async def run_op(ctx: RunContext, client: Client, op: Op, history: History) -> int:
    """Invoke op and record it. Returns the process number to use next."""
    history.append(op)
    completion = await client.invoke(ctx, op)
    assert completion.process == op.process and completion.f is op.f
    history.append(completion)
    if completion.type is OpType.INFO:
        # The op may still be running as far as we know, so this process is done.
        return op.process + ctx.concurrency

    return op.process


async def worker(ctx: RunContext,
                 thread: int,
                 client: Client,
                 generator,
                 history: History,
                 deadline: Timestamp) -> int:
    """Run one operation at a time until the deadline. Returns the last process."""
    process = thread
    while True:
        await sleep(generator.pause(ctx))
        if get_current_ts() >= deadline:
            return process

        process = await run_op(ctx, client, generator.op(ctx, process), history)


async def final_phase(ctx: RunContext,
                      client: Client,
                      process: int,
                      fns: list[Fn],
                      history: History) -> None:
    for f in fns:
        process = await run_op(ctx, client, Op.invoke(process, f), history)


def overall_validity(results: dict) -> bool | None:
    validities = [r["valid"] for r in results.values()]
    if any(v is False for v in validities):
        return False
    if any(v is None for v in validities):
        return None
    return True


async def main_coro(params: DictConfig, history: History | None = None) -> dict:
    """Run the workload against a fresh cluster, return the checkers' results."""
    _logger.info(params)
    prng = PRNG(cfg=params)
    _logger.info(f"Seed {prng.seed}")
    cluster = Cluster(cfg=params, prng=prng)
    setup_logging(cluster)
    cluster.initiate()
    ctx = RunContext(params=params, cluster=cluster, prng=prng)
    workload = make_workload(params)
    history = History() if history is None else history

    clients = []
    for t in range(ctx.concurrency):
        clients.append(await workload.client.open(ctx, ctx.node_for_thread(t)))
    for c in clients:
        await c.setup(ctx)

    lp = get_event_loop()
    deadline = get_current_ts() + params.time_limit
    nemesis_task = None
    if params.nemesis:
        nemesis_task = lp.create_task(name="nemesis", coro=NEMESES[params.nemesis](
            cluster=cluster,
            prng=prng,
            interval=params.nemesis_interval,
            duration=params.nemesis_duration,
            deadline=deadline))

    tasks = [lp.create_task(name=f"worker {t}", coro=worker(
        ctx=ctx,
        thread=t,
        client=clients[t],
        generator=workload.generator,
        history=history,
        deadline=deadline,
    )) for t in range(ctx.concurrency)]

    processes = []
    for t in tasks:
        processes.append(await t)

    if nemesis_task is not None:
        await nemesis_task

    await final_recovery(cluster)
    await sleep(params.recovery_time)
    if workload.final_fns:
        tasks = [lp.create_task(name=f"final {t}", coro=final_phase(
            ctx=ctx,
            client=clients[t],
            process=processes[t],
            fns=workload.final_fns,
            history=history,
        )) for t in range(ctx.concurrency)]
        for t in tasks:
            await t

    for c in clients:
        c.close(ctx)

    _logger.info(f"Finished after {get_current_ts()} ms (simulated),"
                 f" {len(history)} history entries")
    results = {
        "workload": workload.checker(ctx, history),
        "perf": perf_checker(history, store_dir=params.store_dir),
    }
    results["valid"] = overall_validity(results)
    if params.store_dir is not None:
        history.to_csv(os.path.join(params.store_dir, "history.csv"))
        with open(os.path.join(params.store_dir, "results.yaml"), "w") as f:
            yaml.safe_dump(results, f, sort_keys=False)

    return results


def main():
    logging.basicConfig(level=logging.INFO)
    raw_params = BASE_PARAMS.copy()
    if len(sys.argv) > 1:
        with open(sys.argv[1]) as f:
            raw_params.update(yaml.safe_load(f))

    event_loop = get_event_loop()
    sweep = swept_keys(raw_params)
    summary = []
    for i, params in enumerate(all_param_combos(raw_params)):
        if params.store_dir is not None:
            if sweep:
                params.store_dir = os.path.join(params.store_dir, str(i))
            os.makedirs(params.store_dir, exist_ok=True)

        results = event_loop.run_until_complete(
            event_loop.create_task("main", main_coro(params=params)))
        _logger.info(f"results:\n{pprint.pformat(results['workload'], compact=True)}")
        _logger.info(f"valid? {results['valid']}")
        summary.append({k: params[k] for k in sweep} | {"valid": results["valid"]})
        event_loop.reset()

    if sweep and raw_params.store_dir is not None:
        csv_path = os.path.join(raw_params.store_dir, "summary.csv")
        with open(csv_path, "w", newline="") as csv_file:
            csv_writer = csv.DictWriter(csv_file, fieldnames=summary[0].keys())
            csv_writer.writeheader()
            csv_writer.writerows(summary)
        _logger.info(csv_path)

    if any(s["valid"] is False for s in summary):
        sys.exit(1)


if __name__ == "__main__":
    main()
