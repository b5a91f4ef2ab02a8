"""Fault injection. Each nemesis runs concurrently with the clients until a deadline,
and leaves the cluster healed when it returns."""

import logging

from cluster import Cluster
from prob import PRNG
from simulate import Timestamp, get_current_ts, sleep

_logger = logging.getLogger("nemesis")


def _live_victim(cluster: Cluster, prng: PRNG) -> int | None:
    up = cluster.up_node_ids()
    if len(up) < 2:
        return None  # Never take down the last node.

    return prng.choice(up)


async def partition_nemesis(cluster: Cluster,
                            prng: PRNG,
                            interval: int,
                            duration: int,
                            deadline: Timestamp):
    """Cut a random node off from the others, then heal."""
    while get_current_ts() < deadline:
        await sleep(round(prng.exponential(interval)))
        victim = _live_victim(cluster, prng)
        if victim is None or get_current_ts() >= deadline:
            continue

        _logger.info(f"Nemesis isolating node {victim}")
        cluster.network.isolate(victim)
        await sleep(round(prng.exponential(duration)))
        cluster.network.reset_partition()


async def crash_nemesis(cluster: Cluster,
                        prng: PRNG,
                        interval: int,
                        duration: int,
                        deadline: Timestamp):
    """Kill a random node, then bring it back."""
    while get_current_ts() < deadline:
        await sleep(round(prng.exponential(interval)))
        victim = _live_victim(cluster, prng)
        if victim is None or get_current_ts() >= deadline:
            continue

        _logger.info(f"Nemesis killing node {victim}")
        cluster.kill(victim)
        await sleep(round(prng.exponential(duration)))
        await cluster.rejoin(victim)


async def isolated_killer_nemesis(cluster: Cluster,
                                  prng: PRNG,
                                  interval: int,
                                  duration: int,
                                  deadline: Timestamp):
    """Isolate a node so its writes can't replicate, kill it, heal and rejoin it.

    Whatever the victim accepted but never replicated dies with it, which is exactly
    what a dirty read would have seen."""
    while get_current_ts() < deadline:
        await sleep(round(prng.exponential(interval)))
        victim = _live_victim(cluster, prng)
        if victim is None or get_current_ts() >= deadline:
            continue

        _logger.info(f"Nemesis isolating and killing node {victim}")
        cluster.network.isolate(victim)
        await sleep(round(prng.exponential(duration)))
        cluster.kill(victim)
        cluster.network.reset_partition()
        await sleep(round(prng.exponential(duration)))
        await cluster.rejoin(victim)


NEMESES = {
    "partition": partition_nemesis,
    "crash": crash_nemesis,
    "isolated-killer": isolated_killer_nemesis,
}


async def final_recovery(cluster: Cluster) -> None:
    """Heal the network and rejoin every dead node."""
    _logger.info("Final recovery")
    cluster.network.reset_partition()
    for node_id in cluster.node_ids:
        if not cluster.is_up(node_id):
            await cluster.rejoin(node_id)
