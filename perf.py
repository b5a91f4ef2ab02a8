"""Latency statistics and charts for a run's history."""

import logging
import os.path

import matplotlib.pyplot as plt
import pandas as pd

from history import History, OpType

_logger = logging.getLogger("perf")

_COLORS = {OpType.OK: "C2", OpType.FAIL: "C3", OpType.INFO: "C1"}


def latencies(history: History) -> pd.DataFrame:
    """One row per completed operation. Ops that never completed have no latency."""
    rows = [{
        "process": invoke.process,
        "f": invoke.f.value,
        "type": completion.type.value,
        "start": invoke.time,
        "latency": completion.time - invoke.time,
    } for invoke, completion in history.pairs() if completion.index is not None]
    return pd.DataFrame(rows, columns=["process", "f", "type", "start", "latency"])


def summarize(df: pd.DataFrame) -> dict:
    if df.empty:
        return {}

    grouped = df.groupby(["f", "type"])["latency"]
    stats = grouped.agg(
        count="count",
        mean="mean",
        p50=lambda s: s.quantile(0.5),
        p90=lambda s: s.quantile(0.9),
        p99=lambda s: s.quantile(0.99),
        max="max")
    return {f"{f} {t}": {k: float(v) for k, v in row.items()}
            for (f, t), row in stats.iterrows()}


def chart_latency(df: pd.DataFrame, path: str) -> None:
    fig, ax = plt.subplots(figsize=(8, 4))
    ax.set(xlabel="time (ms)", ylabel="latency (ms)")
    ax.yaxis.grid(True, which="both", linestyle="--", linewidth=0.5)
    ax.set_axisbelow(True)
    markers = {f: m for f, m in zip(sorted(df["f"].unique()), "o^sxD")}
    for (f, t), group in df.groupby(["f", "type"]):
        ax.scatter(group["start"],
                   group["latency"].clip(lower=1),
                   s=4,
                   marker=markers[f],
                   color=_COLORS[OpType(t)],
                   label=f"{f} {t}")

    ax.set_yscale("log")
    ax.legend(loc="upper right", fontsize="small", markerscale=2)
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)
    _logger.info(path)


def perf_checker(history: History, store_dir: str | None = None) -> dict:
    """Always valid, this is a report rather than a check."""
    df = latencies(history)
    if store_dir is not None and not df.empty:
        chart_latency(df, os.path.join(store_dir, "latency.png"))

    return {"valid": True, "latency": summarize(df)}
