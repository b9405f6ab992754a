from __future__ import annotations

from typing import Any, Iterable, Mapping

import pandas as pd
import yaml

from rpct.metrics.accumulator import PROBABILITIES

LATENCY_KEYS: tuple[str, ...] = ("average", *(f"p{p}" for p in PROBABILITIES), "max")
SUMMARY_COLUMNS: tuple[str, ...] = ("shard", "job", "messages", *LATENCY_KEYS)


def merge_shard_results(results: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return sorted((dict(result) for result in results), key=lambda result: result["shard"])


def summarize(report: Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    rows: list[dict[str, Any]] = []
    for shard in report:
        for job, result in shard.items():
            if job == "shard":
                continue
            rows.append(
                {
                    "shard": shard["shard"],
                    "job": job,
                    "messages": result["messages"],
                    **result["latencies"],
                }
            )
    return pd.DataFrame(rows, columns=list(SUMMARY_COLUMNS))


def totals(frame: pd.DataFrame) -> pd.DataFrame:
    if frame.empty:
        return pd.DataFrame(columns=["job", "messages", "average", "max"])
    weighted = frame.assign(weighted=frame["average"] * frame["messages"])
    grouped = (
        weighted.groupby("job", sort=False)
        .agg(messages=("messages", "sum"), weighted=("weighted", "sum"), max=("max", "max"))
        .reset_index()
    )
    average = grouped["weighted"].div(grouped["messages"].where(grouped["messages"] > 0))
    grouped["average"] = average.fillna(0).astype("int64")
    return grouped[["job", "messages", "average", "max"]]


def dump_report(report: list[dict[str, Any]]) -> str:
    return yaml.safe_dump(report, sort_keys=False, explicit_start=True, explicit_end=True, default_flow_style=False)
