from __future__ import annotations

from rpct.metrics.accumulator import PROBABILITIES, LatencyAccumulator
from rpct.metrics.report import dump_report, merge_shard_results, summarize, totals

__all__ = ["PROBABILITIES", "LatencyAccumulator", "dump_report", "merge_shard_results", "summarize", "totals"]
