from __future__ import annotations

import argparse
import logging
import os
import sys

from rpct.config import ConfigError, load_config
from rpct.loadgen.driver import DEFAULT_PORT, LOG_FORMAT, run_harness
from rpct.metrics import dump_report, summarize, totals

logger = logging.getLogger("rpct.cli")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="RPC load tester")
    parser.add_argument("--listen", default="", help="address to start server on")
    parser.add_argument("--connect", default="", help="address to connect client to")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="port to listen on or connect to")
    parser.add_argument("--conf", default="./conf.yaml", help="config with jobs and options")
    parser.add_argument("--duration", type=float, default=30.0, help="duration in seconds")
    parser.add_argument("--shards", type=int, default=os.cpu_count() or 1, help="number of shard processes")
    parser.add_argument("--summary", action="store_true", help="print a per-job summary table")
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.conf)
        report = run_harness(
            config,
            shards=args.shards,
            listen_host=args.listen or None,
            connect_host=args.connect or None,
            port=args.port,
            duration=args.duration,
        )
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    sys.stdout.write(dump_report(report))
    if args.summary:
        frame = summarize(report)
        print(frame.to_string(index=False))
        print()
        print(totals(frame).to_string(index=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
