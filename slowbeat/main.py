#!/usr/bin/env python3
"""slowbeat — Redis slowlog collector entry point."""

import argparse
import logging
import signal
import sys
import threading

from slowbeat.config import load_config, load_yaml_config
from slowbeat.errors import ConfigError
from slowbeat.metrics import CollectorMetrics
from slowbeat.pool import build_pools
from slowbeat.scheduler import CollectionScheduler
from slowbeat.sinks import create_sink
from slowbeat.worker import CollectionWorker

logger = logging.getLogger(__name__)


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Redis slowlog collector")
    parser.add_argument(
        "--config", default=None,
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--backend", action="append", default=None,
        help="Backend host:port to collect from (repeatable)",
    )
    parser.add_argument("--period", type=float, default=None, help="Polling period in seconds")
    parser.add_argument(
        "--slower-than", dest="slower_than", type=int, default=None,
        help="slowlog-log-slower-than to push to backends in microseconds (<=0 leaves it untouched)",
    )
    parser.add_argument("--password", default=None, help="Shared AUTH secret for all backends")
    parser.add_argument("--log-level", dest="log_level", default=None)
    return parser


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    args = build_cli_parser().parse_args(argv)
    try:
        config = load_config(args, load_yaml_config(args.config))
        pools = build_pools(config)
        sink = create_sink(config.output)
    except ConfigError as exc:
        logger.error("Cannot start: %s", exc)
        return 1
    logging.getLogger().setLevel(config.log_level)

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    metrics = CollectorMetrics()
    workers = [
        CollectionWorker(address, pool, sink, config.name, metrics)
        for address, pool in pools.items()
    ]
    scheduler = CollectionScheduler(workers, config.period, metrics, config.metrics_interval)

    logger.info("%s is running! Hit CTRL-C to stop it.", config.name)
    try:
        scheduler.run(shutdown_event)
    finally:
        scheduler.drain()
        for pool in pools.values():
            pool.close()
        sink.close()
        metrics.log_snapshot()
        logger.info("%s stopped.", config.name)
    return 0


if __name__ == "__main__":
    sys.exit(main())
