"""CLI entry point: runs the capture service in the foreground."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import replace
from typing import List, Optional

from prometheus_client import start_http_server

from common.config import get_settings

from .service import CaptureService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="MQTT sensor capture service")
    p.add_argument("--broker", help="broker URL tried before the configured list")
    p.add_argument("--no-connect", action="store_true", help="start without connecting to a broker")
    p.add_argument("--metrics-port", type=int, default=0, help="expose Prometheus metrics on this port (0 = off)")
    p.add_argument("--stats-interval", type=float, default=60.0, help="seconds between stats log lines")
    p.add_argument("--log-level", default=None)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, (args.log_level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    if args.broker:
        settings = replace(settings, injected_broker_url=args.broker)
    service = CaptureService(settings)

    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info("Metrics exposed on :%d", args.metrics_port)

    stop = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info("Signal %d received, stopping...", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("Capture service starting")
    logger.info(
        "Config: base_topic=%s brokers=%s sessions_dir=%s",
        settings.base_topic, ",".join(settings.broker_urls), settings.sessions_dir,
    )
    service.init(connect=not args.no_connect)

    try:
        while not stop.wait(args.stats_interval):
            logger.info("Stats: %s", service.health_check())
    finally:
        service.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
