"""Poller runner script.

Runs one poll (regular, manual or catchup) and prints the JSON result, or
keeps polling on an interval with --loop.

Usage:
    python scripts/run_poller.py --variant regular
    python scripts/run_poller.py --variant regular --loop --interval-seconds 60
"""

import argparse
import json
import signal
import sys
import time
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.adapters.repository_factory import create_repository
from src.adapters.servicetitan_client import ServiceTitanClient
from src.adapters.webhook_dispatcher import WebhookDispatcher
from src.config.logging_config import get_logger, setup_logging
from src.config.settings import get_settings
from src.domain.exceptions import ConfigurationError
from src.domain.models import PollVariant
from src.observability.metrics import ensure_metrics_exporter
from src.use_cases.poll_sales import Poller

logger = get_logger(__name__)

# Global flag for graceful shutdown
_shutdown_requested = False


def signal_handler(signum: int, frame: object) -> None:
    """Handle SIGTERM/SIGINT for graceful shutdown."""
    global _shutdown_requested
    logger.warning("poller_shutdown_requested", signal=signal.Signals(signum).name)
    _shutdown_requested = True


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the sales celebration poller")
    parser.add_argument(
        "--variant",
        choices=[variant.value for variant in PollVariant],
        default=PollVariant.REGULAR.value,
        help="Poller variant (default: regular)",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep polling until interrupted",
    )
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=60,
        help="Seconds between polls in loop mode (default: 60)",
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Start the Prometheus exporter (loop mode)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the poller; returns the process exit code."""
    args = parse_args(argv)
    if args.interval_seconds <= 0:
        print("Error: --interval-seconds must be positive", file=sys.stderr)
        return 2

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(log_level=settings.log_level, json_logs=settings.log_json)

    repository = create_repository(settings)
    poller = Poller(
        ServiceTitanClient(settings),
        repository,
        WebhookDispatcher(timeout=settings.dispatch_timeout_seconds),
        settings,
    )
    variant = PollVariant(args.variant)

    if not args.loop:
        result = poller.run(variant)
        print(json.dumps(result.to_response(), indent=2))
        repository.close()
        return 0 if result.success else 1

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    if args.metrics:
        ensure_metrics_exporter(settings.metrics_port)

    logger.info(
        "poller_loop_started",
        variant=variant.value,
        interval_seconds=args.interval_seconds,
    )
    while not _shutdown_requested:
        result = poller.run(variant)
        print(json.dumps(result.to_response()), flush=True)

        # Sleep in small steps so a signal stops the loop promptly
        deadline = time.monotonic() + args.interval_seconds
        while not _shutdown_requested and time.monotonic() < deadline:
            time.sleep(min(1.0, deadline - time.monotonic()))

    repository.close()
    logger.info("poller_loop_stopped", variant=variant.value)
    return 0


if __name__ == "__main__":
    sys.exit(main())
