"""Serve the poll trigger API.

Usage:
    python scripts/serve_api.py --port 8080
"""

import argparse
import os
import sys
from pathlib import Path

import uvicorn

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config.logging_config import setup_logging
from src.config.settings import get_settings
from src.domain.exceptions import ConfigurationError
from src.observability.metrics import ensure_metrics_exporter


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Serve the sales celebration API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")))
    parser.add_argument("--metrics", action="store_true", help="Start the Prometheus exporter")
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(log_level=settings.log_level, json_logs=settings.log_json)
    if args.metrics:
        ensure_metrics_exporter(settings.metrics_port)

    uvicorn.run(
        "src.presentation.api:app",
        host=args.host,
        port=args.port,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
