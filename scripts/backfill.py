"""Backfill historical estimates script.

Persists sold estimates within a date range without celebrating them.

Usage:
    python scripts/backfill.py --start 2025-10-01 --end 2025-11-01
"""

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path

import pytz

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.adapters.repository_factory import create_repository
from src.adapters.servicetitan_client import ServiceTitanClient
from src.config.logging_config import setup_logging
from src.config.settings import get_settings
from src.domain.exceptions import ConfigurationError, UpstreamFetchError
from src.use_cases.backfill_estimates import backfill_estimates_use_case


def main(argv: list[str] | None = None) -> int:
    """Run backfill."""
    parser = argparse.ArgumentParser(description="Backfill sold estimates")
    parser.add_argument("--start", required=True, help="Start date (YYYY-MM-DD), inclusive")
    parser.add_argument("--end", required=True, help="End date (YYYY-MM-DD), exclusive")
    args = parser.parse_args(argv)

    # Parse dates
    try:
        start = datetime.strptime(args.start, "%Y-%m-%d").replace(tzinfo=pytz.UTC)
        end = datetime.strptime(args.end, "%Y-%m-%d").replace(tzinfo=pytz.UTC)
    except ValueError as e:
        print(f"Error parsing dates: {e}", file=sys.stderr)
        return 2

    if start >= end:
        print("Error: --start must be before --end", file=sys.stderr)
        return 2

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(log_level=settings.log_level, json_logs=settings.log_json)
    repository = create_repository(settings)

    try:
        result = backfill_estimates_use_case(
            ServiceTitanClient(settings), repository, settings, start, end
        )
    except UpstreamFetchError as e:
        print(f"Sales feed error: {e}", file=sys.stderr)
        return 1
    finally:
        repository.close()

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0 if not result.errors else 1


if __name__ == "__main__":
    sys.exit(main())
