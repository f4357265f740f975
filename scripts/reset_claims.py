"""Administrative claim reset script.

Lists or deletes delivery claims so that stuck celebrations can be retried.

Usage:
    python scripts/reset_claims.py --stale-minutes 30 --dry-run
    python scripts/reset_claims.py --stale-minutes 30
    python scripts/reset_claims.py --estimate-id 12345 --forget-estimate
"""

import argparse
import json
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytz

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.adapters.repository_factory import create_repository, create_watermark_store
from src.config.logging_config import setup_logging
from src.config.settings import get_settings
from src.domain.exceptions import ConfigurationError
from src.domain.models import ClaimStatus
from src.use_cases.reset_claims import reset_claims_use_case


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reset celebration delivery claims")
    parser.add_argument("--estimate-id", default=None, help="Only claims for this estimate")
    parser.add_argument(
        "--status",
        action="append",
        choices=[status.value for status in ClaimStatus],
        default=None,
        help="Only claims in this status (repeatable)",
    )
    parser.add_argument(
        "--stale-minutes",
        type=int,
        default=None,
        help="Only pending claims older than N minutes",
    )
    parser.add_argument(
        "--forget-estimate",
        action="store_true",
        help="Delete the estimate rows even when other claims for them remain",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show matching claims without deleting",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the reset; returns the process exit code."""
    args = parse_args(argv)

    statuses = [ClaimStatus(value) for value in args.status] if args.status else None
    older_than = None
    if args.stale_minutes is not None:
        if args.stale_minutes <= 0:
            print("Error: --stale-minutes must be positive", file=sys.stderr)
            return 2
        older_than = datetime.now(tz=pytz.UTC) - timedelta(minutes=args.stale_minutes)
        statuses = statuses or [ClaimStatus.PENDING]

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(log_level=settings.log_level, json_logs=settings.log_json)
    repository = create_repository(settings)

    try:
        result = reset_claims_use_case(
            repository,
            create_watermark_store(repository),
            estimate_id=args.estimate_id,
            statuses=statuses,
            older_than=older_than,
            forget_estimate=args.forget_estimate,
            dry_run=args.dry_run,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        repository.close()

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
