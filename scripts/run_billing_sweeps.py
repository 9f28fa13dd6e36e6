#!/usr/bin/env python3
"""
One-shot billing sweep job.

Runs both background sweeps once and exits, for deployments that drive
sweeps from cron instead of the API process (set SWEEP_ENABLED=false there):
- Reset token cycles of paid subscribers whose billing date has passed
- Purge expired webhook delivery claims

Usage:
  python scripts/run_billing_sweeps.py
  python scripts/run_billing_sweeps.py --skip-purge

Exit codes:
  0  all due subscribers reset
  2  some subscribers failed to reset (see log)
"""

import argparse
import asyncio
import logging

logger = logging.getLogger(__name__)


async def run_job(skip_purge: bool) -> int:
    from subledger.config import get_settings
    from subledger.services import build_services

    services = await build_services(get_settings())
    try:
        result = await services.sweeper.run_once(purge=not skip_purge)

        logger.info(
            f"Billing sweep finished: {result['reset']} subscribers reset, "
            f"{result['failed']} failed, {result['purged']} delivery claims purged"
        )
        return 0 if not result["failed"] else 2
    finally:
        services.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run billing sweeps once")
    parser.add_argument(
        "--skip-purge",
        action="store_true",
        help="Only reset due cycles; leave webhook delivery claims alone",
    )
    args = parser.parse_args()

    from subledger.config import get_settings
    from subledger.observability.logging import configure_logging

    settings = get_settings()
    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
        service_name=settings.logging.service_name,
        service_version=settings.logging.service_version,
        environment=settings.logging.environment,
    )

    exit_code = asyncio.run(run_job(skip_purge=args.skip_purge))
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
