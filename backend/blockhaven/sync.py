"""Catalog sync command line tool.

Usage:
    python -m blockhaven.sync currencies
    python -m blockhaven.sync pairs --from-currency btc
    python -m blockhaven.sync all
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .errors import BlockhavenError
from .models import Database
from .services.catalog_sync import CatalogSynchronizer, SyncReport
from .services.config import ConfigService, ConfigValidationException
from .services.logging_service import configure_logging
from .services.provider import ProviderClient

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Refresh the local currency and pair catalogs")
    parser.add_argument(
        "catalog",
        choices=["currencies", "pairs", "all"],
        help="Which catalog to refresh ('all' runs currencies, then pairs)",
    )
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--from-currency", help="Only pairs from this ticker")
    parser.add_argument("--to-currency", help="Only pairs to this ticker")
    parser.add_argument("--from-network", help="Only pairs from this network")
    parser.add_argument("--to-network", help="Only pairs to this network")
    parser.add_argument("--flow", choices=["standard", "fixed-rate"], help="Only pairs with this flow")
    return parser


def print_report(report: Optional[SyncReport]) -> None:
    if report is None:
        return
    print(f"\n{'='*60}")
    print(f"{report.catalog.capitalize()} sync complete")
    print(f"{'='*60}")
    for key, value in report.to_dict().items():
        if key != "catalog":
            print(f"  {key}: {value}")


async def run(args: argparse.Namespace, config: ConfigService) -> int:
    """Run one sync command; returns the process exit code."""
    database = Database(config.get("database.url"), echo=bool(config.get("database.echo")))
    database.open()
    provider = ProviderClient.from_config(config)
    synchronizer = CatalogSynchronizer.from_config(config, database, provider)

    pair_filters = {
        "from_currency": args.from_currency,
        "to_currency": args.to_currency,
        "from_network": args.from_network,
        "to_network": args.to_network,
        "flow": args.flow,
    }

    try:
        await database.create_all()
        if args.catalog == "currencies":
            print_report(await synchronizer.sync_currencies())
        elif args.catalog == "pairs":
            print_report(await synchronizer.sync_pairs(**pair_filters))
        else:
            reports = await synchronizer.sync_all(**pair_filters)
            for report in reports.values():
                print_report(report)
        return 0
    except BlockhavenError as e:
        print(f"Sync failed: {e.error}: {e.message}", file=sys.stderr)
        return 1
    finally:
        await provider.close()
        await database.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = ConfigService(args.config)
    try:
        config.load_and_validate()
    except ConfigValidationException as e:
        print(f"FATAL: {e}", file=sys.stderr)
        return 2

    configure_logging(config.get("logging.level"), config.get("logging.format"))
    return asyncio.run(run(args, config))


if __name__ == "__main__":
    sys.exit(main())
