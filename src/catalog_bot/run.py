"""
CLI runner for catalog-bot.

Usage:
    python -m catalog_bot.run [OPTIONS]

    # Check credentials for the catalog API and the Telegram bot
    python -m catalog_bot.run --check

    # Create entries for every product in the included categories
    python -m catalog_bot.run --create

    # Create entries for the product groups in a JSON file
    python -m catalog_bot.run --groups groups.json

    # Delete every entry in every included category
    python -m catalog_bot.run --delete-all
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .client import CatalogClient
from .config import BotConfig
from .coordinator import ApprovalCoordinator
from .errors import CatalogBotError, MessagingError, Unauthorized
from .messaging import OperatorNotifier, TelegramMessenger
from .pipeline import CatalogPipeline, ProductGroup
from .prompts import ApprovalDescriptor, SellerCandidate

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("catalog-bot")


def load_groups(path: Path) -> list[ProductGroup]:
    """Read product groups from a JSON list."""
    with open(path) as f:
        data = json.load(f)

    groups = []
    for item in data:
        groups.append(
            ProductGroup(
                descriptor=ApprovalDescriptor(
                    category=item.get("category", ""),
                    brand=item.get("brand", ""),
                    type=item.get("type", ""),
                    product=item["product"],
                    sku_count=item.get("sku_count", len(item.get("rows", [])) or 1),
                ),
                rows=item.get("rows", []),
                candidates=[
                    SellerCandidate(
                        seller_id=str(c["seller_id"]),
                        name=c.get("name", ""),
                        price=c.get("price", 0.0),
                        rating=c.get("rating"),
                        description=c.get("description", ""),
                    )
                    for c in item.get("candidates", [])
                ],
            )
        )
    return groups


def build_messenger(config: BotConfig) -> TelegramMessenger | None:
    if not config.approval.enabled:
        return None
    return TelegramMessenger(
        token=config.telegram.get_token() or "",
        chat_id=config.telegram.chat_id,
        api_base=config.telegram.api_base,
        poll_timeout_seconds=config.telegram.poll_timeout_seconds,
    )


async def check(config: BotConfig) -> bool:
    """Verify both external services answer with the configured credentials."""
    ok = True
    messenger = build_messenger(config)
    if messenger is not None:
        try:
            me = await messenger.get_me()
            logger.info(f"Telegram bot OK: @{me.get('username')}")
        except MessagingError as e:
            logger.error(f"Telegram check failed: {e}")
            ok = False

    client = CatalogClient(config.catalog)
    try:
        categories = await client.list_categories()
        logger.info(f"Catalog API OK: {len(categories)} categories")
    except CatalogBotError as e:
        logger.error(f"Catalog API check failed: {e}")
        ok = False
    return ok


async def run(config: BotConfig, groups: list[ProductGroup] | None, delete_all: bool) -> int:
    """
    Run one batch. Returns the process exit code.

    With groups=None the create run collects its groups from the catalog.
    """
    messenger = build_messenger(config)
    notifier = OperatorNotifier(messenger) if messenger is not None else None
    coordinator = None

    if messenger is not None:
        try:
            await messenger.get_me()
        except MessagingError as e:
            logger.error(f"Telegram unreachable at startup: {e}")
            return 1
        coordinator = ApprovalCoordinator(config, messenger)
        coordinator.start()

    async def on_rate_limit(target: str, retry: int, sleep_seconds: float) -> None:
        if notifier is not None and config.approval.notify_rate_limits:
            await notifier.send_rate_limit_notification(target or "/", retry, sleep_seconds)

    client = CatalogClient(config.catalog, on_rate_limit=on_rate_limit)
    pipeline = CatalogPipeline(config, client, coordinator, notifier=notifier)

    try:
        if delete_all:
            stats = await pipeline.delete_all()
        else:
            if groups is None:
                groups = await pipeline.collect_groups()
                logger.info(f"Collected {len(groups)} product group(s) from the catalog")
            stats = await pipeline.create_entries(groups)
    except Unauthorized:
        logger.error("Session expired; refresh the XSRF token and cookie, then restart")
        return 1
    finally:
        if coordinator is not None:
            await coordinator.stop()

    summary = stats.to_dict()
    logger.info(
        f"Run complete: {summary['success']} ok, {summary['skipped']} skipped, "
        f"{summary['errors']} errors ({summary['success_rate']}) in {summary['duration']}"
    )
    return 0 if stats.errors == 0 else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="catalog-bot: bulk catalog management with operator approval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Verify credentials
    python -m catalog_bot.run --check

    # Fill in codes for rows that have none, Games only
    python -m catalog_bot.run --create --rows unset --category Games

    # Create entries from a prepared file
    python -m catalog_bot.run --config catalog-bot.yaml --groups groups.json

    # Delete everything outside the skipped categories
    python -m catalog_bot.run --delete-all
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("catalog-bot.yaml"),
        help="Path to config file (default: catalog-bot.yaml)",
    )
    parser.add_argument(
        "--create",
        action="store_true",
        help="Create entries for the products listed by the catalog API",
    )
    parser.add_argument(
        "--rows",
        choices=["all", "unset", "disturbance"],
        help="Which rows to rewrite with --create (default: pipeline.row_selection)",
    )
    parser.add_argument(
        "--category",
        action="append",
        help="Only process this category (repeatable)",
    )
    parser.add_argument(
        "--groups",
        type=Path,
        help="JSON file of product groups to create",
    )
    parser.add_argument(
        "--delete-all",
        action="store_true",
        help="Delete every entry in the included categories",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check API and Telegram credentials and exit",
    )
    parser.add_argument(
        "--no-approval",
        action="store_true",
        help="Run without the Telegram operator (defaults for every decision)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = BotConfig.from_yaml(args.config)
    if args.no_approval:
        config.approval.enabled = False
    if args.rows:
        config.pipeline.row_selection = args.rows
    if args.category:
        config.pipeline.categories = args.category

    logger.info(f"Config loaded from {args.config}")
    logger.debug(f"Config: {config.to_dict()}")

    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error(f"Config: {problem}")
        return 1

    if args.check:
        return 0 if asyncio.run(check(config)) else 1

    if args.delete_all:
        return asyncio.run(run(config, None, delete_all=True))

    if args.groups:
        groups = load_groups(args.groups)
        logger.info(f"Loaded {len(groups)} product group(s) from {args.groups}")
        return asyncio.run(run(config, groups, delete_all=False))

    if args.create:
        return asyncio.run(run(config, None, delete_all=False))

    # Default: show help
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
