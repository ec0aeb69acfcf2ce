"""
Processing pipeline for catalog-bot.

Runs product groups one at a time: rank sellers, have the operator confirm
them, settle a product code, then create one catalog entry per selected
seller (MAIN, B1, B2). Also drives bulk deletes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from .client import CatalogClient, with_retry
from .codes import CodeTracker, generate_code
from .config import BotConfig
from .coordinator import ApprovalCoordinator
from .errors import CatalogBotError, LogicError, SellerVerificationRequired, Unauthorized
from .messaging import OperatorNotifier
from .prompts import ApprovalDescriptor, SellerCandidate
from .tokens import Mode, SellerAction, SellerSubset

logger = logging.getLogger(__name__)

MAX_SELLER_ROUNDS = 5

# Sellers tried per entry when the platform demands buyer verification
MAX_SAVE_ATTEMPTS = 3

SUBSET_ROLES = {
    SellerSubset.MAIN: (0,),
    SellerSubset.B1: (1,),
    SellerSubset.B2: (2,),
    SellerSubset.MAIN_B1: (0, 1),
    SellerSubset.MAIN_B2: (0, 2),
    SellerSubset.B1_B2: (1, 2),
    SellerSubset.ALL: (0, 1, 2),
}


@dataclass
class ScoreResult:
    """Scorer output: best seller first, plus the model's explanation."""

    ranked: list[SellerCandidate]
    reasoning: str = ""


class SellerScorer(Protocol):
    """AI seller ranking. Treated as a black box."""

    async def score(
        self, descriptor: ApprovalDescriptor, candidates: list[SellerCandidate]
    ) -> ScoreResult: ...


class RowSelection(str, Enum):
    """Which of a product's catalog rows a run rewrites."""

    ALL = "all"
    UNSET = "unset"  # rows without a product code
    DISTURBANCE = "disturbance"  # rows with no working seller


@dataclass
class ProductGroup:
    """
    One product with its catalog rows and the sellers that offer it.

    candidates=None means the sellers are fetched from the API when the
    group is processed.
    """

    descriptor: ApprovalDescriptor
    rows: list[dict[str, Any]] = field(default_factory=list)
    candidates: list[SellerCandidate] | None = field(default_factory=list)


def has_valid_seller(row: dict[str, Any]) -> bool:
    """A row that already has a seller, a price and a code."""
    seller = row.get("seller") or ""
    code = (row.get("code") or "").strip()
    return bool(seller) and seller != "-" and (row.get("price") or 0) > 0 and bool(code)


def is_disturbed(row: dict[str, Any]) -> bool:
    """The row's seller is out of service, undercut by max_price, or switched off."""
    if row.get("status_sellerSku") != 1:
        return True
    max_price, price = row.get("max_price"), row.get("price")
    if max_price and price and max_price > price:
        return True
    return not row.get("status")


def select_rows(rows: list[dict[str, Any]], selection: RowSelection) -> list[dict[str, Any]]:
    if selection is RowSelection.UNSET:
        return [r for r in rows if not (r.get("code") or "").strip()]
    if selection is RowSelection.DISTURBANCE:
        return [r for r in rows if not has_valid_seller(r) or is_disturbed(r)]
    return list(rows)


def seller_candidate(item: dict[str, Any]) -> SellerCandidate | None:
    """Map a seller record from the API; None if it has no id, name or price."""
    price = item.get("price") or 0
    if not item.get("id") or not item.get("seller") or price <= 0:
        return None
    return SellerCandidate(
        seller_id=str(item["id"]),
        name=item["seller"],
        price=price,
        rating=item.get("reviewAvg") or item.get("rating") or None,
        description=item.get("deskripsi") or "",
    )


def _detail_name(row: dict[str, Any], key: str) -> str:
    details = row.get("product_details") or {}
    return (details.get(key) or {}).get("name") or ""


@dataclass
class RunStats:
    """Counters for one run."""

    total: int = 0
    success: int = 0
    skipped: int = 0
    errors: int = 0
    started: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        end = self.finished or datetime.now(UTC)
        rate = f"{self.success / self.total * 100:.1f}%" if self.total else "0%"
        return {
            "total": self.total,
            "success": self.success,
            "skipped": self.skipped,
            "errors": self.errors,
            "success_rate": rate,
            "duration": str(end - self.started).split(".")[0],
        }


def replace_sellers(
    selected: list[SellerCandidate],
    ranked: list[SellerCandidate],
    subset: SellerSubset,
) -> list[SellerCandidate]:
    """
    Swap the sellers in subset for the best ranked sellers not yet used.

    Roles with no unused replacement keep their current seller.
    """
    used = {s.seller_id for s in selected}
    pool = [c for c in ranked if c.seller_id not in used]
    result = list(selected)
    for role in SUBSET_ROLES[subset]:
        if role < len(result) and pool:
            result[role] = pool.pop(0)
    return result


class CatalogPipeline:
    """
    The main processing pipeline for catalog-bot.

    Works without a coordinator too: every decision then takes its default
    (ranked sellers kept, generated codes used as-is).
    """

    def __init__(
        self,
        config: BotConfig,
        client: CatalogClient,
        coordinator: ApprovalCoordinator | None = None,
        scorer: SellerScorer | None = None,
        notifier: OperatorNotifier | None = None,
    ):
        self.config = config
        self.client = client
        self.coordinator = coordinator
        self.scorer = scorer
        self.notifier = notifier
        self.tracker = (
            coordinator.tracker
            if coordinator is not None
            else CodeTracker(config.codes.backup1_suffix, config.codes.backup2_suffix)
        )
        self.mode = Mode(config.approval.fallback_mode)
        # (category, brand) -> seller ids already given an entry this run
        self.used_sellers: dict[tuple[str, str], set[str]] = {}

    def _approvals(self) -> bool:
        return self.coordinator is not None and self.config.approval.enabled

    def include_category(self, name: str) -> bool:
        """Apply the configured category allow/skip lists."""
        if name in self.config.pipeline.skip_categories:
            return False
        wanted = self.config.pipeline.categories
        return wanted is None or name in wanted

    async def _read(self, operation):
        return await with_retry(operation, delay=self.config.catalog.error_delay_seconds)

    async def collect_groups(self) -> list[ProductGroup]:
        """
        Build product groups from the catalog itself.

        Walks the included categories, groups each category's rows by product
        name, and keeps the rows the configured row selection asks for. Sellers
        are left for process_group to fetch.
        """
        selection = RowSelection(self.config.pipeline.row_selection)
        categories = await self._read(self.client.list_categories)
        groups = []

        for category in categories:
            name = category.get("name", "")
            if not self.include_category(name):
                logger.debug(f"Skipping category {name}")
                continue
            try:
                rows = await self._read(lambda: self.client.list_entries(category.get("id")))
            except Unauthorized:
                raise
            except CatalogBotError:
                logger.exception(f"Failed to list products in {name}")
                continue

            by_product: dict[str, list[dict[str, Any]]] = {}
            for row in rows:
                product = row.get("product") or row.get("product_name")
                if product:
                    by_product.setdefault(product, []).append(row)

            for product, product_rows in by_product.items():
                selected = select_rows(product_rows, selection)
                if not selected:
                    logger.debug(f"Nothing to do for {product} ({selection.value})")
                    continue
                first = selected[0]
                descriptor = ApprovalDescriptor(
                    category=name,
                    brand=_detail_name(first, "brand") or first.get("brand", ""),
                    type=_detail_name(first, "type"),
                    product=product,
                    sku_count=len(selected),
                )
                groups.append(ProductGroup(descriptor=descriptor, rows=selected, candidates=None))

            logger.info(f"{name}: {len(by_product)} product(s), {len(groups)} group(s) so far")

        return groups

    async def load_sellers(self, group: ProductGroup) -> list[SellerCandidate]:
        """Fetch the sellers for a group's first row, dropping unusable records."""
        items = await self._read(lambda: self.client.list_sellers(group.rows[0]["id"]))
        candidates = [c for c in map(seller_candidate, items) if c is not None]
        logger.info(
            f"{group.descriptor.product}: {len(candidates)} of {len(items)} sellers usable"
        )
        return candidates

    def _used(self, group: ProductGroup) -> set[str]:
        key = (group.descriptor.category, group.descriptor.brand)
        return self.used_sellers.setdefault(key, set())

    async def select_mode(self) -> Mode:
        """Ask the operator for the run mode, or use the fallback."""
        if self._approvals():
            self.mode = await self.coordinator.request_mode_selection()
        logger.info(f"Run mode: {self.mode.value}")
        return self.mode

    async def choose_sellers(
        self, group: ProductGroup
    ) -> tuple[list[SellerCandidate], list[SellerCandidate]]:
        """
        Rank sellers and let the operator keep or swap them.

        Sellers already used for the same category and brand this run move
        behind the others. Returns (selected, ranked).
        """
        if self.scorer is not None:
            result = await self.scorer.score(group.descriptor, group.candidates)
        else:
            result = ScoreResult(ranked=list(group.candidates))
        used = self._used(group)
        ranked = sorted(result.ranked, key=lambda c: c.seller_id in used)

        slots = min(3, group.descriptor.sku_count, len(ranked))
        selected = ranked[:slots]
        if not self._approvals():
            return selected, ranked

        for _ in range(MAX_SELLER_ROUNDS):
            decision = await self.coordinator.request_seller_confirmation(
                group.descriptor, selected, result.reasoning
            )
            if decision.action is SellerAction.CONTINUE:
                break
            replaced = replace_sellers(selected, ranked, decision.subset)
            if replaced == selected:
                logger.info("No unused sellers left to swap in, keeping selection")
                break
            selected = replaced
        return selected, ranked

    async def choose_code(self, group: ProductGroup) -> str:
        """Settle the primary product code for the group."""
        if self._approvals():
            return await self.coordinator.request_auto_code_confirmation(
                group.descriptor,
                skip_confirmation=self.mode is Mode.AUTO,
            )
        descriptor = group.descriptor
        return self.tracker.reserve(
            generate_code(descriptor.product, descriptor.brand, self.config.codes.max_length)
        )

    async def process_group(self, group: ProductGroup) -> bool:
        """
        Process one product group.

        Returns False if the group was skipped.
        """
        descriptor = group.descriptor
        logger.info(f"Processing {descriptor.category} / {descriptor.product}")

        if not group.rows:
            logger.info(f"Skipping {descriptor.product}: no rows")
            return False
        if group.candidates is None:
            group.candidates = await self.load_sellers(group)
        if not group.candidates:
            logger.info(f"Skipping {descriptor.product}: no sellers")
            return False

        sellers, ranked = await self.choose_sellers(group)
        code = await self.choose_code(group)
        codes = self.tracker.variants(code)

        in_use = {s.seller_id for s in sellers}
        rejected: set[str] = set()
        for row, seller, entry_code in zip(group.rows, sellers, codes):
            saved = await self.save_entry(row, seller, entry_code, ranked, in_use, rejected)
            in_use.add(saved.seller_id)
            self._used(group).add(saved.seller_id)

        return True

    async def save_entry(
        self,
        row: dict[str, Any],
        seller: SellerCandidate,
        code: str,
        ranked: list[SellerCandidate],
        in_use: set[str],
        rejected: set[str],
    ) -> SellerCandidate:
        """
        Create one entry and return the seller it was saved with.

        A seller the platform refuses for want of buyer verification is added
        to rejected and replaced by the best ranked seller not in use, up to
        MAX_SAVE_ATTEMPTS sellers per entry.
        """
        attempts = 1
        while True:
            entry = {
                **row,
                "code": code,
                "product_code": code,
                "seller_sku_id": seller.seller_id,
                "seller_name": seller.name,
                "price": seller.price,
            }
            try:
                await self.client.create_entry(entry)
            except SellerVerificationRequired:
                rejected.add(seller.seller_id)
                unavailable = rejected | in_use
                replacement = next((c for c in ranked if c.seller_id not in unavailable), None)
                if replacement is None or attempts >= MAX_SAVE_ATTEMPTS:
                    raise
                logger.warning(
                    f"{seller.name} requires buyer verification, retrying {code} "
                    f"with {replacement.name}"
                )
                seller = replacement
                attempts += 1
                continue

            logger.info(f"Saved {code} -> {seller.name}")
            return seller

    async def create_entries(self, groups: list[ProductGroup]) -> RunStats:
        """
        Process every group, one at a time.

        Item-level failures are counted and the run moves on; Unauthorized
        stops the run after telling the operator.
        """
        stats = RunStats()
        await self.select_mode()

        for group in groups:
            stats.total += 1
            try:
                if await self.process_group(group):
                    stats.success += 1
                else:
                    stats.skipped += 1
            except Unauthorized:
                if self.notifier is not None:
                    await self.notifier.send_unauthorized_notification()
                raise
            except LogicError:
                raise
            except (CatalogBotError, ValueError) as e:
                stats.errors += 1
                logger.exception(f"Failed to process {group.descriptor.product}")
                if self.notifier is not None:
                    await self.notifier.send_error_notification(e, group.descriptor.product)

            await asyncio.sleep(self.config.pipeline.delay_between_items_seconds)

        stats.finished = datetime.now(UTC)
        if self.notifier is not None:
            await self.notifier.send_completion_summary(stats.to_dict())
        return stats

    async def delete_all(self) -> RunStats:
        """Delete every row in every included category, batched per category."""
        stats = RunStats()
        categories = await self.client.list_categories()
        logger.info(f"Found {len(categories)} categories")

        for category in categories:
            name = category.get("name", "")
            if not self.include_category(name):
                logger.debug(f"Skipping category {name}")
                continue
            try:
                rows = await self.client.list_entries(category.get("id"))
                ids = [row["id"] for row in rows if "id" in row]
                stats.total += len(ids)
                if not ids:
                    continue
                result = await with_retry(
                    lambda: self.client.delete_entries(ids),
                    attempts=self.config.catalog.delete_retries,
                    delay=self.config.catalog.delete_retry_delay_seconds,
                )
                stats.success += result.deleted
                stats.errors += result.failed
                logger.info(f"{name}: deleted {result.deleted}/{result.requested}")
            except Unauthorized:
                if self.notifier is not None:
                    await self.notifier.send_unauthorized_notification()
                raise
            except CatalogBotError:
                logger.exception(f"Failed to delete entries in {name}")
                stats.errors += 1

            await asyncio.sleep(self.config.pipeline.delay_between_items_seconds)

        stats.finished = datetime.now(UTC)
        if self.notifier is not None:
            await self.notifier.send_completion_summary(stats.to_dict())
        return stats
