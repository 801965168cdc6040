"""Reconciliation of scraped listings against stored products.

For every followed artist or category the stored products are compared with
the URLs the storefront currently lists. Each URL ends up in exactly one
bucket:

- unchanged: listed and already stored as available
- restocked: listed and stored as unavailable
- new: listed and not stored
- went away: stored as available and no longer listed

Restock candidates are fetched again and only announced when the storefront
reports them as available. New products are fetched, filtered and created,
and products that went away are set NotAvailable. Notifications go out for
restocked and new products only.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .models import Availability
from .ports import (
    AnyProduct,
    DuplicateProductError,
    Followed,
    ListingSource,
    Notifier,
    ProductNotFoundError,
    Repository,
)

logger = logging.getLogger(__name__)

# Held for a whole run so two runs never write the same products concurrently
_run_lock = threading.Lock()


@dataclass
class Classification:
    """URLs of one followed name, partitioned by what reconciliation does with them."""

    unchanged: list[str]
    restocked: list[str]
    new: list[str]
    went_away: list[str]


@dataclass
class ReconcileResult:
    """Result of reconciling a single artist or category."""

    name: str
    site: str = ""
    total_found: int = 0
    new_products: int = 0
    restocked_products: int = 0
    deactivated_products: int = 0
    skipped_products: int = 0
    error: Optional[str] = None


class ReconcileError(Exception):
    """Raised after a run in which at least one followed name failed."""

    def __init__(self, results: list[ReconcileResult]):
        self.results = results
        self.failed = [r for r in results if r.error]
        details = "; ".join(f"{r.name}: {r.error}" for r in self.failed)
        super().__init__(f"Reconciliation failed for {len(self.failed)} followed name(s): {details}")


def classify(known: list[AnyProduct], candidates: list[str]) -> Classification:
    """Partition stored products and listed URLs.

    Args:
        known: Stored products of the artist or category
        candidates: URLs currently listed for it, skip list applied

    Returns:
        Classification whose four lists are pairwise disjoint
    """
    available = {p.url for p in known if p.availability.is_available}
    unavailable = {p.url for p in known if not p.availability.is_available}
    listed = list(dict.fromkeys(candidates))
    listed_set = set(listed)

    unchanged, restocked, new = [], [], []
    for url in listed:
        if url in available:
            unchanged.append(url)
        elif url in unavailable:
            restocked.append(url)
        else:
            new.append(url)

    went_away = [p.url for p in known if p.url in available and p.url not in listed_set]
    return Classification(unchanged=unchanged, restocked=restocked, new=new, went_away=went_away)


def matches_title_skip(title: str, sequences: list[str]) -> bool:
    return any(sequence in title for sequence in sequences)


class Reconciler:
    """Brings stored products in line with the storefront for everything followed.

    Args:
        repository: Stored snapshot for one storefront
        source: Listing source of the same storefront
        notifier: Receives new and restocked batches
        mark_went_away: Set products that are no longer listed NotAvailable.
            Only correct when the source lists everything that is for sale.
    """

    def __init__(
        self,
        repository: Repository,
        source: ListingSource,
        notifier: Notifier,
        mark_went_away: bool = True,
    ):
        self.repository = repository
        self.source = source
        self.notifier = notifier
        self.mark_went_away = mark_went_away

    def reconcile(self) -> list[ReconcileResult]:
        """Reconcile every followed artist or category.

        A failing name does not stop the others. Runs are serialized
        within the process.

        Returns:
            One ReconcileResult per followed name

        Raises:
            ReconcileError: If any name failed, after all were attempted
        """
        with _run_lock:
            followed = self.repository.list_followed()
            logger.info("Reconciling %d followed on %s", len(followed), self.source.site)

            results = []
            for entry in followed:
                result = ReconcileResult(name=entry.name, site=self.source.site)
                try:
                    self._reconcile_into(entry, result)
                except Exception as e:
                    logger.exception("Reconciliation failed for '%s'", entry.name)
                    result.error = str(e) or e.__class__.__name__
                results.append(result)

        if any(r.error for r in results):
            raise ReconcileError(results)
        return results

    def reconcile_one(self, followed: Followed) -> ReconcileResult:
        """Reconcile a single artist or category, raising on the first failure."""
        result = ReconcileResult(name=followed.name, site=self.source.site)
        with _run_lock:
            self._reconcile_into(followed, result)
        return result

    def _reconcile_into(self, followed: Followed, result: ReconcileResult) -> None:
        name = followed.name
        logger.info("Reconciling %s products for '%s'", self.source.site, name)
        known = self.repository.list_known_products(followed.id)
        skip_urls = set(self.repository.list_skip_urls())
        candidates = [
            url for url in self.source.list_candidate_urls(name)
            if url not in skip_urls
        ]
        classification = classify(known, candidates)
        sequences = self.repository.list_title_skip_sequences()
        result.total_found = len(classification.unchanged) + len(classification.restocked) + len(classification.new)

        restocked = []
        for url in classification.restocked:
            availability = self.source.fetch_product(url).availability
            stored = next(p.availability for p in known if p.url == url)
            if not availability.is_available:
                # Listed but still sold out
                if availability != stored:
                    self._update_availability(url, availability)
                continue
            product = self._update_availability(url, availability)
            result.restocked_products += 1
            if matches_title_skip(product.title, sequences):
                logger.info("Not announcing restock of '%s': title is skipped", product.title)
                continue
            restocked.append(product)
        logger.info("Found %d restocked products for '%s'", result.restocked_products, name)
        self._dispatch(self.notifier.notify_restocked, name, restocked)

        new = []
        for url in classification.new:
            data = self.source.fetch_product(url)
            if not data.belongs_to(name):
                logger.info(
                    "Skipping %s: listed for '%s' but attributed to %s",
                    url, name, data.attributions,
                )
                self.repository.add_skip_url(url, data.attributions)
                result.skipped_products += 1
                continue
            if matches_title_skip(data.title, sequences):
                logger.info("Ignoring '%s' (%s): title is skipped", data.title, url)
                continue
            try:
                product = self.repository.create_product(data.to_product(url))
            except DuplicateProductError as e:
                logger.warning("Not creating %s: %s", url, e)
                continue
            new.append(product)
        result.new_products = len(new)
        logger.info("Found %d new products for '%s'", result.new_products, name)
        self._dispatch(self.notifier.notify_new, name, new)

        if not self.mark_went_away:
            return
        for url in classification.went_away:
            self._update_availability(url, Availability.NOT_AVAILABLE)
            result.deactivated_products += 1
        if result.deactivated_products:
            logger.info(
                "Marked %d products of '%s' as not available",
                result.deactivated_products, name,
            )

    def _update_availability(self, url: str, availability: Availability) -> AnyProduct:
        try:
            return self.repository.update_product_availability(url, availability)
        except ProductNotFoundError:
            logger.error("Product %s disappeared from the database during reconciliation", url)
            raise

    def _dispatch(
        self,
        send: Callable[[str, list[AnyProduct]], None],
        name: str,
        products: list[AnyProduct],
    ) -> None:
        if not products:
            return
        try:
            send(name, products)
        except Exception:
            logger.exception("Notification for '%s' failed", name)
