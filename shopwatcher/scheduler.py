"""Scheduled reconciliation runs."""

import logging
from contextlib import contextmanager
from typing import Iterator

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from filelock import FileLock, Timeout

from .amiami import AmiamiScraper
from .config import Settings
from .controllers import get_followed_artist, get_followed_category
from .db import AmiamiStore, Database
from .notifier import DiscordNotifier, describe_amiami_product
from .reconciler import ReconcileError, ReconcileResult, Reconciler
from .scraper import MelonbooksScraper

logger = logging.getLogger(__name__)


class RunInProgressError(Exception):
    """Raised when another process holds the run lock of the database."""

    def __init__(self, lock_path: str):
        self.lock_path = lock_path
        super().__init__(f"Another run holds {lock_path}")


def _build_notifier(settings: Settings, **kwargs) -> DiscordNotifier:
    options = dict(
        webhook_url=settings.discord.webhook_url,
        username=settings.discord.username,
        avatar_url=settings.discord.avatar_url,
        chunk_size=settings.discord.chunk_size,
        chunk_delay=settings.discord.chunk_delay,
        timeout=settings.discord.timeout,
    )
    options.update(kwargs)
    return DiscordNotifier(**options)


def build_reconciler(db: Database, settings: Settings) -> Reconciler:
    """Wire the melonbooks reconciler to the configured scraper and notifier."""
    scraper = MelonbooksScraper(
        base_url=settings.scraper.base_url,
        page_size=settings.scraper.page_size,
        max_pages=settings.scraper.max_pages,
        timeout=settings.scraper.timeout,
        retries=settings.scraper.retries,
    )
    return Reconciler(db, scraper, _build_notifier(settings))


def build_amiami_reconciler(db: Database, settings: Settings) -> Reconciler:
    """Wire the amiami reconciler.

    Only the newest pages of a category are listed, so products that drop
    out of the listing are left as they are.
    """
    scraper = AmiamiScraper(
        api_url=settings.amiami.api_url,
        page_size=settings.amiami.page_size,
        max_pages=settings.amiami.max_pages,
        timeout=settings.amiami.timeout,
        retries=settings.amiami.retries,
    )
    notifier = _build_notifier(
        settings,
        username=settings.amiami.username,
        label="Category {name}",
        describe=describe_amiami_product,
    )
    return Reconciler(AmiamiStore(db), scraper, notifier, mark_went_away=False)


def build_reconcilers(db: Database, settings: Settings) -> list[Reconciler]:
    reconcilers = [build_reconciler(db, settings)]
    if settings.amiami.enabled:
        reconcilers.append(build_amiami_reconciler(db, settings))
    return reconcilers


def run_lock(settings: Settings) -> FileLock:
    """Lock file beside the database, shared by every process using it."""
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    return FileLock(f"{settings.db_path}.lock", timeout=settings.lock_timeout)


@contextmanager
def locked_database(settings: Settings) -> Iterator[Database]:
    """Hold the run lock and a fresh database connection.

    Raises:
        RunInProgressError: If another process is running against the same database
    """
    lock = run_lock(settings)
    try:
        lock.acquire()
    except Timeout as e:
        raise RunInProgressError(lock.lock_file) from e

    try:
        db = Database(settings.db_path)
        try:
            yield db
        finally:
            db.close()
    finally:
        lock.release()


def run_once(settings: Settings) -> list[ReconcileResult]:
    """Run one reconciliation of every storefront.

    Raises:
        RunInProgressError: If another process is running against the same database
        ReconcileError: If any artist or category failed, after all were attempted
    """
    results = []
    with locked_database(settings) as db:
        for reconciler in build_reconcilers(db, settings):
            try:
                results.extend(reconciler.reconcile())
            except ReconcileError as e:
                results.extend(e.results)

    if any(r.error for r in results):
        raise ReconcileError(results)
    return results


def run_artist(settings: Settings, name: str) -> ReconcileResult:
    """Reconcile one followed melonbooks artist, raising on the first failure."""
    with locked_database(settings) as db:
        artist = get_followed_artist(db, name)
        return build_reconciler(db, settings).reconcile_one(artist)


def run_category(settings: Settings, name: str) -> ReconcileResult:
    """Reconcile one followed amiami category, raising on the first failure."""
    with locked_database(settings) as db:
        category = get_followed_category(AmiamiStore(db), name)
        return build_amiami_reconciler(db, settings).reconcile_one(category)


def scheduled_run(settings: Settings) -> None:
    """Job body: run once and log the outcome instead of raising."""
    try:
        results = run_once(settings)
    except RunInProgressError as e:
        logger.error("Skipping scheduled run: %s", e)
        return
    except ReconcileError as e:
        logger.error("%s", e)
        return

    total_new = sum(r.new_products for r in results)
    total_restocked = sum(r.restocked_products for r in results)
    logger.info(
        "Reconciled %d followed name(s): %d new, %d restocked",
        len(results), total_new, total_restocked,
    )


def create_scheduler(settings: Settings) -> BlockingScheduler:
    """Create a scheduler that reconciles on the configured crontab.

    Raises:
        ValueError: If the schedule is not a valid crontab expression
    """
    scheduler = BlockingScheduler()
    scheduler.add_job(
        scheduled_run,
        CronTrigger.from_crontab(settings.schedule),
        args=[settings],
        id="reconcile",
        max_instances=1,
        coalesce=True,
    )
    return scheduler
