"""Tests for scheduled reconciliation."""

import logging
from unittest.mock import patch

import pytest
import requests
from apscheduler.triggers.cron import CronTrigger
from filelock import FileLock

from shopwatcher.amiami import AmiamiScraper
from shopwatcher.config import Settings
from shopwatcher.controllers import ArtistNotFollowedError
from shopwatcher.db import AmiamiStore, Database
from shopwatcher.notifier import DiscordNotifier, describe_amiami_product
from shopwatcher.reconciler import ReconcileError, ReconcileResult
from shopwatcher.scheduler import (
    RunInProgressError,
    build_amiami_reconciler,
    build_reconciler,
    build_reconcilers,
    create_scheduler,
    run_artist,
    run_once,
    scheduled_run,
)
from shopwatcher.scraper import MelonbooksScraper, ScrapeError


@pytest.fixture
def settings(tmp_path) -> Settings:
    settings = Settings(db_path=tmp_path / "test.db")
    settings.scraper.max_pages = 3
    settings.discord.webhook_url = "https://discord.com/api/webhooks/1/abc"
    settings.discord.chunk_size = 5
    return settings


class TestBuildReconciler:
    def test_wires_settings(self, settings: Settings):
        db = Database(settings.db_path)
        try:
            reconciler = build_reconciler(db, settings)
        finally:
            db.close()

        assert reconciler.repository is db
        assert isinstance(reconciler.source, MelonbooksScraper)
        assert reconciler.source.max_pages == 3
        assert isinstance(reconciler.notifier, DiscordNotifier)
        assert reconciler.notifier.webhook_url == "https://discord.com/api/webhooks/1/abc"
        assert reconciler.notifier.chunk_size == 5
        assert reconciler.mark_went_away is True

    def test_wires_amiami(self, settings: Settings):
        settings.amiami.max_pages = 2
        db = Database(settings.db_path)
        try:
            reconciler = build_amiami_reconciler(db, settings)
        finally:
            db.close()

        assert isinstance(reconciler.repository, AmiamiStore)
        assert isinstance(reconciler.source, AmiamiScraper)
        assert reconciler.source.max_pages == 2
        assert reconciler.notifier.label == "Category {name}"
        assert reconciler.notifier.describe is describe_amiami_product
        assert reconciler.notifier.username == "Amiami-Scraper"
        assert reconciler.mark_went_away is False

    def test_amiami_can_be_disabled(self, settings: Settings):
        settings.amiami.enabled = False
        db = Database(settings.db_path)
        try:
            reconcilers = build_reconcilers(db, settings)
        finally:
            db.close()

        assert [r.source.site for r in reconcilers] == ["melonbooks"]


class TestRunOnce:
    def test_no_followed_artists(self, settings: Settings):
        assert run_once(settings) == []
        assert settings.db_path.exists()

    @patch("shopwatcher.scraper.requests.get")
    def test_closes_database_on_failure(self, mock_get, settings: Settings):
        db = Database(settings.db_path)
        db.follow_artist("Alice")
        db.close()
        settings.scraper.retries = 1
        mock_get.side_effect = requests.ConnectionError("unreachable")

        with patch("shopwatcher.scheduler.Database.close", autospec=True) as mock_close:
            with pytest.raises(ReconcileError):
                run_once(settings)

        mock_close.assert_called_once()

    def test_refuses_while_another_run_holds_the_lock(self, settings: Settings):
        held = FileLock(f"{settings.db_path}.lock")
        with held:
            with pytest.raises(RunInProgressError) as exc_info:
                run_once(settings)

        assert exc_info.value.lock_path.endswith("test.db.lock")

    def test_releases_lock_after_run(self, settings: Settings):
        run_once(settings)

        lock = FileLock(f"{settings.db_path}.lock", timeout=0)
        lock.acquire()
        lock.release()

    @patch("shopwatcher.amiami.requests.get")
    def test_amiami_failure_is_reported(self, mock_get, settings: Settings):
        db = Database(settings.db_path)
        AmiamiStore(db).follow_category("459")
        db.close()
        settings.amiami.retries = 1
        mock_get.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(ReconcileError) as exc_info:
            run_once(settings)

        [result] = exc_info.value.results
        assert result.site == "amiami"
        assert result.name == "459"
        assert "unreachable" in result.error


class TestRunArtist:
    def test_unfollowed_artist_is_refused(self, settings: Settings):
        db = Database(settings.db_path)
        db.follow_artist("Alice")
        db.unfollow_artist(db.get_artist_by_name("Alice").id)
        db.close()

        with pytest.raises(ArtistNotFollowedError):
            run_artist(settings, " Alice ")

    @patch("shopwatcher.scraper.requests.get")
    def test_failure_is_raised_directly(self, mock_get, settings: Settings):
        db = Database(settings.db_path)
        db.follow_artist("Alice")
        db.close()
        settings.scraper.retries = 1
        mock_get.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(ScrapeError):
            run_artist(settings, "Alice")


class TestScheduledRun:
    @patch("shopwatcher.scheduler.run_once")
    def test_logs_summary(self, mock_run_once, settings: Settings, caplog):
        mock_run_once.return_value = [
            ReconcileResult(name="Alice", site="melonbooks", new_products=2, restocked_products=1),
            ReconcileResult(name="459", site="amiami", new_products=1),
        ]

        with caplog.at_level(logging.INFO, logger="shopwatcher.scheduler"):
            scheduled_run(settings)

        assert "Reconciled 2 followed name(s): 3 new, 1 restocked" in caplog.text

    @patch("shopwatcher.scheduler.run_once")
    def test_logs_failures_without_raising(self, mock_run_once, settings: Settings, caplog):
        mock_run_once.side_effect = ReconcileError(
            [ReconcileResult(name="Alice", error="Failed to fetch page")]
        )

        scheduled_run(settings)

        assert "Alice: Failed to fetch page" in caplog.text

    @patch("shopwatcher.scheduler.run_once")
    def test_logs_run_in_progress(self, mock_run_once, settings: Settings, caplog):
        mock_run_once.side_effect = RunInProgressError("/tmp/test.db.lock")

        scheduled_run(settings)

        assert "Skipping scheduled run: Another run holds /tmp/test.db.lock" in caplog.text


class TestCreateScheduler:
    def test_single_cron_job(self, settings: Settings):
        settings.schedule = "*/15 * * * *"

        scheduler = create_scheduler(settings)

        jobs = scheduler.get_jobs()
        assert len(jobs) == 1
        job = jobs[0]
        assert job.id == "reconcile"
        assert job.max_instances == 1
        assert job.coalesce is True
        assert isinstance(job.trigger, CronTrigger)
        assert job.args == (settings,)

    def test_invalid_schedule(self, settings: Settings):
        settings.schedule = "hourly"

        with pytest.raises(ValueError):
            create_scheduler(settings)
