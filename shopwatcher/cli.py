"""CLI commands for ShopWatcher."""

import logging
import sqlite3
from pathlib import Path
from typing import Optional

import click

from .config import ConfigError, Settings, get_settings
from .controllers import (
    ArtistAlreadyFollowedError,
    ArtistNotFollowedError,
    ArtistNotFoundError,
    CategoryAlreadyFollowedError,
    CategoryNotFollowedError,
    CategoryNotFoundError,
    InvalidTitleSkipSequenceError,
    TitleSkipSequenceExistsError,
    TitleSkipSequenceNotFoundError,
    add_title_skip_sequence,
    follow_artist,
    follow_category,
    get_amiami_products,
    get_artists,
    get_categories,
    get_products,
    get_title_skip_sequences,
    remove_title_skip_sequence,
    unfollow_artist,
    unfollow_category,
)
from .db import AmiamiStore, Database
from .models import AmiamiProduct, Product
from .ports import ProductNotFoundError
from .reconciler import ReconcileError, ReconcileResult
from .scheduler import RunInProgressError, create_scheduler, run_artist, run_category, run_once
from .scraper import ScrapeError

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"))
    raise SystemExit(1)


@click.group()
@click.version_option(package_name="shopwatcher")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to YAML config file")
@click.option("--db", "db_path", type=click.Path(path_type=Path), help="Path to SQLite database")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], db_path: Optional[Path], verbose: bool):
    """ShopWatcher - Follow artists and get notified about new and restocked products."""
    try:
        settings = get_settings(config_path)
    except ConfigError as e:
        _fail(str(e))
    if db_path:
        settings.db_path = db_path
    setup_logging("DEBUG" if verbose else settings.log_level)
    ctx.obj = settings


@cli.command()
@click.argument("name")
@click.pass_obj
def follow(settings: Settings, name: str):
    """Follow an artist."""
    db = Database(settings.db_path)
    try:
        artist = follow_artist(db, name)
        click.echo(click.style(f"Following artist '{artist.name}'", fg="green"))
    except ArtistAlreadyFollowedError as e:
        _fail(str(e))
    finally:
        db.close()


@cli.command()
@click.argument("name")
@click.pass_obj
def unfollow(settings: Settings, name: str):
    """Stop following an artist."""
    db = Database(settings.db_path)
    try:
        artist = unfollow_artist(db, name)
        click.echo(click.style(f"Unfollowed artist '{artist.name}'", fg="green"))
    except (ArtistNotFoundError, ArtistNotFollowedError) as e:
        _fail(str(e))
    finally:
        db.close()


@cli.command()
@click.option("--all", "-a", "show_all", is_flag=True, help="Show every known artist, not only followed ones")
@click.pass_obj
def artists(settings: Settings, show_all: bool):
    """List followed artists."""
    db = Database(settings.db_path)
    try:
        artist_list = get_artists(db, show_all=show_all)
        if not artist_list:
            click.echo("No artists followed yet. Use 'shopwatcher follow' to add one.")
            return

        label = "Known artists" if show_all else "Followed artists"
        click.echo(click.style(f"{label} ({len(artist_list)}):", fg="cyan", bold=True))
        click.echo()

        for artist in artist_list:
            click.echo(click.style(f"  {artist.name}", fg="white", bold=True))
            if artist.followed_since:
                click.echo(f"    Following since: {artist.followed_since.strftime('%Y-%m-%d %H:%M')}")
            elif show_all:
                click.echo("    Not followed")
    finally:
        db.close()


@cli.command()
@click.option("--artist", "-a", "artist_name", help="Filter by artist name")
@click.option("--available", is_flag=True, help="Only show available and preorder products")
@click.pass_obj
def products(settings: Settings, artist_name: Optional[str], available: bool):
    """List tracked products."""
    db = Database(settings.db_path)
    try:
        product_list = get_products(db, artist_name=artist_name, available_only=available)
        if not product_list:
            click.echo("No products found.")
            return

        click.echo(click.style(f"Products ({len(product_list)}):", fg="cyan", bold=True))
        click.echo()
        for product in product_list:
            _print_product(product)
    except ArtistNotFoundError as e:
        _fail(str(e))
    finally:
        db.close()


def _print_product(product: Product):
    """Print a single product."""
    if product.availability.is_available:
        status = click.style(f"[{product.availability.value}]", fg="green")
    else:
        status = click.style(f"[{product.availability.value}]", fg="bright_black")
    id_str = click.style(f"[{product.id}]", fg="cyan")

    click.echo(f"  {id_str} {status} {product.title}")
    click.echo(f"       Artists: {', '.join(product.artists)}")
    click.echo(f"       Category: {product.category}")
    if product.price:
        click.echo(f"       Price: {product.price}")
    click.echo(f"       URL: {product.url}")
    click.echo()


@cli.command("follow-category")
@click.argument("code")
@click.pass_obj
def follow_category_cmd(settings: Settings, code: str):
    """Follow an amiami category code, such as 459."""
    db = Database(settings.db_path)
    try:
        category = follow_category(AmiamiStore(db), code)
        click.echo(click.style(f"Following category '{category.name}'", fg="green"))
    except CategoryAlreadyFollowedError as e:
        _fail(str(e))
    finally:
        db.close()


@cli.command("unfollow-category")
@click.argument("code")
@click.pass_obj
def unfollow_category_cmd(settings: Settings, code: str):
    """Stop following an amiami category."""
    db = Database(settings.db_path)
    try:
        category = unfollow_category(AmiamiStore(db), code)
        click.echo(click.style(f"Unfollowed category '{category.name}'", fg="green"))
    except (CategoryNotFoundError, CategoryNotFollowedError) as e:
        _fail(str(e))
    finally:
        db.close()


@cli.command()
@click.option("--all", "-a", "show_all", is_flag=True, help="Show every known category, not only followed ones")
@click.pass_obj
def categories(settings: Settings, show_all: bool):
    """List followed amiami categories."""
    db = Database(settings.db_path)
    try:
        category_list = get_categories(AmiamiStore(db), show_all=show_all)
        if not category_list:
            click.echo("No categories followed yet. Use 'shopwatcher follow-category' to add one.")
            return

        label = "Known categories" if show_all else "Followed categories"
        click.echo(click.style(f"{label} ({len(category_list)}):", fg="cyan", bold=True))
        for category in category_list:
            since = category.followed_since.strftime("%Y-%m-%d %H:%M") if category.followed_since else "not followed"
            click.echo(f"  {click.style(category.name, fg='white', bold=True)} ({since})")
    finally:
        db.close()


@cli.command("amiami-products")
@click.option("--category", "-c", "category_name", help="Filter by category code")
@click.option("--available", is_flag=True, help="Only show available and preorder products")
@click.pass_obj
def amiami_products(settings: Settings, category_name: Optional[str], available: bool):
    """List tracked amiami products."""
    db = Database(settings.db_path)
    try:
        product_list = get_amiami_products(AmiamiStore(db), category_name=category_name, available_only=available)
        if not product_list:
            click.echo("No products found.")
            return

        click.echo(click.style(f"Products ({len(product_list)}):", fg="cyan", bold=True))
        click.echo()
        for product in product_list:
            _print_amiami_product(product)
    except CategoryNotFoundError as e:
        _fail(str(e))
    finally:
        db.close()


def _print_amiami_product(product: AmiamiProduct):
    status_color = "green" if product.availability.is_available else "bright_black"
    status = click.style(f"[{product.availability.value}]", fg=status_color)
    id_str = click.style(f"[{product.id}]", fg="cyan")

    click.echo(f"  {id_str} {status} {product.title}")
    click.echo(f"       Maker: {product.maker}")
    click.echo(f"       Category: {product.category}")
    click.echo(f"       Price: ¥{product.min_price:,} (list ¥{product.full_price:,})")
    if product.release_date:
        click.echo(f"       Release: {product.release_date.strftime('%Y-%m')}")
    click.echo(f"       URL: {product.url}")
    click.echo()


@cli.command("skip-sequences")
@click.pass_obj
def skip_sequences(settings: Settings):
    """List title skip sequences."""
    db = Database(settings.db_path)
    try:
        sequences = get_title_skip_sequences(db)
        if not sequences:
            click.echo("No title skip sequences configured.")
            return
        for sequence in sequences:
            click.echo(f"  {sequence}")
    finally:
        db.close()


@cli.command("add-skip-sequence")
@click.argument("sequence")
@click.pass_obj
def add_skip_sequence(settings: Settings, sequence: str):
    """Skip new products whose title contains SEQUENCE."""
    db = Database(settings.db_path)
    try:
        add_title_skip_sequence(db, sequence)
        click.echo(click.style(f"Added title skip sequence '{sequence}'", fg="green"))
    except (InvalidTitleSkipSequenceError, TitleSkipSequenceExistsError) as e:
        _fail(str(e))
    finally:
        db.close()


@cli.command("remove-skip-sequence")
@click.argument("sequence")
@click.pass_obj
def remove_skip_sequence(settings: Settings, sequence: str):
    """Remove a title skip sequence."""
    db = Database(settings.db_path)
    try:
        remove_title_skip_sequence(db, sequence)
        click.echo(click.style(f"Removed title skip sequence '{sequence}'", fg="green"))
    except TitleSkipSequenceNotFoundError as e:
        _fail(str(e))
    finally:
        db.close()


@cli.command()
@click.argument("artist_name", required=False)
@click.option("--category", "-c", "category_name", help="Only reconcile this amiami category")
@click.pass_obj
def scrape(settings: Settings, artist_name: Optional[str], category_name: Optional[str]):
    """Reconcile followed artists and categories once.

    If ARTIST_NAME or --category is given, only that one is reconciled.
    """
    if artist_name and category_name:
        _fail("Give either ARTIST_NAME or --category, not both")

    failed = False
    try:
        if artist_name:
            results = [run_artist(settings, artist_name)]
        elif category_name:
            results = [run_category(settings, category_name)]
        else:
            results = run_once(settings)
    except ReconcileError as e:
        results = e.results
        failed = True
    except (
        ArtistNotFoundError,
        ArtistNotFollowedError,
        CategoryNotFoundError,
        CategoryNotFollowedError,
        ScrapeError,
        ProductNotFoundError,
        RunInProgressError,
    ) as e:
        _fail(str(e))
    except (sqlite3.Error, OSError) as e:
        _fail(f"Database unavailable: {e}")

    if not results:
        click.echo("Nothing followed yet. Use 'shopwatcher follow' or 'shopwatcher follow-category' to add one.")
        return

    for result in results:
        _print_reconcile_result(result)

    click.echo()
    total_new = sum(r.new_products for r in results)
    if total_new > 0:
        click.echo(click.style(f"Found {total_new} new product(s) total!", fg="green", bold=True))
    else:
        click.echo(click.style("No new products found.", fg="yellow"))

    if failed:
        raise SystemExit(1)


def _print_reconcile_result(result: ReconcileResult):
    """Print a single reconcile result."""
    status_color = "green" if result.new_products > 0 else "white"

    click.echo(click.style(f"  [{result.site}] {result.name}", fg="white", bold=True))

    if result.error:
        click.echo(click.style(f"    Error: {result.error}", fg="red"))
        return

    click.echo(
        f"    Found: {result.total_found} | "
        + click.style(f"New: {result.new_products}", fg=status_color)
        + f" | Restocked: {result.restocked_products}"
        + f" | Gone: {result.deactivated_products}"
        + f" | Skipped: {result.skipped_products}"
    )


@cli.command()
@click.pass_obj
def watch(settings: Settings):
    """Reconcile on the configured schedule until interrupted."""
    try:
        scheduler = create_scheduler(settings)
    except ValueError as e:
        _fail(f"Invalid schedule '{settings.schedule}': {e}")

    click.echo(click.style(f"Reconciling on schedule '{settings.schedule}' (Ctrl+C to stop)", fg="cyan"))
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        pass


if __name__ == "__main__":
    cli()
