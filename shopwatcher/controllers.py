"""Business logic controllers for ShopWatcher."""

from datetime import datetime
from typing import Optional

from .db import AmiamiStore, Database
from .models import AmiamiProduct, Artist, Category, Product


class ArtistNotFoundError(Exception):
    """Raised when an artist is not found."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown artist '{name}'")


class ArtistAlreadyFollowedError(Exception):
    """Raised when following an artist that is already followed."""

    def __init__(self, name: str, followed_since: Optional[datetime]):
        self.name = name
        self.followed_since = followed_since
        since = followed_since.strftime("%Y-%m-%d %H:%M") if followed_since else "an unknown date"
        super().__init__(f"Artist '{name}' already followed since {since}")


class ArtistNotFollowedError(Exception):
    """Raised when unfollowing an artist that is not followed."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Artist '{name}' not followed")


class CategoryNotFoundError(Exception):
    """Raised when an amiami category is not found."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown category '{name}'")


class CategoryAlreadyFollowedError(Exception):
    """Raised when following a category that is already followed."""

    def __init__(self, name: str, followed_since: Optional[datetime]):
        self.name = name
        self.followed_since = followed_since
        since = followed_since.strftime("%Y-%m-%d %H:%M") if followed_since else "an unknown date"
        super().__init__(f"Category '{name}' already followed since {since}")


class CategoryNotFollowedError(Exception):
    """Raised when unfollowing a category that is not followed."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Category '{name}' not followed")


class InvalidTitleSkipSequenceError(Exception):
    """Raised when a title skip sequence is empty."""

    def __init__(self):
        super().__init__("Title skip sequence cannot be empty")


class TitleSkipSequenceExistsError(Exception):
    """Raised when adding a title skip sequence that already exists."""

    def __init__(self, sequence: str):
        self.sequence = sequence
        super().__init__(f"Title skip sequence '{sequence}' already exists")


class TitleSkipSequenceNotFoundError(Exception):
    """Raised when removing a title skip sequence that does not exist."""

    def __init__(self, sequence: str):
        self.sequence = sequence
        super().__init__(f"Title skip sequence '{sequence}' not found")


def follow_artist(db: Database, name: str) -> Artist:
    """Start following an artist.

    Args:
        db: Database instance
        name: Artist name as written on the storefront

    Returns:
        The followed Artist

    Raises:
        ArtistAlreadyFollowedError: If the artist is already followed
    """
    name = name.strip()
    artist = db.get_artist_by_name(name)
    if artist and artist.following:
        raise ArtistAlreadyFollowedError(name, artist.followed_since)

    return db.follow_artist(name)


def unfollow_artist(db: Database, name: str) -> Artist:
    """Stop following an artist.

    Args:
        db: Database instance
        name: Artist name

    Returns:
        The artist (before unfollowing)

    Raises:
        ArtistNotFoundError: If the artist is unknown
        ArtistNotFollowedError: If the artist is not followed
    """
    artist = get_followed_artist(db, name)
    db.unfollow_artist(artist.id)
    return artist


def get_followed_artist(db: Database, name: str) -> Artist:
    """Look up a followed artist by name.

    Raises:
        ArtistNotFoundError: If the artist is unknown
        ArtistNotFollowedError: If the artist is not followed
    """
    name = name.strip()
    artist = db.get_artist_by_name(name)
    if not artist:
        raise ArtistNotFoundError(name)
    if not artist.following:
        raise ArtistNotFollowedError(name)
    return artist


def get_artists(db: Database, show_all: bool = False) -> list[Artist]:
    """List followed artists, or every known artist if show_all is set."""
    return db.list_artists(following_only=not show_all)


def get_products(
    db: Database,
    artist_name: Optional[str] = None,
    available_only: bool = False,
) -> list[Product]:
    """Get products with optional filters.

    Args:
        db: Database instance
        artist_name: Optional artist name to filter by
        available_only: Only return Available or Preorder products

    Returns:
        List of products, newest first

    Raises:
        ArtistNotFoundError: If artist_name provided but not found
    """
    artist_id = None
    if artist_name:
        artist_name = artist_name.strip()
        artist = db.get_artist_by_name(artist_name)
        if not artist:
            raise ArtistNotFoundError(artist_name)
        artist_id = artist.id

    return db.list_products(artist_id=artist_id, available_only=available_only)


def follow_category(store: AmiamiStore, name: str) -> Category:
    """Start following an amiami category code.

    Raises:
        CategoryAlreadyFollowedError: If the category is already followed
    """
    name = name.strip()
    category = store.get_category_by_name(name)
    if category and category.following:
        raise CategoryAlreadyFollowedError(name, category.followed_since)

    return store.follow_category(name)


def unfollow_category(store: AmiamiStore, name: str) -> Category:
    category = get_followed_category(store, name)
    store.unfollow_category(category.id)
    return category


def get_followed_category(store: AmiamiStore, name: str) -> Category:
    """Look up a followed category by code.

    Raises:
        CategoryNotFoundError: If the category is unknown
        CategoryNotFollowedError: If the category is not followed
    """
    name = name.strip()
    category = store.get_category_by_name(name)
    if not category:
        raise CategoryNotFoundError(name)
    if not category.following:
        raise CategoryNotFollowedError(name)
    return category


def get_categories(store: AmiamiStore, show_all: bool = False) -> list[Category]:
    return store.list_categories(following_only=not show_all)


def get_amiami_products(
    store: AmiamiStore,
    category_name: Optional[str] = None,
    available_only: bool = False,
) -> list[AmiamiProduct]:
    """Get amiami products, optionally of one category.

    Raises:
        CategoryNotFoundError: If category_name provided but not found
    """
    category_id = None
    if category_name:
        category_name = category_name.strip()
        category = store.get_category_by_name(category_name)
        if not category:
            raise CategoryNotFoundError(category_name)
        category_id = category.id

    return store.list_products(category_id=category_id, available_only=available_only)


def get_title_skip_sequences(db: Database) -> list[str]:
    return db.list_title_skip_sequences()


def add_title_skip_sequence(db: Database, sequence: str) -> str:
    """Add a title skip sequence.

    Raises:
        InvalidTitleSkipSequenceError: If the sequence is empty
        TitleSkipSequenceExistsError: If the sequence already exists
    """
    # An empty sequence would match every title
    if not sequence.strip():
        raise InvalidTitleSkipSequenceError()

    if not db.add_title_skip_sequence(sequence):
        raise TitleSkipSequenceExistsError(sequence)
    return sequence


def remove_title_skip_sequence(db: Database, sequence: str) -> None:
    """Remove a title skip sequence.

    Raises:
        TitleSkipSequenceNotFoundError: If the sequence does not exist
    """
    if not db.remove_title_skip_sequence(sequence):
        raise TitleSkipSequenceNotFoundError(sequence)
