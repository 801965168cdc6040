"""SQLite database operations for ShopWatcher."""

import logging
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .models import AmiamiProduct, Artist, Availability, Category, Product
from .ports import DuplicateProductError, ProductNotFoundError, Repository

DEFAULT_DB_PATH = Path.home() / ".shopwatcher" / "shopwatcher.db"

PRODUCT_SELECT = """
    SELECT p.*, c.name AS category
    FROM products p
    JOIN categories c ON c.id = p.category_id
"""

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unique(values: Iterable[str]) -> list[str]:
    """Drop repeated values, keeping first-seen order."""
    return list(dict.fromkeys(values))


class Database(Repository):
    """SQLite database interface for ShopWatcher."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize database connection.

        Args:
            db_path: Path to the SQLite database file. Defaults to ~/.shopwatcher/shopwatcher.db
        """
        self.db_path = db_path or DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS artists (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                following BOOLEAN NOT NULL DEFAULT FALSE,
                followed_since TIMESTAMP,
                added_at TIMESTAMP NOT NULL
            );

            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE
            );

            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE
            );

            CREATE TABLE IF NOT EXISTS flags (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE
            );

            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY,
                url TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                image_url TEXT NOT NULL,
                category_id INTEGER NOT NULL,
                circle TEXT,
                price TEXT,
                availability TEXT NOT NULL,
                added_at TIMESTAMP NOT NULL,
                FOREIGN KEY (category_id) REFERENCES categories(id)
            );

            CREATE TABLE IF NOT EXISTS product_artists (
                product_id INTEGER NOT NULL,
                artist_id INTEGER NOT NULL,
                PRIMARY KEY (product_id, artist_id),
                FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE CASCADE,
                FOREIGN KEY (artist_id) REFERENCES artists(id)
            );

            CREATE TABLE IF NOT EXISTS product_tags (
                product_id INTEGER NOT NULL,
                tag_id INTEGER NOT NULL,
                PRIMARY KEY (product_id, tag_id),
                FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE CASCADE,
                FOREIGN KEY (tag_id) REFERENCES tags(id)
            );

            CREATE TABLE IF NOT EXISTS product_flags (
                product_id INTEGER NOT NULL,
                flag_id INTEGER NOT NULL,
                PRIMARY KEY (product_id, flag_id),
                FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE CASCADE,
                FOREIGN KEY (flag_id) REFERENCES flags(id)
            );

            CREATE TABLE IF NOT EXISTS skip_products (
                id INTEGER PRIMARY KEY,
                url TEXT NOT NULL UNIQUE,
                added_at TIMESTAMP NOT NULL
            );

            CREATE TABLE IF NOT EXISTS skip_product_artists (
                skip_product_id INTEGER NOT NULL,
                artist_name TEXT NOT NULL,
                PRIMARY KEY (skip_product_id, artist_name),
                FOREIGN KEY (skip_product_id) REFERENCES skip_products(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS title_skip_sequences (
                id INTEGER PRIMARY KEY,
                sequence TEXT NOT NULL UNIQUE,
                added_at TIMESTAMP NOT NULL
            );

            CREATE TABLE IF NOT EXISTS amiami_categories (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                following BOOLEAN NOT NULL DEFAULT FALSE,
                followed_since TIMESTAMP,
                added_at TIMESTAMP NOT NULL
            );

            CREATE TABLE IF NOT EXISTS amiami_products (
                id INTEGER PRIMARY KEY,
                url TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                image_url TEXT NOT NULL,
                category_id INTEGER NOT NULL,
                maker TEXT NOT NULL,
                full_price INTEGER NOT NULL,
                min_price INTEGER NOT NULL,
                release_date DATE,
                availability TEXT NOT NULL,
                added_at TIMESTAMP NOT NULL,
                FOREIGN KEY (category_id) REFERENCES amiami_categories(id)
            );
        """)
        conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    # Artist operations

    def get_artist_by_name(self, name: str) -> Optional[Artist]:
        """Get an artist by name.

        Args:
            name: The artist's name as written on the storefront

        Returns:
            Artist object or None if not found
        """
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM artists WHERE name = ?", (name,)).fetchone()
        return self._row_to_artist(row) if row else None

    def list_artists(self, following_only: bool = False) -> list[Artist]:
        """List known artists.

        Args:
            following_only: If True, only return followed artists

        Returns:
            List of Artist objects ordered by name
        """
        conn = self._get_conn()
        query = "SELECT * FROM artists"
        if following_only:
            query += " WHERE following = 1"
        query += " ORDER BY name"
        rows = conn.execute(query).fetchall()
        return [self._row_to_artist(row) for row in rows]

    def list_followed(self) -> list[Artist]:
        return self.list_artists(following_only=True)

    def follow_artist(self, name: str) -> Artist:
        """Mark an artist as followed, creating it if unknown.

        Skip entries attributed to the artist are removed in the same
        transaction so that their URLs are evaluated again on the next run.

        Args:
            name: The artist's name

        Returns:
            The followed Artist
        """
        conn = self._get_conn()
        followed_since = _utcnow()
        with conn:
            cursor = conn.execute(
                "UPDATE artists SET following = 1, followed_since = ? WHERE name = ?",
                (followed_since.isoformat(), name),
            )
            if cursor.rowcount == 0:
                conn.execute(
                    """
                    INSERT INTO artists (name, following, followed_since, added_at)
                    VALUES (?, 1, ?, ?)
                    """,
                    (name, followed_since.isoformat(), followed_since.isoformat()),
                )
            deleted = self._delete_skip_urls_for(conn, name)
        if deleted:
            logger.info("Removed %d skip entries for artist '%s'", deleted, name)
        return self.get_artist_by_name(name)

    def unfollow_artist(self, artist_id: int) -> bool:
        """Stop following an artist.

        Args:
            artist_id: The artist's id

        Returns:
            True if the artist was updated, False if not found
        """
        conn = self._get_conn()
        cursor = conn.execute(
            "UPDATE artists SET following = 0, followed_since = NULL WHERE id = ?",
            (artist_id,),
        )
        conn.commit()
        return cursor.rowcount > 0

    def _get_or_create_artist_id(self, conn: sqlite3.Connection, name: str) -> int:
        row = conn.execute("SELECT id FROM artists WHERE name = ?", (name,)).fetchone()
        if row:
            return row["id"]
        cursor = conn.execute(
            "INSERT INTO artists (name, following, added_at) VALUES (?, 0, ?)",
            (name, _utcnow().isoformat()),
        )
        return cursor.lastrowid

    def _row_to_artist(self, row: sqlite3.Row) -> Artist:
        """Convert a database row to an Artist object."""
        return Artist(
            id=row["id"],
            name=row["name"],
            following=bool(row["following"]),
            followed_since=self._parse_datetime(row["followed_since"]),
            added_at=self._parse_datetime(row["added_at"]),
        )

    # Product operations

    def create_product(self, product: Product) -> Product:
        """Add a new product together with its category, tags, flags and artists.

        Unknown artist names are stored as not-followed artists. All rows are
        written in one transaction.

        Args:
            product: Product object to add (id will be ignored)

        Returns:
            Product object with assigned id and added_at

        Raises:
            DuplicateProductError: If a product with the same URL exists
        """
        existing = self.get_product_by_url(product.url)
        if existing:
            raise DuplicateProductError(existing.url, existing.title)

        conn = self._get_conn()
        added_at = product.added_at or _utcnow()
        try:
            with conn:
                category_id = self._get_or_create_id(conn, "categories", product.category)
                cursor = conn.execute(
                    """
                    INSERT INTO products
                        (url, title, image_url, category_id, circle, price, availability, added_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        product.url,
                        product.title,
                        product.image_url,
                        category_id,
                        product.circle,
                        product.price,
                        product.availability.value,
                        added_at.isoformat(),
                    ),
                )
                product_id = cursor.lastrowid
                for tag in _unique(product.tags):
                    conn.execute(
                        "INSERT INTO product_tags (product_id, tag_id) VALUES (?, ?)",
                        (product_id, self._get_or_create_id(conn, "tags", tag)),
                    )
                for flag in _unique(product.flags):
                    conn.execute(
                        "INSERT INTO product_flags (product_id, flag_id) VALUES (?, ?)",
                        (product_id, self._get_or_create_id(conn, "flags", flag)),
                    )
                for name in _unique(product.artists):
                    conn.execute(
                        "INSERT INTO product_artists (product_id, artist_id) VALUES (?, ?)",
                        (product_id, self._get_or_create_artist_id(conn, name)),
                    )
        except sqlite3.IntegrityError as e:
            # Another writer may have inserted the URL after our lookup
            existing = self.get_product_by_url(product.url)
            if existing:
                raise DuplicateProductError(existing.url, existing.title) from e
            raise

        product.id = product_id
        product.added_at = added_at
        return product

    def update_product_availability(self, url: str, availability: Availability) -> Product:
        """Update the availability of a product.

        Args:
            url: The product's URL
            availability: The new availability

        Returns:
            The updated Product

        Raises:
            ProductNotFoundError: If no product has that URL
        """
        conn = self._get_conn()
        cursor = conn.execute(
            "UPDATE products SET availability = ? WHERE url = ?",
            (availability.value, url),
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise ProductNotFoundError(url)
        return self.get_product_by_url(url)

    def get_product_by_url(self, url: str) -> Optional[Product]:
        """Get a product by URL.

        Args:
            url: The product's URL

        Returns:
            Product object or None if not found
        """
        conn = self._get_conn()
        row = conn.execute(PRODUCT_SELECT + " WHERE p.url = ?", (url,)).fetchone()
        return self._row_to_product(row) if row else None

    def list_products(
        self, artist_id: Optional[int] = None, available_only: bool = False
    ) -> list[Product]:
        """List products with optional filters.

        Args:
            artist_id: If provided, only return products attributed to this artist
            available_only: If True, only return Available or Preorder products

        Returns:
            List of Product objects, newest first
        """
        conn = self._get_conn()
        query = PRODUCT_SELECT + " WHERE 1=1"
        params: list = []

        if artist_id is not None:
            query += " AND p.id IN (SELECT product_id FROM product_artists WHERE artist_id = ?)"
            params.append(artist_id)
        if available_only:
            query += " AND p.availability IN (?, ?)"
            params.extend([Availability.AVAILABLE.value, Availability.PREORDER.value])

        query += " ORDER BY p.added_at DESC, p.id DESC"
        rows = conn.execute(query, params).fetchall()
        return [self._row_to_product(row) for row in rows]

    def list_known_products(self, followed_id: int) -> list[Product]:
        return self.list_products(artist_id=followed_id)

    def _get_or_create_id(self, conn: sqlite3.Connection, table: str, name: str) -> int:
        """Return the id of a name in a lookup table, inserting it if missing."""
        conn.execute(f"INSERT OR IGNORE INTO {table} (name) VALUES (?)", (name,))
        row = conn.execute(f"SELECT id FROM {table} WHERE name = ?", (name,)).fetchone()
        return row["id"]

    def _product_names(self, product_id: int, join_table: str, table: str, column: str) -> list[str]:
        conn = self._get_conn()
        rows = conn.execute(
            f"""
            SELECT t.name FROM {table} t
            JOIN {join_table} j ON j.{column} = t.id
            WHERE j.product_id = ?
            ORDER BY t.id
            """,
            (product_id,),
        ).fetchall()
        return [row["name"] for row in rows]

    def _row_to_product(self, row: sqlite3.Row) -> Product:
        """Convert a database row to a Product object."""
        product_id = row["id"]
        return Product(
            id=product_id,
            url=row["url"],
            title=row["title"],
            image_url=row["image_url"],
            category=row["category"],
            availability=Availability(row["availability"]),
            artists=self._product_names(product_id, "product_artists", "artists", "artist_id"),
            tags=self._product_names(product_id, "product_tags", "tags", "tag_id"),
            flags=self._product_names(product_id, "product_flags", "flags", "flag_id"),
            circle=row["circle"],
            price=row["price"],
            added_at=self._parse_datetime(row["added_at"]),
        )

    # Skip list operations

    def list_skip_urls(self) -> list[str]:
        """List URLs rejected for artist mismatch."""
        conn = self._get_conn()
        rows = conn.execute("SELECT url FROM skip_products ORDER BY id").fetchall()
        return [row["url"] for row in rows]

    def add_skip_url(self, url: str, artists: list[str]) -> None:
        """Remember a URL so it is not fetched again.

        Args:
            url: The product URL to skip
            artists: The artist names the storefront attributed to the product
        """
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR IGNORE INTO skip_products (url, added_at) VALUES (?, ?)",
                (url, _utcnow().isoformat()),
            )
            row = conn.execute("SELECT id FROM skip_products WHERE url = ?", (url,)).fetchone()
            conn.executemany(
                """
                INSERT OR IGNORE INTO skip_product_artists (skip_product_id, artist_name)
                VALUES (?, ?)
                """,
                [(row["id"], name) for name in _unique(artists)],
            )

    def delete_skip_urls_for(self, name: str) -> int:
        """Delete every skip entry associated with an artist name.

        Returns:
            Number of skip entries removed
        """
        conn = self._get_conn()
        with conn:
            return self._delete_skip_urls_for(conn, name)

    def _delete_skip_urls_for(self, conn: sqlite3.Connection, name: str) -> int:
        cursor = conn.execute(
            """
            DELETE FROM skip_products WHERE id IN (
                SELECT skip_product_id FROM skip_product_artists WHERE artist_name = ?
            )
            """,
            (name,),
        )
        return cursor.rowcount

    # Title skip sequence operations

    def list_title_skip_sequences(self) -> list[str]:
        conn = self._get_conn()
        rows = conn.execute("SELECT sequence FROM title_skip_sequences ORDER BY id").fetchall()
        return [row["sequence"] for row in rows]

    def add_title_skip_sequence(self, sequence: str) -> bool:
        """Add a title skip sequence.

        Returns:
            True if added, False if it already existed
        """
        conn = self._get_conn()
        cursor = conn.execute(
            "INSERT OR IGNORE INTO title_skip_sequences (sequence, added_at) VALUES (?, ?)",
            (sequence, _utcnow().isoformat()),
        )
        conn.commit()
        return cursor.rowcount > 0

    def remove_title_skip_sequence(self, sequence: str) -> bool:
        """Remove a title skip sequence.

        Returns:
            True if removed, False if not found
        """
        conn = self._get_conn()
        cursor = conn.execute("DELETE FROM title_skip_sequences WHERE sequence = ?", (sequence,))
        conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
        """Parse a datetime string from the database."""
        if value is None:
            return None
        try:
            return datetime.fromisoformat(value)
        except (ValueError, TypeError):
            return None


AMIAMI_PRODUCT_SELECT = """
    SELECT p.*, c.name AS category
    FROM amiami_products p
    JOIN amiami_categories c ON c.id = p.category_id
"""


class AmiamiStore(Repository):
    """Amiami categories and products, kept in the ShopWatcher database.

    The skip list and title skip sequences are shared with melonbooks.
    """

    def __init__(self, db: Database):
        self.db = db

    # Category operations

    def get_category_by_name(self, name: str) -> Optional[Category]:
        conn = self.db._get_conn()
        row = conn.execute("SELECT * FROM amiami_categories WHERE name = ?", (name,)).fetchone()
        return self._row_to_category(row) if row else None

    def list_categories(self, following_only: bool = False) -> list[Category]:
        conn = self.db._get_conn()
        query = "SELECT * FROM amiami_categories"
        if following_only:
            query += " WHERE following = 1"
        query += " ORDER BY name"
        return [self._row_to_category(row) for row in conn.execute(query).fetchall()]

    def list_followed(self) -> list[Category]:
        return self.list_categories(following_only=True)

    def follow_category(self, name: str) -> Category:
        """Mark a category as followed, creating it if unknown."""
        conn = self.db._get_conn()
        followed_since = _utcnow().isoformat()
        with conn:
            cursor = conn.execute(
                "UPDATE amiami_categories SET following = 1, followed_since = ? WHERE name = ?",
                (followed_since, name),
            )
            if cursor.rowcount == 0:
                conn.execute(
                    """
                    INSERT INTO amiami_categories (name, following, followed_since, added_at)
                    VALUES (?, 1, ?, ?)
                    """,
                    (name, followed_since, followed_since),
                )
            deleted = self.db._delete_skip_urls_for(conn, name)
        if deleted:
            logger.info("Removed %d skip entries for category '%s'", deleted, name)
        return self.get_category_by_name(name)

    def unfollow_category(self, category_id: int) -> bool:
        conn = self.db._get_conn()
        cursor = conn.execute(
            "UPDATE amiami_categories SET following = 0, followed_since = NULL WHERE id = ?",
            (category_id,),
        )
        conn.commit()
        return cursor.rowcount > 0

    def _get_or_create_category_id(self, conn: sqlite3.Connection, name: str) -> int:
        row = conn.execute("SELECT id FROM amiami_categories WHERE name = ?", (name,)).fetchone()
        if row:
            return row["id"]
        cursor = conn.execute(
            "INSERT INTO amiami_categories (name, following, added_at) VALUES (?, 0, ?)",
            (name, _utcnow().isoformat()),
        )
        return cursor.lastrowid

    def _row_to_category(self, row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            following=bool(row["following"]),
            followed_since=Database._parse_datetime(row["followed_since"]),
            added_at=Database._parse_datetime(row["added_at"]),
        )

    # Product operations

    def create_product(self, product: AmiamiProduct) -> AmiamiProduct:
        """Add a new product, creating its category if unknown.

        Raises:
            DuplicateProductError: If a product with the same URL exists
        """
        existing = self.get_product_by_url(product.url)
        if existing:
            raise DuplicateProductError(existing.url, existing.title)

        conn = self.db._get_conn()
        added_at = product.added_at or _utcnow()
        try:
            with conn:
                cursor = conn.execute(
                    """
                    INSERT INTO amiami_products
                        (url, title, image_url, category_id, maker, full_price, min_price,
                         release_date, availability, added_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        product.url,
                        product.title,
                        product.image_url,
                        self._get_or_create_category_id(conn, product.category),
                        product.maker,
                        product.full_price,
                        product.min_price,
                        product.release_date.isoformat() if product.release_date else None,
                        product.availability.value,
                        added_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            existing = self.get_product_by_url(product.url)
            if existing:
                raise DuplicateProductError(existing.url, existing.title) from e
            raise

        product.id = cursor.lastrowid
        product.added_at = added_at
        return product

    def update_product_availability(self, url: str, availability: Availability) -> AmiamiProduct:
        """Update the availability of a product.

        Raises:
            ProductNotFoundError: If no product has that URL
        """
        conn = self.db._get_conn()
        cursor = conn.execute(
            "UPDATE amiami_products SET availability = ? WHERE url = ?",
            (availability.value, url),
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise ProductNotFoundError(url)
        return self.get_product_by_url(url)

    def get_product_by_url(self, url: str) -> Optional[AmiamiProduct]:
        conn = self.db._get_conn()
        row = conn.execute(AMIAMI_PRODUCT_SELECT + " WHERE p.url = ?", (url,)).fetchone()
        return self._row_to_product(row) if row else None

    def list_products(
        self, category_id: Optional[int] = None, available_only: bool = False
    ) -> list[AmiamiProduct]:
        """List products with optional filters, newest first."""
        conn = self.db._get_conn()
        query = AMIAMI_PRODUCT_SELECT + " WHERE 1=1"
        params: list = []

        if category_id is not None:
            query += " AND p.category_id = ?"
            params.append(category_id)
        if available_only:
            query += " AND p.availability IN (?, ?)"
            params.extend([Availability.AVAILABLE.value, Availability.PREORDER.value])

        query += " ORDER BY p.added_at DESC, p.id DESC"
        return [self._row_to_product(row) for row in conn.execute(query, params).fetchall()]

    def list_known_products(self, followed_id: int) -> list[AmiamiProduct]:
        return self.list_products(category_id=followed_id)

    def _row_to_product(self, row: sqlite3.Row) -> AmiamiProduct:
        return AmiamiProduct(
            id=row["id"],
            url=row["url"],
            title=row["title"],
            image_url=row["image_url"],
            category=row["category"],
            maker=row["maker"],
            full_price=row["full_price"],
            min_price=row["min_price"],
            availability=Availability(row["availability"]),
            release_date=date.fromisoformat(row["release_date"]) if row["release_date"] else None,
            added_at=Database._parse_datetime(row["added_at"]),
        )

    # Shared with melonbooks

    def list_skip_urls(self) -> list[str]:
        return self.db.list_skip_urls()

    def add_skip_url(self, url: str, attributions: list[str]) -> None:
        self.db.add_skip_url(url, attributions)

    def delete_skip_urls_for(self, name: str) -> int:
        return self.db.delete_skip_urls_for(name)

    def list_title_skip_sequences(self) -> list[str]:
        return self.db.list_title_skip_sequences()
