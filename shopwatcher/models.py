"""Data models for ShopWatcher."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional


class Availability(str, Enum):
    """Lifecycle state of a product on the storefront."""

    AVAILABLE = "Available"
    PREORDER = "Preorder"
    NOT_AVAILABLE = "NotAvailable"
    DELETED = "Deleted"

    @property
    def is_available(self) -> bool:
        return self in (Availability.AVAILABLE, Availability.PREORDER)


@dataclass
class Artist:
    """Represents a melonbooks artist, followed or merely seen on a product."""

    id: Optional[int]
    name: str
    following: bool = False
    followed_since: Optional[datetime] = None
    added_at: Optional[datetime] = None


@dataclass
class Category:
    """Represents an amiami category code such as 459."""

    id: Optional[int]
    name: str
    following: bool = False
    followed_since: Optional[datetime] = None
    added_at: Optional[datetime] = None


@dataclass
class ProductData:
    """Product fields as parsed from a melonbooks detail page."""

    title: str
    image_url: str
    category: str
    availability: Availability
    artists: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)
    circle: Optional[str] = None
    price: Optional[str] = None

    def belongs_to(self, name: str) -> bool:
        """Whether the page attributes the product to the artist."""
        return name in self.artists

    @property
    def attributions(self) -> list[str]:
        return list(self.artists)

    def to_product(self, url: str) -> "Product":
        return Product.from_data(url, self)


@dataclass
class Product:
    """Represents a tracked melonbooks product."""

    id: Optional[int]
    url: str
    title: str
    image_url: str
    category: str
    availability: Availability
    artists: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)
    circle: Optional[str] = None
    price: Optional[str] = None
    added_at: Optional[datetime] = None

    @classmethod
    def from_data(cls, url: str, data: ProductData) -> "Product":
        """Build an unsaved product from scraped data."""
        return cls(
            id=None,
            url=url,
            title=data.title,
            image_url=data.image_url,
            category=data.category,
            availability=data.availability,
            artists=list(data.artists),
            tags=list(data.tags),
            flags=list(data.flags),
            circle=data.circle,
            price=data.price,
        )


@dataclass
class AmiamiProductData:
    """Product fields as returned by the amiami item search."""

    title: str
    image_url: str
    category: str
    maker: str
    full_price: int
    min_price: int
    availability: Availability
    release_date: Optional[date] = None

    def belongs_to(self, name: str) -> bool:
        """Whether the item was listed under the category."""
        return self.category == name

    @property
    def attributions(self) -> list[str]:
        return [self.category]

    def to_product(self, url: str) -> "AmiamiProduct":
        return AmiamiProduct.from_data(url, self)


@dataclass
class AmiamiProduct:
    """Represents a tracked amiami product."""

    id: Optional[int]
    url: str
    title: str
    image_url: str
    category: str
    maker: str
    full_price: int
    min_price: int
    availability: Availability
    release_date: Optional[date] = None
    added_at: Optional[datetime] = None

    @classmethod
    def from_data(cls, url: str, data: AmiamiProductData) -> "AmiamiProduct":
        return cls(
            id=None,
            url=url,
            title=data.title,
            image_url=data.image_url,
            category=data.category,
            maker=data.maker,
            full_price=data.full_price,
            min_price=data.min_price,
            availability=data.availability,
            release_date=data.release_date,
        )
