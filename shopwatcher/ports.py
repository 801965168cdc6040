"""Capability interfaces the reconciler depends on.

The reconciler is written once against these interfaces and driven by two
storefronts: melonbooks, where artists are followed, and amiami, where
category codes are followed.
"""

from abc import ABC, abstractmethod
from typing import Union

from .models import (
    AmiamiProduct,
    AmiamiProductData,
    Artist,
    Availability,
    Category,
    Product,
    ProductData,
)

Followed = Union[Artist, Category]
AnyProduct = Union[Product, AmiamiProduct]
AnyProductData = Union[ProductData, AmiamiProductData]


class DuplicateProductError(Exception):
    """Raised when creating a product whose URL is already stored."""

    def __init__(self, url: str, title: str):
        self.url = url
        self.title = title
        super().__init__(f"Product '{title}' ({url}) already exists")


class ProductNotFoundError(Exception):
    """Raised when updating a product whose URL is not stored."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Product {url} does not exist")


class Repository(ABC):
    """Interface for the persisted snapshot of followed entities and products."""

    @abstractmethod
    def list_followed(self) -> list[Followed]:
        """List the followed artists or categories, ordered by name."""
        pass

    @abstractmethod
    def list_known_products(self, followed_id: int) -> list[AnyProduct]:
        """List every product of a followed entity, in any availability."""
        pass

    @abstractmethod
    def create_product(self, product: AnyProduct) -> AnyProduct:
        """Insert a product with all its links as one unit.

        Raises:
            DuplicateProductError: If the product URL already exists
        """
        pass

    @abstractmethod
    def update_product_availability(self, url: str, availability: Availability) -> AnyProduct:
        """Set the availability of the product stored under url.

        Raises:
            ProductNotFoundError: If no product has that URL
        """
        pass

    @abstractmethod
    def list_skip_urls(self) -> list[str]:
        pass

    @abstractmethod
    def add_skip_url(self, url: str, attributions: list[str]) -> None:
        pass

    @abstractmethod
    def delete_skip_urls_for(self, name: str) -> int:
        pass

    @abstractmethod
    def list_title_skip_sequences(self) -> list[str]:
        pass


class ListingSource(ABC):
    """Interface for reading product listings from a storefront."""

    # Shown next to results and used in log lines
    site = ""

    @abstractmethod
    def list_candidate_urls(self, name: str) -> list[str]:
        """Return every product URL currently listed for an artist or category.

        URLs are deduplicated and kept in site order. Raises ScrapeError
        when the listing cannot be fetched or parsed.
        """
        pass

    @abstractmethod
    def fetch_product(self, url: str) -> AnyProductData:
        """Return the current details of one product."""
        pass


class Notifier(ABC):
    """Interface for best-effort product notifications.

    Implementations log delivery failures instead of raising them.
    """

    @abstractmethod
    def notify_new(self, name: str, products: list[AnyProduct]) -> None:
        pass

    @abstractmethod
    def notify_restocked(self, name: str, products: list[AnyProduct]) -> None:
        pass
