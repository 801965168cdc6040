"""amiami item search for ShopWatcher.

amiami exposes its search as a JSON API, so a single request returns every
field of a page of products. Parsed items are remembered so that
fetch_product never needs another request.
"""

import logging
from datetime import date
from typing import Any, Optional

import requests

from .models import AmiamiProductData, Availability
from .ports import ListingSource
from .scraper import ParseError, ScrapeError, retry_policy

API_URL = "https://api.amiami.com/api/v1.0/items"
DETAIL_URL = "https://www.amiami.com/eng/detail/?gcode={gcode}"
IMAGE_BASE_URL = "https://img.amiami.com"

# The API rejects requests without this key
HEADERS = {"X-User-Key": "amiami_dev", "User-Agent": "Mozilla/5.0"}

# Only items that can still be ordered
SEARCH_FILTERS = {
    "lang": "eng",
    "age_confirm": 1,
    "s_st_list_preorder_available": 1,
    "s_st_list_backorder_available": 1,
    "s_st_list_newitem_available": 1,
    "s_st_condition_flg": 1,
}

logger = logging.getLogger(__name__)


class AmiamiScraper(ListingSource):
    """Reads the newest items of amiami categories."""

    site = "amiami"

    def __init__(
        self,
        api_url: str = API_URL,
        page_size: int = 50,
        max_pages: int = 3,
        timeout: int = 30,
        retries: int = 3,
    ):
        self.api_url = api_url
        self.page_size = page_size
        self.max_pages = max_pages
        self.timeout = timeout
        self.retries = retries
        self._listed: dict[str, AmiamiProductData] = {}

    def list_candidate_urls(self, category: str) -> list[str]:
        """Collect product URLs from the newest pages of a category.

        Raises:
            ScrapeError: If a page cannot be fetched or parsed
        """
        urls: list[str] = []

        for page_no in range(1, self.max_pages + 1):
            items = parse_item_list(self._get_json(category, page_no), category)
            logger.info("Found %d products on page %d for category '%s'", len(items), page_no, category)

            for url, data in items:
                if url not in urls:
                    urls.append(url)
                    self._listed[url] = data

            if len(items) < self.page_size:
                break

        logger.info("Found %d total products for category '%s'", len(urls), category)
        return urls

    def fetch_product(self, url: str) -> AmiamiProductData:
        """Return the item as it was last listed.

        Raises:
            ScrapeError: If the URL was not part of a listing
        """
        try:
            return self._listed[url]
        except KeyError:
            raise ScrapeError(f"Product {url} was not listed") from None

    def _get_json(self, category: str, page_no: int) -> Any:
        params = dict(SEARCH_FILTERS, pagemax=self.page_size, pagecnt=page_no, s_cate2=category)
        try:
            response = retry_policy(self.retries)(self._fetch, params)
        except requests.RequestException as e:
            raise ScrapeError(f"Failed to fetch items for category '{category}': {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"Invalid item list for category '{category}': {e}") from e

    def _fetch(self, params: dict) -> requests.Response:
        response = requests.get(self.api_url, params=params, headers=HEADERS, timeout=self.timeout)
        logger.debug("GET %s returned %s", self.api_url, response.status_code)
        response.raise_for_status()
        return response


def parse_item_list(payload: Any, category: str) -> list[tuple[str, AmiamiProductData]]:
    """Turn an item search response into (url, data) pairs.

    Raises:
        ParseError: If the item list or a required field is missing
    """
    items = payload.get("items") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise ParseError("Could not find product list")
    return [parse_item(item, category) for item in items]


def parse_item(item: dict, category: str) -> tuple[str, AmiamiProductData]:
    gcode = item.get("gcode")
    if not isinstance(gcode, str):
        raise ParseError("Could not find product gcode")

    data = AmiamiProductData(
        title=_required(item, "gname", str, gcode),
        image_url=IMAGE_BASE_URL + _required(item, "thumb_url", str, gcode),
        category=category,
        maker=_required(item, "maker_name", str, gcode),
        full_price=_required(item, "c_price_taxed", int, gcode),
        min_price=_required(item, "min_price", int, gcode),
        availability=_parse_availability(item, gcode),
        release_date=_parse_release_date(item.get("releasedate")),
    )
    return DETAIL_URL.format(gcode=gcode), data


def _required(item: dict, key: str, kind: type, gcode: str):
    value = item.get(key)
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ParseError(f"Could not find product {key} for gcode {gcode}")
    return value


def _parse_availability(item: dict, gcode: str) -> Availability:
    in_stock = _required(item, "instock_flg", int, gcode)
    preorder = _required(item, "preorderitem", int, gcode)
    if in_stock == 1:
        return Availability.AVAILABLE
    if preorder == 1:
        return Availability.PREORDER
    return Availability.NOT_AVAILABLE


def _parse_release_date(value: Optional[str]) -> Optional[date]:
    # "2025-03-31 00:00:00", sometimes missing for undated preorders
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None
