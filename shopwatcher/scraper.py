"""melonbooks storefront scraping for ShopWatcher."""

import logging
import re
from typing import Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup, Tag
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .models import Availability, ProductData
from .ports import ListingSource

BASE_URL = "https://www.melonbooks.co.jp"
SEARCH_PATH = "/search/search.php"

# Without this cookie adult products are hidden from search results
ADULT_COOKIE = {"AUTH_ADULT": "1"}
USER_AGENT = "Mozilla/5.0 (compatible; ShopWatcher/1.0)"

AVAILABILITY_TEXT = {
    "-": Availability.NOT_AVAILABLE,
    "好評受付中": Availability.PREORDER,
    "残りわずか": Availability.AVAILABLE,
    "在庫あり": Availability.AVAILABLE,
    "発売中": Availability.AVAILABLE,
}

ARTIST_HEADERS = ("作家名", "アーティスト")
CIRCLE_HEADERS = ("サークル名",)

# "Circle Name(Publisher)" -> "Circle Name"
CIRCLE_SUFFIX = re.compile(r"^(.*)(\(.*\))$")

logger = logging.getLogger(__name__)


def retry_policy(retries: int) -> Retrying:
    """Retry transport errors with exponential backoff, re-raising the last one."""
    return Retrying(
        reraise=True,
        stop=stop_after_attempt(retries),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(requests.RequestException),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )


class MelonbooksScraper(ListingSource):
    """Reads search results and product pages from melonbooks."""

    site = "melonbooks"

    def __init__(
        self,
        base_url: str = BASE_URL,
        page_size: int = 100,
        max_pages: int = 20,
        timeout: int = 30,
        retries: int = 3,
    ):
        """Initialize the scraper.

        Args:
            base_url: Storefront root URL
            page_size: Number of results on a full search page
            max_pages: Upper bound on search pages read per artist
            timeout: Request timeout in seconds
            retries: Attempts per request before giving up
        """
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.max_pages = max_pages
        self.timeout = timeout
        self.retries = retries

    def list_candidate_urls(self, artist_name: str) -> list[str]:
        """Collect product URLs from every search result page of an artist.

        Pages are read until one holds fewer than page_size results or
        max_pages pages have been read.

        Args:
            artist_name: Artist name to search for

        Returns:
            Deduplicated product URLs in site order

        Raises:
            ScrapeError: If a page cannot be fetched or parsed
        """
        urls: list[str] = []
        seen_urls: set[str] = set()

        for page_no in range(1, self.max_pages + 1):
            soup = self._get_page(
                self.base_url + SEARCH_PATH,
                params={"name": artist_name, "text_type": "author", "pageno": page_no},
            )
            page_urls = parse_product_list(soup, self.base_url)
            logger.info(
                "Found %d products on page %d for artist '%s'",
                len(page_urls), page_no, artist_name,
            )

            for url in page_urls:
                if url in seen_urls:
                    continue
                seen_urls.add(url)
                urls.append(url)

            if len(page_urls) < self.page_size:
                break
        else:
            logger.warning(
                "Stopped listing artist '%s' after %d pages", artist_name, self.max_pages
            )

        logger.info("Found %d total products for artist '%s'", len(urls), artist_name)
        return urls

    def fetch_product(self, url: str) -> ProductData:
        """Fetch and parse a product detail page.

        Raises:
            ScrapeError: If the page cannot be fetched or parsed
        """
        soup = self._get_page(url)
        product = parse_product_details(soup, url)
        logger.info("Parsed product '%s' (%s)", product.title, url)
        return product

    def _get_page(self, url: str, params: Optional[dict] = None) -> BeautifulSoup:
        try:
            response = retry_policy(self.retries)(self._fetch, url, params)
        except requests.RequestException as e:
            raise ScrapeError(f"Failed to fetch page {url}: {e}") from e

        return BeautifulSoup(response.content, "html.parser")

    def _fetch(self, url: str, params: Optional[dict]) -> requests.Response:
        response = requests.get(
            url,
            params=params,
            cookies=ADULT_COOKIE,
            headers={"User-Agent": USER_AGENT},
            timeout=self.timeout,
        )
        logger.debug("GET %s returned %s", url, response.status_code)
        response.raise_for_status()
        return response


def parse_product_list(soup: BeautifulSoup, base_url: str) -> list[str]:
    """Extract absolute product URLs from a search result page.

    Raises:
        ParseError: If the result list or a product link is missing
    """
    item_list = soup.select_one(".item-list")
    if item_list is None:
        raise ParseError("Could not find product list")

    urls = []
    for item in item_list.find_all("li"):
        if "item-list__placeholder" in (item.get("class") or []):
            continue

        title = item.select_one("a > .product_title")
        if title is None:
            raise ParseError("Could not find product link in list item")

        link = title.parent
        href = (link.get("href") or "").strip()
        if not href:
            raise ParseError(f"Could not find product url in link: {link.get_text(strip=True)}")

        urls.append(urljoin(base_url + "/", href))

    return urls


def parse_product_details(soup: BeautifulSoup, page_url: str) -> ProductData:
    """Extract product fields from a detail page.

    Args:
        soup: Parsed detail page
        page_url: URL the page was fetched from, used to resolve the image URL

    Raises:
        ParseError: If a required part of the page is missing
    """
    item_page = _select_required(soup, ".item-page", "product item page")
    header = _select_required(item_page, ".item-header", "product item header")
    metas = _select_required(item_page, ".item-metas-wrap", "product item meta")
    tag_list = _select_required(item_page, ".item-detail2 > .mt6", "product tag list")

    price = metas.select_one(".price > .yen")

    return ProductData(
        title=_select_required(header, ".page-header", "product page header").get_text(strip=True),
        image_url=_parse_image_url(item_page, page_url),
        category=_select_required(header, ".notes-analog", "product category").get_text(strip=True),
        availability=_parse_availability(metas),
        artists=_parse_artists(item_page),
        tags=_unique(_strip_hash(a.get_text(strip=True)) for a in tag_list.find_all("a")),
        flags=_unique(n.get_text(strip=True) for n in header.select(".notes-red")),
        circle=_parse_circle(item_page),
        price=price.get_text(strip=True) if price else None,
    )


def _select_required(node: Tag, selector: str, what: str) -> Tag:
    found = node.select_one(selector)
    if found is None:
        raise ParseError(f"Could not find {what}")
    return found


def _find_detail_row(item_page: Tag, headers: tuple[str, ...]) -> Optional[Tag]:
    """Find the detail table row whose header cell is one of headers."""
    for row in item_page.select(".item-detail .table-wrapper tr"):
        if any(th.get_text(strip=True) in headers for th in row.find_all("th")):
            return row
    return None


def _linked_names(row: Tag) -> list[str]:
    # Unlinked names carry href="#"
    return _unique(
        a.get_text(strip=True)
        for a in row.find_all("a")
        if a.get("href", "#") != "#"
    )


def _parse_artists(item_page: Tag) -> list[str]:
    row = _find_detail_row(item_page, ARTIST_HEADERS)
    if row is None:
        raise ParseError("Could not find product artist row")
    return _linked_names(row)


def _parse_circle(item_page: Tag) -> Optional[str]:
    row = _find_detail_row(item_page, CIRCLE_HEADERS)
    if row is None:
        return None

    names = _linked_names(row)
    if not names:
        raise ParseError("Could not find product circle")

    match = CIRCLE_SUFFIX.match(names[0])
    return match.group(1).strip() if match else names[0]


def _parse_availability(metas: Tag) -> Availability:
    node = _select_required(metas, ".state-instock", "product availability")
    text = node.get_text(strip=True)
    try:
        return AVAILABILITY_TEXT[text]
    except KeyError:
        raise ParseError(f"Unknown product availability: {text}") from None


def _parse_image_url(item_page: Tag, page_url: str) -> str:
    img = item_page.select_one(".item-img img[src]")
    if img is None:
        raise ParseError("Could not find product image url")
    return urljoin(page_url, img["src"].strip())


def _strip_hash(tag: str) -> str:
    if tag.startswith("#"):
        return tag[1:].strip()
    return tag


def _unique(values) -> list[str]:
    return list(dict.fromkeys(v for v in values if v))


class ScrapeError(Exception):
    """Raised when a page cannot be fetched or scraped."""

    pass


class ParseError(ScrapeError):
    """Raised when a fetched page does not have the expected structure."""

    pass
