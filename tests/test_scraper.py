"""Tests for melonbooks scraping."""

from unittest.mock import Mock, patch

import pytest
import requests
from bs4 import BeautifulSoup

from shopwatcher.models import Availability
from shopwatcher.scraper import (
    MelonbooksScraper,
    ParseError,
    ScrapeError,
    parse_product_details,
    parse_product_list,
)


def list_page(*hrefs: str, placeholder: bool = True) -> str:
    items = "\n".join(
        f'<li class="item"><a href="{href}"><p class="product_title">Product {i}</p></a></li>'
        for i, href in enumerate(hrefs)
    )
    if placeholder:
        items += '\n<li class="item-list__placeholder"></li>'
    return f"""<!DOCTYPE html>
<html>
<body>
  <div class="item-list">
    <ul>
      {items}
    </ul>
  </div>
</body>
</html>
"""


SAMPLE_DETAIL_PAGE = """<!DOCTYPE html>
<html>
<body>
  <div class="item-page">
    <div class="item-header">
      <h1 class="page-header"> Summer Book </h1>
      <span class="notes-analog">同人誌</span>
      <span class="notes-red">18禁</span>
      <span class="notes-red">新作</span>
      <span class="notes-red">18禁</span>
    </div>
    <div class="item-img"><img src="//melonbooks.akamaized.net/user_data/1.jpg"></div>
    <div class="item-metas-wrap">
      <div class="price"><span class="yen">¥1,100</span></div>
      <div class="state-instock">在庫あり</div>
    </div>
    <div class="item-detail">
      <div class="table-wrapper">
        <table>
          <tr><th>サークル名</th><td><a href="/circle/1">Circle A(Publisher)</a></td></tr>
          <tr><th>作家名</th><td>
            <a href="/search?name=Alice">Alice</a>
            <a href="#">Unlinked</a>
            <a href="/search?name=Bob">Bob</a>
            <a href="/search?name=Alice">Alice</a>
          </td></tr>
        </table>
      </div>
    </div>
    <div class="item-detail2">
      <div class="mt6">
        <a href="/tag/1">#original</a>
        <a href="/tag/2"># fullcolor</a>
        <a href="/tag/3">plain</a>
        <a href="/tag/1">#original</a>
      </div>
    </div>
  </div>
</body>
</html>
"""

SAMPLE_MUSIC_PAGE = """<!DOCTYPE html>
<html>
<body>
  <div class="item-page">
    <div class="item-header">
      <h1 class="page-header">Album</h1>
      <span class="notes-analog">音楽</span>
    </div>
    <div class="item-img"><img src="https://cdn.example.com/album.jpg"></div>
    <div class="item-metas-wrap">
      <div class="state-instock">好評受付中</div>
    </div>
    <div class="item-detail">
      <div class="table-wrapper">
        <table>
          <tr><th>アーティスト</th><td><a href="/search?name=Carol">Carol</a></td></tr>
        </table>
      </div>
    </div>
    <div class="item-detail2"><div class="mt6"></div></div>
  </div>
</body>
</html>
"""


def soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def response(html: str) -> Mock:
    mock_response = Mock()
    mock_response.content = html.encode()
    mock_response.status_code = 200
    mock_response.raise_for_status = Mock()
    return mock_response


class TestParseProductList:
    """Tests for parse_product_list."""

    def test_parse_urls(self):
        urls = parse_product_list(
            soup(list_page("/detail/detail.php?product_id=1", "/detail/detail.php?product_id=2")),
            "https://www.melonbooks.co.jp",
        )

        assert urls == [
            "https://www.melonbooks.co.jp/detail/detail.php?product_id=1",
            "https://www.melonbooks.co.jp/detail/detail.php?product_id=2",
        ]

    def test_empty_list(self):
        assert parse_product_list(soup(list_page()), "https://www.melonbooks.co.jp") == []

    def test_missing_list_raises(self):
        with pytest.raises(ParseError, match="product list"):
            parse_product_list(soup("<html><body></body></html>"), "https://www.melonbooks.co.jp")

    def test_item_without_link_raises(self):
        html = '<div class="item-list"><ul><li><span>no link</span></li></ul></div>'

        with pytest.raises(ParseError):
            parse_product_list(soup(html), "https://www.melonbooks.co.jp")


class TestParseProductDetails:
    """Tests for parse_product_details."""

    def test_parse_all_fields(self):
        data = parse_product_details(
            soup(SAMPLE_DETAIL_PAGE),
            "https://www.melonbooks.co.jp/detail/detail.php?product_id=1",
        )

        assert data.title == "Summer Book"
        assert data.category == "同人誌"
        assert data.flags == ["18禁", "新作"]
        assert data.tags == ["original", "fullcolor", "plain"]
        assert data.price == "¥1,100"
        assert data.circle == "Circle A"
        assert data.artists == ["Alice", "Bob"]
        assert data.availability == Availability.AVAILABLE
        assert data.image_url == "https://melonbooks.akamaized.net/user_data/1.jpg"

    def test_parse_optional_fields_missing(self):
        data = parse_product_details(
            soup(SAMPLE_MUSIC_PAGE),
            "https://www.melonbooks.co.jp/detail/detail.php?product_id=2",
        )

        assert data.artists == ["Carol"]
        assert data.circle is None
        assert data.price is None
        assert data.flags == []
        assert data.tags == []
        assert data.availability == Availability.PREORDER
        assert data.image_url == "https://cdn.example.com/album.jpg"

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("-", Availability.NOT_AVAILABLE),
            ("好評受付中", Availability.PREORDER),
            ("残りわずか", Availability.AVAILABLE),
            ("発売中", Availability.AVAILABLE),
        ],
    )
    def test_availability_text(self, text, expected):
        html = SAMPLE_DETAIL_PAGE.replace("在庫あり", text)

        data = parse_product_details(soup(html), "https://www.melonbooks.co.jp/detail/1")

        assert data.availability == expected

    def test_unknown_availability_raises(self):
        html = SAMPLE_DETAIL_PAGE.replace("在庫あり", "謎")

        with pytest.raises(ParseError, match="Unknown product availability"):
            parse_product_details(soup(html), "https://www.melonbooks.co.jp/detail/1")

    def test_missing_artist_row_raises(self):
        html = SAMPLE_MUSIC_PAGE.replace("アーティスト", "レーベル")

        with pytest.raises(ParseError, match="artist row"):
            parse_product_details(soup(html), "https://www.melonbooks.co.jp/detail/1")

    def test_missing_item_page_raises(self):
        with pytest.raises(ParseError):
            parse_product_details(soup("<html></html>"), "https://www.melonbooks.co.jp/detail/1")

    def test_parse_error_is_scrape_error(self):
        assert issubclass(ParseError, ScrapeError)


class TestListCandidateUrls:
    """Tests for MelonbooksScraper.list_candidate_urls."""

    @patch("shopwatcher.scraper.requests.get")
    def test_single_short_page(self, mock_get):
        mock_get.return_value = response(list_page("/detail/1", "/detail/2"))
        scraper = MelonbooksScraper(page_size=100)

        urls = scraper.list_candidate_urls("Alice")

        assert urls == [
            "https://www.melonbooks.co.jp/detail/1",
            "https://www.melonbooks.co.jp/detail/2",
        ]
        assert mock_get.call_count == 1
        _, kwargs = mock_get.call_args
        assert kwargs["params"] == {"name": "Alice", "text_type": "author", "pageno": 1}
        assert kwargs["cookies"] == {"AUTH_ADULT": "1"}
        assert kwargs["timeout"] == 30

    @patch("shopwatcher.scraper.requests.get")
    def test_paginates_until_short_page(self, mock_get):
        mock_get.side_effect = [
            response(list_page("/detail/1", "/detail/2")),
            response(list_page("/detail/3", "/detail/2")),
            response(list_page("/detail/4")),
        ]
        scraper = MelonbooksScraper(page_size=2)

        urls = scraper.list_candidate_urls("Alice")

        assert urls == [
            "https://www.melonbooks.co.jp/detail/1",
            "https://www.melonbooks.co.jp/detail/2",
            "https://www.melonbooks.co.jp/detail/3",
            "https://www.melonbooks.co.jp/detail/4",
        ]
        pages = [c.kwargs["params"]["pageno"] for c in mock_get.call_args_list]
        assert pages == [1, 2, 3]

    @patch("shopwatcher.scraper.requests.get")
    def test_stops_at_page_cap(self, mock_get):
        mock_get.side_effect = [
            response(list_page("/detail/1", "/detail/2")),
            response(list_page("/detail/3", "/detail/4")),
        ]
        scraper = MelonbooksScraper(page_size=2, max_pages=2)

        urls = scraper.list_candidate_urls("Alice")

        assert len(urls) == 4
        assert mock_get.call_count == 2

    @patch("shopwatcher.scraper.requests.get")
    def test_request_error_raises_scrape_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("Connection refused")
        scraper = MelonbooksScraper(retries=1)

        with pytest.raises(ScrapeError, match="Failed to fetch page"):
            scraper.list_candidate_urls("Alice")

    @patch("shopwatcher.scraper.requests.get")
    def test_http_error_raises_scrape_error(self, mock_get):
        mock_response = response("")
        mock_response.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
        mock_get.return_value = mock_response
        scraper = MelonbooksScraper(retries=1)

        with pytest.raises(ScrapeError):
            scraper.list_candidate_urls("Alice")

    @patch("time.sleep")
    @patch("shopwatcher.scraper.requests.get")
    def test_retries_transient_errors(self, mock_get, mock_sleep):
        mock_get.side_effect = [
            requests.ConnectionError("reset"),
            response(list_page("/detail/1")),
        ]
        scraper = MelonbooksScraper(retries=3)

        urls = scraper.list_candidate_urls("Alice")

        assert urls == ["https://www.melonbooks.co.jp/detail/1"]
        assert mock_get.call_count == 2


class TestFetchProduct:
    """Tests for MelonbooksScraper.fetch_product."""

    @patch("shopwatcher.scraper.requests.get")
    def test_fetch_product(self, mock_get):
        mock_get.return_value = response(SAMPLE_DETAIL_PAGE)
        scraper = MelonbooksScraper()

        data = scraper.fetch_product("https://www.melonbooks.co.jp/detail/detail.php?product_id=1")

        assert data.title == "Summer Book"
        args, _ = mock_get.call_args
        assert args[0] == "https://www.melonbooks.co.jp/detail/detail.php?product_id=1"

    @patch("shopwatcher.scraper.requests.get")
    def test_fetch_product_with_changed_layout(self, mock_get):
        mock_get.return_value = response("<html><body><p>maintenance</p></body></html>")
        scraper = MelonbooksScraper()

        with pytest.raises(ParseError):
            scraper.fetch_product("https://www.melonbooks.co.jp/detail/1")
