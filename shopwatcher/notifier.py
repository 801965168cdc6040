"""Discord webhook notifier.

Sends new and restocked product batches to a Discord channel. Products are
grouped into chunks of embeds, one webhook call per chunk, with a short pause
between chunks to stay under Discord's rate limit.
"""

import logging
import time
from typing import Callable, Optional

import requests

from .models import AmiamiProduct, Product
from .ports import AnyProduct, Notifier

logger = logging.getLogger(__name__)


class DiscordNotifier(Notifier):
    """Posts product batches to a Discord webhook.

    Args:
        label: Format string naming the artist or category in the message,
            filled in with name
        describe: Builds the embed description of one product
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        username: str = "Melonbooks-Scraper",
        avatar_url: Optional[str] = None,
        chunk_size: int = 10,
        chunk_delay: float = 1.0,
        timeout: int = 30,
        label: str = "{name}",
        describe: Optional[Callable[[AnyProduct], str]] = None,
    ):
        self.webhook_url = webhook_url
        self.username = username
        self.avatar_url = avatar_url
        self.chunk_size = max(1, chunk_size)
        self.chunk_delay = chunk_delay
        self.timeout = timeout
        self.label = label
        self.describe = describe or describe_product

    def notify_new(self, name: str, products: list[AnyProduct]) -> None:
        self._send(f"{self.label.format(name=name)}: new products available", products)

    def notify_restocked(self, name: str, products: list[AnyProduct]) -> None:
        self._send(f"{self.label.format(name=name)}: products available again", products)

    def _send(self, content: str, products: list[AnyProduct]) -> None:
        if not products:
            return
        if not self.webhook_url:
            logger.info("Discord webhook not configured, skipping '%s' (%d products)", content, len(products))
            return

        chunks = [
            products[i:i + self.chunk_size]
            for i in range(0, len(products), self.chunk_size)
        ]
        try:
            for index, chunk in enumerate(chunks):
                if index > 0:
                    time.sleep(self.chunk_delay)
                response = requests.post(
                    self.webhook_url,
                    json=self._build_payload(content, chunk),
                    timeout=self.timeout,
                )
                response.raise_for_status()
            logger.info("Sent '%s' (%d products)", content, len(products))
        except requests.RequestException as e:
            logger.error("Unable to send notification '%s': %s", content, e)

    def _build_payload(self, content: str, products: list[AnyProduct]) -> dict:
        payload = {
            "content": content,
            "username": self.username,
            "embeds": [build_embed(product, self.describe(product)) for product in products],
        }
        if self.avatar_url:
            payload["avatar_url"] = self.avatar_url
        return payload


def describe_product(product: Product) -> str:
    description = f"{product.category} [{' '.join(product.flags)}]"
    if product.price:
        description += f"\n{product.price}"
    return description


def describe_amiami_product(product: AmiamiProduct) -> str:
    released = product.release_date.strftime("%Y %B") if product.release_date else "TBA"
    return f"{released} {product.maker}\n¥{product.min_price:,}"


def build_embed(product: AnyProduct, description: str) -> dict:
    """Build the Discord embed describing one product."""
    embed = {
        "title": product.title,
        "url": product.url,
        "description": description,
    }
    if product.image_url:
        embed["thumbnail"] = {"url": product.image_url}
    return embed
