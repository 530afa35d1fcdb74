"""Deterministic marketplace lookup.

There is no live product API behind this client: every query is hashed into
a stable fake listing (price, rating, reviews, image). Listings carry no ASIN,
so cards built from them link to a marketplace search. The pipeline treats it
exactly like a live lookup, and nothing downstream relies on the prices being
real.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, quote_plus

from .cache import LookupCache
from .config import DEFAULT_AFFILIATE_TAG
from .models import MarketplaceProduct

logger = logging.getLogger("regenerator.marketplace")

FALLBACK_QUERY = "Top Rated Product"
TITLE_SUFFIXES = ("Pro", "Ultra", "Elite", "Max", "Advanced", "Series X", "Gen 5")


def string_hash(text: str) -> int:
    """32-bit ``s[0]*31^(n-1) + ... + s[n-1]`` string hash, absolute value."""
    value = 0
    for char in text:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value)


def simulate_product(query: str, tag: str, year: int) -> MarketplaceProduct:
    hashed = string_hash(query)
    price = f"${hashed % 1980 + 20}.{hashed % 99:02d}"
    rating = f"{(hashed % 15 + 35) / 10:.1f}"
    review_count = f"{hashed % 4950 + 50:,}"
    hue = format(hashed % 360, "x")
    image = f"https://placehold.co/800x800/{hue}/ffffff?text={quote(query[:15], safe='')}"
    title_base = " ".join(word[:1].upper() + word[1:] for word in query.split(" "))
    suffix = TITLE_SUFFIXES[hashed % len(TITLE_SUFFIXES)]
    return MarketplaceProduct(
        title=f"{title_base} {suffix} [{year} Upgrade] - High Performance",
        image_url=image,
        price=price,
        url=f"https://www.amazon.com/s?k={quote_plus(query)}&tag={quote_plus(tag)}",
        asin=None,
        rating=rating,
        review_count=review_count,
        features=[
            f"Verified {year} Model",
            "High Efficiency Performance",
            "Editor's Choice Award",
            "Prime One-Day Shipping",
        ],
        is_prime=hashed % 10 > 2,
    )


class MarketplaceClient:
    def __init__(
        self,
        *,
        tag: str = DEFAULT_AFFILIATE_TAG,
        cache: Optional[LookupCache[MarketplaceProduct]] = None,
        year: Optional[int] = None,
    ):
        self.tag = tag or DEFAULT_AFFILIATE_TAG
        self.cache: LookupCache[MarketplaceProduct] = cache if cache is not None else LookupCache()
        self._year = year

    def lookup(self, query: str) -> Optional[MarketplaceProduct]:
        year = self._year or datetime.now(timezone.utc).year
        cleaned = (query or "").strip()
        if len(cleaned) < 2:
            return simulate_product(FALLBACK_QUERY, self.tag, year)

        key = cleaned.lower()
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("marketplace.cache_hit query=%s", cleaned)
            return cached

        logger.info("marketplace.lookup query=%s", cleaned)
        product = simulate_product(cleaned, self.tag, year)
        self.cache.set(key, product)
        return product
