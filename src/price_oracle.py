"""
RiftSettle - Price Oracle

USD prices for the admin profit view and claim summaries. Prices are
cached with an explicit TTL in an injected cache; when the upstream
source fails, the last known price is served (stale) instead of failing
the request, and only an asset that has never been priced raises.

Usage:
    oracle = PriceOracle(HttpPriceFetcher())
    price = oracle.get_price(SOL_MINT)
    usd = oracle.usd_value(SOL_MINT, Decimal("1.5"))
"""

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import requests

from retry import CircuitOpenError, retry_with_backoff
from scaling.cache import Cache, LocalCache
from settlement_errors import PriceUnavailableError
from settlement_models import to_decimal

logger = logging.getLogger(__name__)

SOL_MINT = "So11111111111111111111111111111111111111112"

DEFAULT_PRICE_TTL = 120.0  # Fresh for two minutes
DEFAULT_STALE_TTL = 86400.0  # Stale fallback kept for a day

JUPITER_PRICE_URL = "https://lite-api.jup.ag/price/v3"
DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex/tokens"


class PriceFetcher(Protocol):
    def fetch(self, asset_id: str) -> Decimal:
        """Return the current USD price or raise."""
        ...


@dataclass
class PriceQuote:
    """A price with its age, as returned by PriceOracle.get_quote."""

    asset_id: str
    price: Decimal
    fetched_at: float
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "price": str(self.price),
            "fetched_at": self.fetched_at,
            "stale": self.stale,
        }


class HttpPriceFetcher:
    """
    Fetches USD prices from Jupiter, falling back to Dexscreener.

    PRICE_API_URL overrides the Jupiter endpoint.
    """

    def __init__(
        self,
        api_url: str | None = None,
        fallback_url: str = DEXSCREENER_TOKENS_URL,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ):
        self.api_url = api_url or os.getenv("PRICE_API_URL", JUPITER_PRICE_URL)
        self.fallback_url = fallback_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    @retry_with_backoff(max_retries=2, base_delay=0.25, max_delay=2.0, circuit_breaker_name="price_api")
    def _fetch_primary(self, asset_id: str) -> Decimal | None:
        response = self.session.get(self.api_url, params={"ids": asset_id}, timeout=self.timeout)
        if not response.ok:
            return None
        entry = response.json().get(asset_id) or {}
        if entry.get("usdPrice") is None:
            return None
        return to_decimal(entry["usdPrice"], default=None)

    def _fetch_fallback(self, asset_id: str) -> Decimal | None:
        response = self.session.get(f"{self.fallback_url}/{asset_id}", timeout=self.timeout)
        if not response.ok:
            return None
        pairs = response.json().get("pairs") or []
        if not pairs or not pairs[0].get("priceUsd"):
            return None
        return to_decimal(pairs[0]["priceUsd"], default=None)

    def fetch(self, asset_id: str) -> Decimal:
        errors = []
        for source in (self._fetch_primary, self._fetch_fallback):
            try:
                price = source(asset_id)
            except (requests.exceptions.RequestException, CircuitOpenError, ValueError) as e:
                errors.append(str(e))
                continue
            if price is not None and price > 0:
                return price

        raise PriceUnavailableError(
            f"No price source returned a price for {asset_id}"
            + (f": {'; '.join(errors)}" if errors else ""),
            asset_id=asset_id,
        )


class PriceOracle:
    """
    TTL-cached price lookups with stale fallback.

    The cache entry lives for ``stale_ttl``; freshness against ``ttl`` is
    decided here from the stored fetch time, so one entry serves both as
    the fresh value and as the fallback.
    """

    def __init__(
        self,
        fetcher: PriceFetcher,
        cache: Cache | None = None,
        ttl: float = DEFAULT_PRICE_TTL,
        stale_ttl: float = DEFAULT_STALE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.fetcher = fetcher
        self.ttl = ttl
        self.stale_ttl = max(stale_ttl, ttl)
        self._clock = clock
        self.cache = cache or LocalCache(max_size=1000, clock=clock)

    @staticmethod
    def _key(asset_id: str) -> str:
        return f"price:{asset_id}"

    def get_quote(self, asset_id: str) -> PriceQuote:
        """
        Price with freshness information.

        Raises:
            PriceUnavailableError: If the fetch fails and nothing is cached
        """
        cached = self.cache.get(self._key(asset_id))
        now = self._clock()

        if cached and now - cached["fetched_at"] < self.ttl:
            return PriceQuote(asset_id, Decimal(cached["price"]), cached["fetched_at"])

        try:
            price = self.fetcher.fetch(asset_id)
        except Exception as e:
            if cached:
                logger.warning(f"Price fetch for {asset_id} failed, serving stale price: {e}")
                return PriceQuote(
                    asset_id, Decimal(cached["price"]), cached["fetched_at"], stale=True
                )
            if isinstance(e, PriceUnavailableError):
                raise
            raise PriceUnavailableError(
                f"Price unavailable for {asset_id}", asset_id=asset_id, cause=e
            )

        self.cache.set(
            self._key(asset_id),
            {"price": str(price), "fetched_at": now},
            ttl=self.stale_ttl,
        )
        return PriceQuote(asset_id, price, now)

    def get_price(self, asset_id: str) -> Decimal:
        return self.get_quote(asset_id).price

    def usd_value(self, asset_id: str, amount: Decimal) -> Decimal:
        return (amount * self.get_price(asset_id)).quantize(Decimal("0.01"))
