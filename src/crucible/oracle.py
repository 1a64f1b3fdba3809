"""Token price lookup — Jupiter first, DexScreener as fallback.

Best-effort: every provider failure is swallowed and logged at debug, and a
token nobody can price comes back as None. Callers treat None and a
non-positive price the same way (see models.usable_quote).
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional, Protocol

import requests

from crucible.models import ZERO, TokenQuote

log = logging.getLogger("crucible.oracle")

JUPITER_PRICE_URL = "https://quote-api.jup.ag/v6/price"
DEXSCREENER_PAIRS_URL = "https://api.dexscreener.com/latest/dex/pairs/solana/{token_id}"


class PriceOracle(Protocol):
    def get_price(self, token_id: str) -> Optional[TokenQuote]:
        ...


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def default_symbol(token_id: str) -> str:
    return token_id[:8].upper()


class JupiterDexScreenerOracle:
    """HTTP oracle over the public Jupiter and DexScreener endpoints."""

    def __init__(self, timeout_sec: float = 6.0, session: requests.Session | None = None):
        self._timeout = timeout_sec
        self._session = session or requests.Session()

    def get_price(self, token_id: str) -> Optional[TokenQuote]:
        price = self._jupiter_price(token_id)
        if price is not None and price > ZERO:
            # Jupiter gives no metadata; DexScreener may still, but don't pay for it
            return TokenQuote(price=price, symbol=default_symbol(token_id))

        quote = self._dexscreener_quote(token_id)
        if quote is not None and quote.price > ZERO:
            return quote

        log.info("PRICE_UNAVAILABLE │ token=%s", token_id)
        return None

    def _get_json(self, url: str, **params) -> Optional[dict]:
        try:
            resp = self._session.get(url, params=params or None, timeout=self._timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            log.debug("PRICE_FETCH │ %s failed: %s", url, e)
            return None

    def _jupiter_price(self, token_id: str) -> Optional[Decimal]:
        body = self._get_json(JUPITER_PRICE_URL, ids=token_id)
        if not isinstance(body, dict):
            return None
        entry = (body.get("data") or {}).get(token_id)
        if not isinstance(entry, dict):
            return None
        return _to_decimal(entry.get("price"))

    def _dexscreener_quote(self, token_id: str) -> Optional[TokenQuote]:
        body = self._get_json(DEXSCREENER_PAIRS_URL.format(token_id=token_id))
        if not isinstance(body, dict):
            return None
        pair = body.get("pair")
        if pair is None and body.get("pairs"):
            pair = body["pairs"][0]
        if not isinstance(pair, dict):
            return None

        price = _to_decimal(pair.get("priceUsd"))
        if price is None:
            return None
        symbol = (pair.get("baseToken") or {}).get("symbol") or default_symbol(token_id)
        return TokenQuote(
            price=price,
            symbol=symbol,
            market_cap_usd=_to_decimal(pair.get("fdv")),
        )


class StaticPriceOracle:
    """Fixed price table, for dry runs and tests."""

    def __init__(self, prices: Mapping[str, Decimal] | None = None):
        self.prices: dict[str, Decimal] = dict(prices or {})

    def set_price(self, token_id: str, price: Decimal | None) -> None:
        if price is None:
            self.prices.pop(token_id, None)
        else:
            self.prices[token_id] = Decimal(str(price))

    def get_price(self, token_id: str) -> Optional[TokenQuote]:
        price = self.prices.get(token_id)
        if price is None:
            return None
        return TokenQuote(price=price, symbol=default_symbol(token_id))
