"""Bedrock — Commodity Price Collector.

Fetches oil and coal benchmark prices from OilPriceAPI and keeps the latest
snapshot in memory. The snapshot is refreshed when it is older than the TTL,
either by the background loop or lazily on the next read.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from collectors.base_collector import BaseCollector

logger = logging.getLogger("bedrock.commodity")

# ── Benchmarks ─────────────────────────────────────────────────────
# (key, api_code, title, subtitle)
OIL_BENCHMARKS = [
    ("brent", "BRENT_CRUDE_USD", "Brent Crude", "North Sea • ICE"),
    ("wti", "WTI_USD", "WTI Crude", "Texas • NYMEX"),
    ("dubai", "DUBAI_CRUDE_USD", "Dubai Crude", "Dubai • OilPriceAPI"),
]

COAL_BENCHMARKS = [
    ("coal", "COAL_USD", "Coal", "API2 CIF ARA"),
]

DEFAULT_BASE_URL = "https://api.oilpriceapi.com/v1"


def _fmt(value: float) -> str:
    return f"{value:.2f}"


def _iso_timestamp(*candidates) -> str:
    """First parseable ISO timestamp among candidates, else now."""
    for raw in candidates:
        if not raw:
            continue
        try:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc).isoformat()
    return datetime.now(timezone.utc).isoformat()


class CommodityCollector(BaseCollector):
    """OilPriceAPI snapshot for a fixed set of benchmark codes."""

    def __init__(
        self,
        name: str,
        benchmarks: list[tuple[str, str, str, str]],
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        ttl: int = 3600,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(name=name, interval=ttl, timeout=15.0, client=client)
        self._benchmarks = benchmarks
        self._api_key = api_key or ""
        self._base_url = base_url.rstrip("/")
        self._ttl = timedelta(seconds=ttl)
        self._current: Optional[dict] = None
        self._previous: Optional[dict] = None
        self._updated_at: Optional[datetime] = None
        self._refresh_lock = asyncio.Lock()

    def _headers(self) -> dict:
        return {"Authorization": f"Token {self._api_key}"}

    async def fetch_quote(self, code: str) -> Optional[dict]:
        """Price with day-over-day change from the two latest daily points."""
        try:
            data = await self.fetch_json(
                f"{self._base_url}/prices/past_day",
                params={"by_code": code, "period": 2},
                headers=self._headers(),
            )
            points = data.get("data") if isinstance(data, dict) else None
            if isinstance(points, list) and len(points) >= 2:
                latest, previous = points[0], points[1]
                price = float(latest["price"])
                prev_price = float(previous["price"])
                change = price - prev_price
                change_pct = (change / prev_price) * 100 if prev_price else 0.0
                return {
                    "price": _fmt(price),
                    "change": _fmt(change),
                    "changePercent": _fmt(change_pct),
                    "lastUpdated": _iso_timestamp(latest.get("created_at")),
                    "isPositive": change >= 0,
                }
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("[%s] History fetch failed for %s: %s", self.name, code, e)

        return await self.fetch_latest(code)

    async def fetch_latest(self, code: str) -> Optional[dict]:
        """Latest price only; change fields come from the API when present."""
        try:
            data = await self.fetch_json(
                f"{self._base_url}/prices/latest",
                params={"by_code": code},
                headers=self._headers(),
            )
            point = data.get("data") if isinstance(data, dict) else None
            if not isinstance(point, dict) or point.get("price") is None:
                logger.warning("[%s] No latest price for %s", self.name, code)
                return None
            change = float(point["change"]) if point.get("change") is not None else None
            change_pct = point.get("change_percent")
            return {
                "price": _fmt(float(point["price"])),
                "change": _fmt(change) if change is not None else None,
                "changePercent": _fmt(float(change_pct)) if change_pct is not None else None,
                "lastUpdated": _iso_timestamp(point.get("created_at"), point.get("date")),
                "isPositive": change >= 0 if change is not None else None,
            }
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("[%s] Latest fetch failed for %s: %s", self.name, code, e)
            return None

    async def collect(self) -> Optional[dict]:
        results = await asyncio.gather(*(self.fetch_quote(code) for _, code, _, _ in self._benchmarks))

        quotes = {}
        for (key, _code, title, subtitle), quote in zip(self._benchmarks, results):
            if quote is not None:
                quotes[key] = {"title": title, "subtitle": subtitle, **quote}

        if not quotes:
            logger.warning("[%s] No price data received", self.name)
            return None

        self._previous = self._current or quotes
        self._current = quotes
        self._updated_at = datetime.now(timezone.utc)
        logger.info("[%s] Updated %d/%d benchmarks", self.name, len(quotes), len(self._benchmarks))
        return quotes

    def is_stale(self) -> bool:
        if self._updated_at is None:
            return True
        return datetime.now(timezone.utc) - self._updated_at >= self._ttl

    def snapshot(self) -> Optional[dict]:
        if self._current is None:
            return None
        return {
            "current": self._current,
            "previous": self._previous,
            "lastUpdated": self._updated_at.isoformat(),
        }

    async def get_current(self) -> Optional[dict]:
        """Return the snapshot, refreshing it first when older than the TTL."""
        if self.is_stale():
            async with self._refresh_lock:
                # Another caller may have refreshed while we waited
                if self.is_stale():
                    await self.collect()
        return self.snapshot()
