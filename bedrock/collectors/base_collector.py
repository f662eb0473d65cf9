"""Bedrock — Abstract Base Collector."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

logger = logging.getLogger("bedrock.collector")


class BaseCollector(ABC):
    """Base class for polled upstream data sources."""

    def __init__(
        self,
        name: str,
        interval: int = 60,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self.interval = interval
        self._timeout = timeout
        self._running = False
        self._http_client: Optional[httpx.AsyncClient] = client
        self._last_fetch: Optional[datetime] = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    @property
    def last_fetch(self) -> Optional[datetime]:
        return self._last_fetch

    async def start(self):
        """Run the collector loop, yielding each result (None on failure)."""
        self._running = True
        logger.info("[%s] Collector started (interval=%ds)", self.name, self.interval)

        while self._running:
            try:
                result = await self.collect()
                self._last_fetch = datetime.now(timezone.utc)
                yield result
            except Exception as e:
                logger.error("[%s] Collection error: %s", self.name, e)
                yield None

            await asyncio.sleep(self.interval)

    async def stop(self):
        self._running = False
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("[%s] Collector stopped", self.name)

    @abstractmethod
    async def collect(self) -> Any:
        """Fetch and return the collector's current data."""
        ...

    async def fetch_json(self, url: str, params: dict = None, headers: dict = None) -> Any:
        """Helper to fetch JSON from a URL."""
        resp = await self.http_client.get(url, params=params, headers=headers)
        resp.raise_for_status()
        return resp.json()
