"""Bedrock — RSS News Collector."""

import asyncio
import html
import logging
import re
import xml.etree.ElementTree as ET
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx

from backend.exceptions import InvalidRequest, MalformedResponse, NetworkError, UpstreamStatusError
from collectors.base_collector import BaseCollector

logger = logging.getLogger("bedrock.news")

MEDIA_NS = "{http://search.yahoo.com/mrss/}"
_TAG_RE = re.compile(r"<[^>]+>")


def _iso_date(pub_date: str) -> Optional[str]:
    try:
        parsed = parsedate_to_datetime(pub_date)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _snippet(text: str) -> str:
    return html.unescape(_TAG_RE.sub("", text)).strip()


def parse_feed(xml_text: str) -> list[dict]:
    """Parse an RSS 2.0 document into item dicts."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise MalformedResponse(f"Feed is not valid XML: {e}") from e

    items = []
    for item in root.findall(".//item"):
        pub_date = item.findtext("pubDate") or ""
        description = item.findtext("description") or ""

        image = None
        enclosure = item.find("enclosure")
        if enclosure is not None and enclosure.get("url"):
            image = enclosure.get("url")
        if image is None:
            media = item.find(f"{MEDIA_NS}content")
            if media is not None and media.get("url"):
                image = media.get("url")

        items.append({
            "title": (item.findtext("title") or "").strip(),
            "link": (item.findtext("link") or "").strip(),
            "guid": item.findtext("guid"),
            "pubDate": pub_date or None,
            "isoDate": _iso_date(pub_date) if pub_date else None,
            "contentSnippet": _snippet(description),
            "image": image,
        })
    return items


class NewsCollector(BaseCollector):
    """Fetches the configured RSS feeds on demand."""

    def __init__(self, feeds: dict[str, str], client: Optional[httpx.AsyncClient] = None):
        super().__init__(name="news", interval=900, timeout=20.0, client=client)
        self.feeds = dict(feeds)

    async def fetch_feed(self, feed_key: str) -> list[dict]:
        url = self.feeds.get(feed_key)
        if not url:
            raise InvalidRequest("Invalid feed parameter", details={"available": sorted(self.feeds)})

        try:
            resp = await self.http_client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to fetch feed {feed_key}: {e}") from e
        if not resp.is_success:
            raise UpstreamStatusError(
                f"Feed {feed_key} returned {resp.status_code}",
                upstream_status=resp.status_code,
            )

        items = parse_feed(resp.text)
        logger.info("[news] Feed %s parsed (%d items)", feed_key, len(items))
        return items

    async def collect(self) -> dict[str, list[dict]]:
        """All feeds; a failing feed yields an empty list."""
        keys = list(self.feeds)
        results = await asyncio.gather(*(self.fetch_feed(k) for k in keys), return_exceptions=True)
        feeds = {}
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                logger.error("[news] Failed to fetch feed %s: %s", key, result)
                feeds[key] = []
            else:
                feeds[key] = result
        return feeds
