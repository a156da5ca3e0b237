"""Latest crypto news from RSS 2.0 / Atom feeds."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import List, Optional
from xml.etree import ElementTree

import httpx

from ..errors import CollaboratorError
from ..models import NewsItem
from ..settings import Settings

logger = logging.getLogger(__name__)

ATOM_NS = "{http://www.w3.org/2005/Atom}"


def clean_html(text: str) -> str:
    """Remove HTML tags and collapse whitespace."""
    if not text:
        return ""
    clean = re.sub(r"<[^>]+>", " ", text)
    return re.sub(r"\s+", " ", clean).strip()


def _sort_key(item: NewsItem) -> float:
    if not item.published:
        return 0.0
    try:
        return parsedate_to_datetime(item.published).timestamp()
    except (TypeError, ValueError):
        pass
    # Atom uses ISO 8601
    try:
        return datetime.fromisoformat(item.published.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def parse_feed(xml_text: str, source: str) -> List[NewsItem]:
    """Parse an RSS 2.0 or Atom document into news items."""
    root = ElementTree.fromstring(xml_text)
    items: List[NewsItem] = []

    channel = root.find("channel")
    if channel is not None:
        for item in channel.findall("item"):
            title = clean_html(item.findtext("title") or "")
            if not title:
                continue
            items.append(
                NewsItem(
                    title=title,
                    link=(item.findtext("link") or "").strip(),
                    source=source,
                    published=(item.findtext("pubDate") or "").strip(),
                    summary=clean_html(item.findtext("description") or "")[:300],
                )
            )
        return items

    for entry in root.findall(f"{ATOM_NS}entry"):
        title = clean_html(entry.findtext(f"{ATOM_NS}title") or "")
        if not title:
            continue
        link_el = entry.find(f"{ATOM_NS}link")
        items.append(
            NewsItem(
                title=title,
                link=link_el.get("href", "") if link_el is not None else "",
                source=source,
                published=(
                    entry.findtext(f"{ATOM_NS}published")
                    or entry.findtext(f"{ATOM_NS}updated")
                    or ""
                ).strip(),
                summary=clean_html(entry.findtext(f"{ATOM_NS}summary") or "")[:300],
            )
        )
    return items


class NewsService:
    """Fetches the configured feeds concurrently and merges the newest items."""

    name = "news"

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.news_request_timeout_seconds,
                headers={
                    "User-Agent": "starkagent/0.1",
                    "Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml",
                },
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _fetch_feed(self, url: str) -> List[NewsItem] | None:
        client = await self._get_client()
        try:
            response = await client.get(url)
            response.raise_for_status()
            items = parse_feed(response.text, source=httpx.URL(url).host)
        except httpx.HTTPError as e:
            logger.error("HTTP error fetching %s: %s", url, e)
            return None
        except ElementTree.ParseError as e:
            logger.error("XML parse error for %s: %s", url, e)
            return None
        logger.info("Fetched %d items from %s", len(items), url)
        return items

    async def get_news(self, limit: int | None = None) -> List[NewsItem]:
        """Newest items across all feeds. Raises CollaboratorError if every feed fails."""
        feeds = self._settings.news_feeds()
        if not feeds:
            raise CollaboratorError(self.name, "no news feeds configured")
        limit = limit or self._settings.news_limit

        results = await asyncio.gather(*(self._fetch_feed(url) for url in feeds))
        if all(r is None for r in results):
            raise CollaboratorError(self.name, "all news feeds failed")

        items = [item for r in results if r for item in r]
        items.sort(key=_sort_key, reverse=True)
        return items[:limit]
