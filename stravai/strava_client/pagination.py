"""Bounded crawl over the athlete activity list."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import requests

from ..config import CRAWL_MAX_PAGES, CRAWL_PAGE_SIZE
from ..errors import CrawlError, StravaAPIError
from ..models import SyncCursor

LOGGER = logging.getLogger(__name__)


class ActivityLister(Protocol):
    def list_activities(
        self, *, page: int = 1, per_page: int = 200, after: Optional[int] = None
    ) -> List[Dict[str, Any]]: ...


class Crawler:
    """Accumulate activities since a timestamp, page by page.

    The crawl stops at the first short page or once ``max_pages`` pages have
    been read. There is no retry here beyond the client's own; a failed page
    discards everything collected so far and raises :class:`CrawlError`.
    """

    def __init__(
        self,
        client: ActivityLister,
        *,
        page_size: int = CRAWL_PAGE_SIZE,
        max_pages: int = CRAWL_MAX_PAGES,
    ) -> None:
        self._client = client
        self.page_size = page_size
        self.max_pages = max_pages

    def collect(
        self, since: datetime, max_pages: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        cursor = SyncCursor(
            since=since,
            max_pages=self.max_pages if max_pages is None else max_pages,
        )
        collected: List[Dict[str, Any]] = []
        while not cursor.exhausted:
            try:
                batch = self._client.list_activities(
                    page=cursor.page,
                    per_page=self.page_size,
                    after=cursor.after_timestamp,
                )
            except (StravaAPIError, requests.RequestException) as exc:
                LOGGER.error(
                    "Crawl failed on page=%s after=%s (%s activities discarded): %s",
                    cursor.page,
                    cursor.after_timestamp,
                    len(collected),
                    exc,
                )
                raise CrawlError(f"Crawl failed on page {cursor.page}: {exc}") from exc
            collected.extend(batch)
            LOGGER.debug(
                "Crawl page=%s returned %s activities (total=%s)",
                cursor.page,
                len(batch),
                len(collected),
            )
            if len(batch) < self.page_size:
                break
            cursor.page += 1
        else:
            LOGGER.info(
                "Crawl stopped at page ceiling max_pages=%s (%s activities)",
                cursor.max_pages,
                len(collected),
            )
        return collected
