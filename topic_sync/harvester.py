"""
ID harvester: pages through the conversation search for a date window.

Only ids and creation times are collected here; everything else is fetched
per conversation by the enricher.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from .api_client import Failure, RateLimited, Success
from .backoff import BackoffStrategy
from .cancellation import CancellationToken
from .config import INTERCOM_MAX_PER_PAGE
from .intercom_client import IntercomClient

logger = logging.getLogger(__name__)


class HarvestError(Exception):
    """A search page failed with something other than a rate limit."""

    def __init__(self, failure: Failure, pages_fetched: int = 0):
        super().__init__(failure.message)
        self.failure = failure
        self.pages_fetched = pages_fetched


@dataclass(frozen=True)
class HarvestedId:
    id: str
    created_at: datetime


@dataclass
class HarvestPage:
    items: list[HarvestedId] = field(default_factory=list)
    total_count: Optional[int] = None
    has_more: bool = False
    next_cursor: Optional[str] = None


def _to_timestamp(value: Union[datetime, int, float]) -> int:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    return int(value)


def parse_search_page(payload: dict) -> HarvestPage:
    """Turn a /conversations/search response into a HarvestPage."""
    items = []
    for conv in payload.get("conversations") or []:
        conv_id = conv.get("id")
        created = conv.get("created_at")
        if conv_id is None or created is None:
            logger.debug(f"Skipping search hit without id/created_at: {conv!r}")
            continue
        items.append(HarvestedId(id=str(conv_id), created_at=datetime.fromtimestamp(created, tz=timezone.utc)))

    next_page = (payload.get("pages") or {}).get("next") or {}
    cursor = next_page.get("starting_after") if isinstance(next_page, dict) else None

    return HarvestPage(
        items=items,
        total_count=payload.get("total_count"),
        has_more=bool(cursor),
        next_cursor=cursor,
    )


class IdHarvester:
    """Collects conversation ids created within an inclusive window."""

    def __init__(
        self,
        client: IntercomClient,
        per_page: int = INTERCOM_MAX_PER_PAGE,
        backoff: Optional[BackoffStrategy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.per_page = max(1, min(per_page, INTERCOM_MAX_PER_PAGE))
        self.backoff = backoff or BackoffStrategy()
        self._sleep = sleep

    async def fetch_page(
        self,
        start: Union[datetime, int],
        end: Union[datetime, int],
        cursor: Optional[str] = None,
    ) -> Union[HarvestPage, RateLimited, Failure]:
        """Fetch a single page. Rate limits and failures are returned, not raised."""
        result = await self.client.search_conversations(
            _to_timestamp(start), _to_timestamp(end), per_page=self.per_page, starting_after=cursor
        )
        if isinstance(result, Success):
            return parse_search_page(result.payload or {})
        return result

    async def harvest(
        self,
        start: Union[datetime, int],
        end: Union[datetime, int],
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[HarvestPage]:
        """Yield pages in cursor order until the search is exhausted.

        Rate-limited pages are retried with the shared backoff. A rate limit
        that never clears, or any other failure, raises HarvestError.

        Raises:
            HarvestError: on a non-rate-limit failure
        """
        cursor = None
        pages = 0
        seen = 0

        while True:
            if cancel_token is not None and cancel_token.cancelled:
                logger.info(f"Harvest cancelled after {pages} pages ({seen} ids)")
                return

            result = await self.fetch_page(start, end, cursor)

            if isinstance(result, RateLimited):
                delay = self.backoff.next_delay()
                if self.backoff.exhausted:
                    self.backoff.clear_saturation()
                    raise HarvestError(
                        Failure(429, "rate limit retries exhausted", endpoint=result.endpoint),
                        pages_fetched=pages,
                    )
                if result.retry_after:
                    delay = max(delay, result.retry_after)
                logger.warning(f"Search page rate limited, retrying in {delay:.1f}s")
                await self._sleep(delay)
                continue

            if isinstance(result, Failure):
                raise HarvestError(result, pages_fetched=pages)

            self.backoff.reset()
            pages += 1
            seen += len(result.items)
            total = f"/{result.total_count}" if result.total_count is not None else ""
            logger.info(f"Page {pages}: {len(result.items)} ids ({seen}{total} so far)")

            if not result.items:
                return
            yield result
            if not result.has_more:
                return
            cursor = result.next_cursor
