"""Upstream source client.

Assembles the complete, date-filtered record set for one cache key from
the paginated search endpoint.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from datetime import datetime

from tracksync._api.search import SourcePage, fetch_search_page
from tracksync._timing import Wait, asyncio_wait
from tracksync._transport import Transport
from tracksync.config import SyncConfig
from tracksync.exceptions import FetchFailedError, IncompleteFetchError
from tracksync.models.cache import CacheKey, EventRecord, filter_records_for_day

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of :meth:`SourceClient.fetch_all`.

    ``records`` are already filtered to ``key.date``; ``fetched_count`` is
    the number of records received before filtering.
    """

    key: CacheKey
    records: tuple[EventRecord, ...]
    reported_total: int
    fetched_count: int
    pages_requested: int
    failed_pages: tuple[int, ...] = ()

    @property
    def complete(self) -> bool:
        return self.fetched_count >= self.reported_total and not self.failed_pages

    @property
    def removed_count(self) -> int:
        return self.fetched_count - len(self.records)


class SourceClient:
    """Client for the upstream analytics API.

    Parameters
    ----------
    config : SyncConfig
        Engine configuration (URLs, token, page sizes and delays).
    transport : Transport
        JSON transport used for every request.
    wait : Wait
        Delay strategy applied before each page after the first.
    """

    def __init__(
        self,
        config: SyncConfig,
        transport: Transport,
        *,
        wait: Wait = asyncio_wait,
    ) -> None:
        self._config = config
        self._transport = transport
        self._wait = wait

    @property
    def config(self) -> SyncConfig:
        return self._config

    async def fetch_page(self, key: CacheKey, page: int, page_size: int | None = None) -> SourcePage:
        """Fetch one raw page (unfiltered)."""
        return await fetch_search_page(
            self._config,
            self._transport,
            key,
            page=page,
            page_size=page_size or self._config.page_size,
        )

    async def fetch_all(self, key: CacheKey, *, strict: bool = False) -> FetchResult:
        """Fetch every page for *key* and filter records to its date.

        Parameters
        ----------
        key : CacheKey
            Tracking point and date to fetch.
        strict : bool
            Raise instead of warning when fewer records arrive than the
            source reported.

        Returns
        -------
        FetchResult
            Filtered records plus pagination bookkeeping.

        Raises
        ------
        FetchFailedError
            If the first page cannot be fetched.
        IncompleteFetchError
            In strict mode, if ``fetched_count < reported_total``.
        """
        page_size = self._config.page_size
        first = await self.fetch_page(key, 1, page_size)
        pages: list[SourcePage] = [first]
        failed: list[int] = []
        total = first.total

        if total > 0 and len(first.records) != total:
            page_count = min(math.ceil(total / page_size), self._config.max_pages)
            if math.ceil(total / page_size) > self._config.max_pages:
                _logger.warning(
                    "%s reports %d records, more than %d pages; fetching the first %d only",
                    key,
                    total,
                    self._config.max_pages,
                    page_count,
                )
            for page_no in range(2, page_count + 1):
                await self._wait(self._config.page_delay)
                try:
                    page = await self.fetch_page(key, page_no, page_size)
                except FetchFailedError:
                    _logger.warning("Skipping page %d of %s", page_no, key, exc_info=True)
                    failed.append(page_no)
                    continue
                if not page.records:
                    _logger.debug("Empty page %d for %s, stopping", page_no, key)
                    pages.append(page)
                    break
                pages.append(page)

        fetched = [record for page in pages for record in page.records]
        kept, removed = filter_records_for_day(fetched, key.day, self._config.zone)
        if removed:
            _logger.info("Filtered %d out-of-day records for %s: %s", sum(removed.values()), key, removed)

        result = FetchResult(
            key=key,
            records=tuple(kept),
            reported_total=total,
            fetched_count=len(fetched),
            pages_requested=len(pages) + len(failed),
            failed_pages=tuple(failed),
        )
        if result.fetched_count < total:
            message = f"IncompleteFetch for {key}: fetched {result.fetched_count} of {total} reported"
            if strict:
                raise IncompleteFetchError(
                    message,
                    point_id=key.point_id,
                    date=key.date,
                    fetched=result.fetched_count,
                    reported=total,
                )
            _logger.warning(message)
        return result

    async def probe_latest(self, key: CacheKey) -> datetime | None:
        """Newest ``created_at`` on the source for *key*, from one small page."""
        page = await self.fetch_page(key, 1, self._config.probe_page_size)
        day = key.day
        zone = self._config.zone
        stamps = [
            record.created_at
            for record in page.records
            if record.created_at is not None and record.local_date(zone) == day
        ]
        return max(stamps) if stamps else None
