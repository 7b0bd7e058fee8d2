"""
Page slicing and resilient enumeration of the ledger's registered-user array.
"""

import asyncio
import logging
import math
from typing import List, Optional, Sequence, TypeVar

from django.conf import settings

from .entities import ZERO_ADDRESS, AccountRecord, HistoryPage, MemberDetail, UsersBatch
from .errors import LedgerError, LedgerValidationError
from .hydration import hydrate_members

logger = logging.getLogger(__name__)

T = TypeVar("T")


def paginate(entries: Sequence[T], page: int, page_size: int) -> HistoryPage[T]:
    """
    Slice ``entries`` into one page.

    ``page_size`` is clamped to >= 1 and ``page`` into ``[1, total_pages]``,
    where ``total_pages`` is at least 1 even for an empty list.
    """
    page_size = max(1, int(page_size or 1))
    total_items = len(entries)
    total_pages = max(1, math.ceil(total_items / page_size))
    page = min(max(1, int(page or 1)), total_pages)
    start = (page - 1) * page_size
    return HistoryPage(
        items=list(entries[start:start + page_size]),
        page=page,
        page_size=page_size,
        total_items=total_items,
        total_pages=total_pages,
    )


class UserBatchEnumerator:
    """Walks ``allUsers(i)`` in windows and hydrates every address found"""

    def __init__(self, platform, concurrency: Optional[int] = None):
        self.platform = platform
        self.concurrency = concurrency or settings.DOWNLINE_CONCURRENCY

    async def _total_users(self) -> Optional[int]:
        try:
            return await self.platform.get_total_users()
        except LedgerError as e:
            logger.warning(f"Total user count unavailable: {e}")
            return None

    async def _address_at(self, index: int, semaphore: asyncio.Semaphore) -> Optional[str]:
        async with semaphore:
            try:
                return await self.platform.get_user_at(index)
            except LedgerError as e:
                logger.warning(f"allUsers({index}) failed: {e}")
                return None

    async def fetch_users_batch(self, offset: int, limit: int, total: Optional[int] = None) -> UsersBatch:
        """
        Fetch and hydrate the addresses at ``[offset, offset + limit)``.

        With a known total, the window is clipped to it and a failing index
        read becomes a zero-address placeholder so offsets stay aligned.
        Without one, the page ends at the first failing index. A ``total``
        already known to the caller is used instead of re-reading the count.
        """
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise LedgerValidationError(f"offset must be a non-negative integer, got {offset!r}")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise LedgerValidationError(f"limit must be a positive integer, got {limit!r}")

        if total is None:
            total = await self._total_users()
        end = offset + limit if total is None else min(offset + limit, total)
        if end <= offset:
            return UsersBatch(total=total, items=[])

        semaphore = asyncio.Semaphore(self.concurrency)
        addresses = await asyncio.gather(*[
            self._address_at(i, semaphore) for i in range(offset, end)
        ])

        if total is None:
            found: List[str] = []
            for address in addresses:
                if address is None:
                    break
                found.append(address)
            return UsersBatch(total=None, items=await hydrate_members(self.platform, found, self.concurrency))

        present = [a for a in addresses if a is not None]
        hydrated = iter(await hydrate_members(self.platform, present, self.concurrency))
        items: List[MemberDetail] = []
        for address in addresses:
            if address is None:
                items.append(MemberDetail(
                    address=ZERO_ADDRESS,
                    record=AccountRecord.zero(ZERO_ADDRESS),
                    hydrated=False,
                ))
            else:
                items.append(next(hydrated))
        return UsersBatch(total=total, items=items)

    async def collect_all_users(self, page_size: Optional[int] = None) -> UsersBatch:
        """
        Export every registered user, page by page.

        Once a total is known it is passed to every later page and the walk
        stops only when it is reached. Before that, a short or empty page
        ends the walk. The first total reported by any page is kept.
        Addresses are deduplicated and zero-address placeholders dropped.
        """
        page_size = page_size or settings.EXPORT_PAGE_SIZE
        total: Optional[int] = None
        offset = 0
        seen = set()
        items: List[MemberDetail] = []

        while True:
            batch = await self.fetch_users_batch(offset, page_size, total=total)
            if total is None and batch.total is not None:
                total = batch.total

            for item in batch.items:
                key = item.address.lower()
                if key == ZERO_ADDRESS or key in seen:
                    continue
                seen.add(key)
                items.append(item)

            fetched = len(batch.items)
            offset += fetched
            if fetched == 0:
                break
            if total is None and fetched < page_size:
                break
            if total is not None and offset >= total:
                break

        logger.info(f"Collected {len(items)} users (reported total: {total})")
        return UsersBatch(total=total, items=items)
