"""
Tolerant hydration of many addresses into account records.

One failing read never drops an address: it is replaced by the zero-valued
record with ``hydrated=False`` and logged.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from django.conf import settings

from .entities import AccountRecord, MemberDetail
from .errors import LedgerError

logger = logging.getLogger(__name__)


async def hydrate_member(
    platform,
    address: str,
    semaphore: asyncio.Semaphore,
    referral_income: Optional[int] = None,
) -> MemberDetail:
    async with semaphore:
        try:
            record = await platform.get_account_record(address)
        except LedgerError as e:
            logger.warning(f"Using zero record for {address}: {e}")
            return MemberDetail(
                address=address,
                record=AccountRecord.zero(address),
                referral_income=referral_income,
                hydrated=False,
            )
    return MemberDetail(address=address, record=record, referral_income=referral_income)


async def hydrate_members(
    platform,
    addresses: Sequence[str],
    concurrency: Optional[int] = None,
    incomes: Optional[Dict[str, int]] = None,
) -> List[MemberDetail]:
    """
    Read the account record of every address concurrently.

    Args:
        platform: StakingPlatformService (or anything with ``get_account_record``)
        addresses: Addresses to hydrate, output keeps this order
        concurrency: Max in-flight reads (defaults to DOWNLINE_CONCURRENCY)
        incomes: Optional referral-income snapshot keyed by lowercase address

    Returns:
        One MemberDetail per input address
    """
    if not addresses:
        return []
    semaphore = asyncio.Semaphore(concurrency or settings.DOWNLINE_CONCURRENCY)
    incomes = incomes or {}
    details = await asyncio.gather(*[
        hydrate_member(platform, address, semaphore, incomes.get(address.lower()))
        for address in addresses
    ])
    failed = sum(1 for d in details if not d.hydrated)
    if failed:
        logger.warning(f"Hydrated {len(details)} addresses, {failed} substituted with zero records")
    return list(details)
