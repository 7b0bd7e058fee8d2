"""
Downline (referral tree) reconstruction.

The ledger only answers "who are the directs of X", so the tree is rebuilt
level by level with a breadth-first walk.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from django.conf import settings

from .entities import ZERO_ADDRESS, DirectEntry, MemberDetail
from .errors import LedgerError
from .hydration import hydrate_members

logger = logging.getLogger(__name__)

# Deepest level the ledger pays referral rewards on
MAX_TREE_DEPTH = 15

DownlineTree = Dict[int, List[str]]


class DownlineWalker:
    def __init__(self, platform, concurrency: Optional[int] = None, max_depth: Optional[int] = None):
        self.platform = platform
        self.concurrency = concurrency or settings.DOWNLINE_CONCURRENCY
        self.max_depth = min(max_depth or settings.DOWNLINE_MAX_DEPTH, MAX_TREE_DEPTH)

    async def get_directs(self, address: str) -> List[DirectEntry]:
        """Direct referrals with their referral-income snapshot; [] on failure"""
        try:
            return await self.platform.get_user_directs(address)
        except LedgerError as e:
            logger.error(f"Directs read failed for {address}: {e}")
            return []

    async def _directs_bounded(self, address: str, semaphore: asyncio.Semaphore) -> List[DirectEntry]:
        async with semaphore:
            return await self.get_directs(address)

    async def _resolve_depth(self, address: str, max_depth: Optional[int], unlocked_level: Optional[int]) -> int:
        if unlocked_level is None:
            try:
                record = await self.platform.get_account_record(address)
                unlocked_level = record.level
            except LedgerError as e:
                logger.error(f"Could not read unlocked level of {address}: {e}")
                return 0
        depth = min(unlocked_level, self.max_depth)
        if max_depth is not None:
            depth = min(depth, max_depth)
        return max(0, depth)

    async def walk(
        self,
        address: str,
        max_depth: Optional[int] = None,
        unlocked_level: Optional[int] = None,
    ):
        """
        Breadth-first walk returning ``(tree, incomes)``.

        ``tree`` maps level (1-based) to addresses in discovery order;
        ``incomes`` maps lowercase address to the referral-income snapshot
        reported by its upline's directs read.
        """
        depth = await self._resolve_depth(address, max_depth, unlocked_level)
        tree: DownlineTree = {}
        incomes: Dict[str, int] = {}
        seen = {address.lower()}
        frontier = [address]
        semaphore = asyncio.Semaphore(self.concurrency)

        for level in range(1, depth + 1):
            results = await asyncio.gather(*[
                self._directs_bounded(member, semaphore) for member in frontier
            ])
            next_frontier: List[str] = []
            for directs in results:
                for entry in directs:
                    key = entry.address.lower()
                    # Malformed directs decode to the zero address
                    if key == ZERO_ADDRESS or key in seen:
                        continue
                    seen.add(key)
                    incomes[key] = entry.referral_income
                    next_frontier.append(entry.address)
            if not next_frontier:
                break
            tree[level] = next_frontier
            frontier = next_frontier

        logger.debug(f"Downline of {address}: {sum(len(v) for v in tree.values())} members over {len(tree)} levels")
        return tree, incomes

    async def get_downline_by_level(
        self,
        address: str,
        max_depth: Optional[int] = None,
        unlocked_level: Optional[int] = None,
    ) -> DownlineTree:
        tree, _ = await self.walk(address, max_depth, unlocked_level)
        return tree

    async def get_downline_details(
        self,
        address: str,
        max_depth: Optional[int] = None,
        unlocked_level: Optional[int] = None,
    ) -> Dict[int, List[MemberDetail]]:
        """Same tree with every node hydrated into a MemberDetail"""
        tree, incomes = await self.walk(address, max_depth, unlocked_level)
        details: Dict[int, List[MemberDetail]] = {}
        for level, members in tree.items():
            details[level] = await hydrate_members(self.platform, members, self.concurrency, incomes)
        return details
