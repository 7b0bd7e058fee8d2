"""Level and rank metadata lookups against the ledger's tables."""

import logging
from typing import Optional

from .entities import LevelInfo, RankInfo
from .errors import LedgerError

logger = logging.getLogger(__name__)


class LevelRankResolver:
    """
    Typed lookup of level / rank rows.

    A level or rank of 0 means "none" and resolves to None without a read.
    Read failures are logged and also resolve to None.
    """

    def __init__(self, platform):
        self.platform = platform

    async def get_level_info(self, level: Optional[int]) -> Optional[LevelInfo]:
        if not level or level < 1:
            return None
        try:
            info = await self.platform.get_level_info(level)
        except LedgerError as e:
            logger.error(f"Level {level} metadata unavailable: {e}")
            return None
        # Unconfigured table rows come back all zero
        if info is None or not (info.reward_percent or info.required_self_stake or info.required_directs):
            return None
        return info

    async def get_rank_info(self, rank: Optional[int]) -> Optional[RankInfo]:
        if not rank or rank < 1:
            return None
        try:
            info = await self.platform.get_rank_info(rank)
        except LedgerError as e:
            logger.error(f"Rank {rank} metadata unavailable: {e}")
            return None
        if info is None or not (info.reward_percent or info.required_team_business or info.required_directs):
            return None
        return info
