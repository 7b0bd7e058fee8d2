"""
StakingDashboard: the read/write facade consumed by views, tasks and scripts.

One instance owns one ReadCache; create a fresh dashboard per request or job
so cached reads never outlive the caller.
"""

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Dict, List, Optional

from django.conf import settings
from web3 import AsyncWeb3

from . import read_cache
from .activity import ActivityScanner
from .calculations import (
    advance_bond_status,
    bond_status,
    build_derived_report,
    format_daily_rate,
    now_ts,
)
from .decoders import format_units, shorten_address
from .downline import DownlineWalker
from .entities import (
    AccountRecord,
    BondPlan,
    BondPosition,
    BondStatus,
    CompanyPoolStatus,
    UserReport,
)
from .errors import LedgerError
from .metadata import LevelRankResolver
from .orchestrator import WriteOrchestrator
from .pagination import UserBatchEnumerator
from .pricing import PoolPriceService
from .read_cache import ReadCache
from .staking_platform import StakingPlatformService
from .token import TokenService

logger = logging.getLogger(__name__)

# levelIncome is tracked per referral level 1..15
REFERRAL_LEVELS = 15


async def soft(awaitable: Awaitable[Any], default: Any, label: str) -> Any:
    """Await a read, logging and returning ``default`` on any ledger error"""
    try:
        return await awaitable
    except LedgerError as e:
        logger.warning(f"{label} unavailable: {e}")
        return default


class StakingDashboard:
    def __init__(
        self,
        platform: Optional[StakingPlatformService] = None,
        token: Optional[TokenService] = None,
        cache: Optional[ReadCache] = None,
        web3: Optional[AsyncWeb3] = None,
    ):
        if web3 is None and platform is None:
            web3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.WEB3_PROVIDER_URL))
        self.platform = platform or StakingPlatformService(web3=web3)
        self.token = token or TokenService(web3=web3 or self.platform.web3)
        self.cache = cache if cache is not None else ReadCache()

        self.orchestrator = WriteOrchestrator(self.platform, self.token, self.cache)
        self.scanner = ActivityScanner(self.platform, self.token)
        self.walker = DownlineWalker(self.platform)
        self.enumerator = UserBatchEnumerator(self.platform)
        self.resolver = LevelRankResolver(self.platform)
        self.prices = PoolPriceService(self.platform)

    # ============================================================
    # Cached point reads
    # ============================================================

    async def get_account_record(self, address: str) -> AccountRecord:
        return await self.cache.get_or_load(
            ReadCache.key(read_cache.ACCOUNT, address),
            lambda: self.platform.get_account_record(address),
        )

    async def get_pending_rewards(self, address: str) -> int:
        return await self.cache.get_or_load(
            ReadCache.key(read_cache.PENDING, address),
            lambda: self.platform.get_pending_rewards(address),
        )

    async def get_balance(self, address: str) -> int:
        return await self.cache.get_or_load(
            ReadCache.key(read_cache.BALANCE, address),
            lambda: self.token.get_balance(address),
        )

    async def get_allowance(self, address: str) -> int:
        return await self.cache.get_or_load(
            ReadCache.key(read_cache.ALLOWANCE, address),
            lambda: self.token.get_allowance(address, self.platform.contract_address),
        )

    async def get_user_report(self, address: str) -> UserReport:
        return await self.cache.get_or_load(
            ReadCache.key(read_cache.REPORT, address),
            lambda: self.platform.get_user_report(address),
        )

    async def get_globals(self) -> Dict[str, int]:
        return await self.cache.get_or_load(
            ReadCache.key(read_cache.GLOBALS),
            self.platform.get_globals,
        )

    def invalidate(self, entities=None, address: Optional[str] = None) -> int:
        return self.cache.invalidate(entities, address)

    async def refresh(self, address: str) -> Dict[str, Any]:
        """Drop and re-read everything cached for ``address``"""
        return await self.orchestrator.refresh(address)

    # ============================================================
    # Account summary
    # ============================================================

    async def get_account_summary(self, address: str, now: Optional[int] = None) -> Dict[str, Any]:
        """
        Record, derived figures and display values for one account.

        Every read degrades to its default independently; an unreadable
        record renders as the zero record.
        """
        address = self.platform.checksum_address(address)
        record, pending, globals_, balance, blocked, team_size = await asyncio.gather(
            soft(self.get_account_record(address), AccountRecord.zero(address), f"Record of {address}"),
            soft(self.get_pending_rewards(address), None, f"pendingRewards of {address}"),
            soft(self.get_globals(), {}, "Globals"),
            soft(self.get_balance(address), 0, f"Balance of {address}"),
            soft(self.platform.is_blocked(address), False, f"Blocked flag of {address}"),
            soft(self.platform.get_team_size(address), 0, f"Team size of {address}"),
        )
        daily_rate = globals_.get('daily_rate') or settings.DEFAULT_DAILY_RATE
        report = build_derived_report(record, pending, daily_rate, now)
        level_info, rank_info = await asyncio.gather(
            self.resolver.get_level_info(record.level),
            self.resolver.get_rank_info(record.rank),
        )
        return {
            'address': address,
            'record': record.to_dict(),
            'pending_roi': report.pending_roi,
            'pending_roi_onchain': report.pending_roi_onchain,
            'pending_roi_simulated': report.pending_roi_simulated,
            'stake_with_accrued': report.stake_with_accrued,
            'token_balance': balance,
            'blocked': blocked,
            'team_size': team_size,
            'daily_rate': daily_rate,
            'daily_rate_percent': format_daily_rate(daily_rate),
            'total_staked': globals_.get('total_staked'),
            'level': asdict(level_info) if level_info else None,
            'rank': asdict(rank_info) if rank_info else None,
            'display': {
                'address': shorten_address(address),
                'referrer': shorten_address(record.referrer),
                'self_staked': format_units(record.self_staked),
                'pending_roi': format_units(report.pending_roi),
                'stake_with_accrued': format_units(report.stake_with_accrued),
                'token_balance': format_units(balance),
            },
        }

    async def get_level_incomes(self, address: str) -> List[int]:
        """Referral income earned per level, index 0 is level 1"""
        return list(await asyncio.gather(*[
            soft(self.platform.get_level_income(address, i), 0, f"levelIncome({address}, {i})")
            for i in range(REFERRAL_LEVELS)
        ]))

    # ============================================================
    # Bonds
    # ============================================================

    async def get_bonds(
        self,
        address: str,
        previous: Optional[Dict[int, BondStatus]] = None,
        now: Optional[int] = None,
    ) -> List[BondPosition]:
        """
        Every bond of ``address`` with plan metadata and status.

        ``previous`` maps bond index to a status seen earlier; statuses are
        only ever advanced from it. A bond whose read fails is listed with
        zero values and its previous status, or Active.
        """
        address = self.platform.checksum_address(address)
        count = await soft(self.platform.get_bond_count(address), 0, f"Bond count of {address}")
        if not count:
            return []
        raw_bonds = await asyncio.gather(*[
            soft(self.platform.get_user_bond(address, i), None, f"Bond #{i} of {address}")
            for i in range(count)
        ])
        plan_ids = sorted({b.plan_id for b in raw_bonds if b is not None})
        plans = await asyncio.gather(*[
            soft(self.platform.get_bond_plan(p), BondPlan(plan_id=p), f"Bond plan {p}")
            for p in plan_ids
        ])
        plans_by_id = {p.plan_id: p for p in plans}

        now = now_ts() if now is None else now
        previous = previous or {}
        bonds: List[BondPosition] = []
        for i, bond in enumerate(raw_bonds):
            if bond is None:
                # Unreadable bond keeps its index with zero values
                bonds.append(BondPosition(
                    index=i, plan_id=0, principal=0, reward=0, start_at=0, withdrawn=False,
                    status=previous.get(i, BondStatus.ACTIVE),
                ))
                continue
            plan = plans_by_id.get(bond.plan_id, BondPlan(plan_id=bond.plan_id))
            observed = bond_status(bond.withdrawn, bond.start_at, plan.duration, now)
            bonds.append(BondPosition(
                index=bond.index,
                plan_id=bond.plan_id,
                principal=bond.principal,
                reward=bond.reward,
                start_at=bond.start_at,
                withdrawn=bond.withdrawn,
                duration=plan.duration,
                reward_percent=plan.reward_percent,
                status=advance_bond_status(previous.get(bond.index), observed),
            ))
        return bonds

    @staticmethod
    def summarize_bonds(bonds: List[BondPosition]) -> Dict[str, int]:
        summary = {'active': 0, 'matured': 0, 'withdrawn': 0, 'locked_principal': 0, 'claimable': 0}
        for bond in bonds:
            if bond.status == BondStatus.ACTIVE:
                summary['active'] += 1
                summary['locked_principal'] += bond.principal
            elif bond.status == BondStatus.MATURED:
                summary['matured'] += 1
                summary['claimable'] += bond.total
            else:
                summary['withdrawn'] += 1
        return summary

    # ============================================================
    # Pool & prices
    # ============================================================

    async def get_company_pool_status(self) -> CompanyPoolStatus:
        pool_balance, contract_balance = await asyncio.gather(
            soft(self.platform.get_company_pool_balance(), 0, "Company pool balance"),
            soft(self.token.get_balance(self.platform.contract_address), 0, "Platform token balance"),
        )
        return CompanyPoolStatus(pool_balance=pool_balance, contract_token_balance=contract_balance)

    async def get_token_price_usd(self) -> int:
        return await self.prices.get_token_price_usd()

    async def get_pool_price(self, pair_address: str, base_token: str) -> int:
        return await self.prices.get_pool_price(pair_address, base_token)

    async def get_owner(self) -> Optional[str]:
        return await soft(self.platform.get_owner(), None, "Owner")

    # ============================================================
    # Histories, tree, export
    # ============================================================

    async def activity_page(self, address: str, page: int = 1, page_size: int = 10, **kwargs):
        return await self.scanner.activity_page(address, page, page_size, **kwargs)

    async def stake_history(self, address: str, page: int = 1, page_size: int = 10, **kwargs):
        return await self.scanner.stake_history(address, page, page_size, **kwargs)

    async def unstake_history(self, address: str, page: int = 1, page_size: int = 10, **kwargs):
        return await self.scanner.unstake_history(address, page, page_size, **kwargs)

    async def roi_history(self, address: str, page: int = 1, page_size: int = 10):
        return await self.scanner.roi_history(address, page, page_size)

    async def get_downline_by_level(self, address: str, max_depth: Optional[int] = None):
        return await self.walker.get_downline_by_level(address, max_depth)

    async def get_downline_details(self, address: str, max_depth: Optional[int] = None):
        return await self.walker.get_downline_details(address, max_depth)

    async def get_directs(self, address: str):
        return await soft(
            self.cache.get_or_load(
                ReadCache.key(read_cache.DIRECTS, address),
                lambda: self.platform.get_user_directs(address),
            ),
            [],
            f"Directs of {address}",
        )

    async def fetch_users_batch(self, offset: int, limit: int):
        return await self.enumerator.fetch_users_batch(offset, limit)

    async def collect_all_users(self, page_size: Optional[int] = None):
        return await self.enumerator.collect_all_users(page_size)
