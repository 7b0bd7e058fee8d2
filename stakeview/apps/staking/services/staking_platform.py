"""
StakingPlatform Contract Service
Typed point reads of accounts, bonds, referrals and reports, plus the raw
write calls that the WriteOrchestrator sequences.
"""

from typing import Optional, Dict, Any, List
from django.conf import settings
import asyncio
import logging
from .base_contract import BaseContractService, SentCallback
from .decoders import (
    decode_account_record,
    decode_bond,
    decode_bond_plan,
    decode_level_info,
    decode_rank_info,
    decode_roi_entry,
    decode_user_report,
    to_address,
    to_int,
)
from .entities import (
    AccountRecord,
    BondPlan,
    BondPosition,
    DirectEntry,
    LevelInfo,
    RankInfo,
    RoiEntry,
    UserReport,
)

logger = logging.getLogger(__name__)


class StakingPlatformService(BaseContractService):
    """Service for interacting with the StakingPlatform contract"""

    def __init__(self, contract_address: Optional[str] = None, **kwargs):
        super().__init__(
            contract_address=contract_address or settings.STAKING_PLATFORM_ADDRESS,
            abi_path=settings.STAKING_PLATFORM_ABI_PATH,
            **kwargs,
        )

    # ============================================================
    # READ-ONLY FUNCTIONS - Accounts
    # ============================================================

    async def get_account_record(self, address: str) -> AccountRecord:
        """
        Get the ledger record of an account

        Args:
            address: Wallet address

        Returns:
            AccountRecord (zero-valued fields for unknown accounts)
        """
        address = self.checksum_address(address)
        raw = await self.call_read_function('users', address)
        return decode_account_record(address, raw)

    async def get_pending_rewards(self, address: str) -> int:
        address = self.checksum_address(address)
        return to_int(await self.call_read_function('pendingRewards', address), field_name='pendingRewards')

    async def get_user_report(self, address: str) -> UserReport:
        address = self.checksum_address(address)
        return decode_user_report(await self.call_read_function('getUserReport', address))

    async def get_roi_entry(self, address: str, index: int) -> RoiEntry:
        address = self.checksum_address(address)
        return decode_roi_entry(index, await self.call_read_function('roiHistory', address, index))

    async def get_team_size(self, address: str) -> int:
        address = self.checksum_address(address)
        return to_int(await self.call_read_function('getTeamSize', address), field_name='teamSize')

    async def get_user_directs(self, address: str) -> List[DirectEntry]:
        """
        Direct referrals of an address with their referral-income snapshot

        Returns:
            DirectEntry list in ledger order
        """
        address = self.checksum_address(address)
        raw = await self.call_read_function('getUserDirects', address)
        directs = list(raw[0]) if raw and len(raw) > 0 and raw[0] else []
        incomes = list(raw[1]) if raw and len(raw) > 1 and raw[1] else []
        return [
            DirectEntry(
                address=to_address(direct),
                referral_income=to_int(incomes[i] if i < len(incomes) else 0, field_name='referralIncome'),
            )
            for i, direct in enumerate(directs)
        ]

    async def get_level_income(self, address: str, level_index: int) -> int:
        address = self.checksum_address(address)
        return to_int(await self.call_read_function('levelIncome', address, level_index), field_name='levelIncome')

    async def is_blocked(self, address: str) -> bool:
        address = self.checksum_address(address)
        return bool(await self.call_read_function('blockedUsers', address))

    async def get_total_users(self) -> int:
        return to_int(await self.call_read_function('getTotalUsers'), field_name='totalUsers')

    async def get_user_at(self, index: int) -> str:
        return to_address(await self.call_read_function('allUsers', index))

    # ============================================================
    # READ-ONLY FUNCTIONS - Bonds
    # ============================================================

    async def get_bond_plan(self, plan_id: int) -> BondPlan:
        return decode_bond_plan(plan_id, await self.call_read_function('bondPlans', plan_id))

    async def get_bond_count(self, address: str) -> int:
        address = self.checksum_address(address)
        return to_int(await self.call_read_function('getUserBondCount', address), field_name='bondCount')

    async def get_user_bond(self, address: str, index: int, plan: Optional[BondPlan] = None) -> BondPosition:
        address = self.checksum_address(address)
        return decode_bond(index, await self.call_read_function('userBonds', address, index), plan)

    # ============================================================
    # READ-ONLY FUNCTIONS - Tables & globals
    # ============================================================

    async def get_level_info(self, level: int) -> Optional[LevelInfo]:
        """Levels are stored 0-indexed: level N lives at index N - 1"""
        return decode_level_info(level, await self.call_read_function('levels', level - 1))

    async def get_rank_info(self, rank: int) -> Optional[RankInfo]:
        return decode_rank_info(rank, await self.call_read_function('ranks', rank - 1))

    async def get_daily_rate(self) -> int:
        return to_int(await self.call_read_function('dailyRate'), field_name='dailyRate')

    async def get_total_staked(self) -> int:
        return to_int(await self.call_read_function('getTotalStaked'), field_name='totalStaked')

    async def get_manual_token_price(self) -> int:
        return to_int(await self.call_read_function('manualTokenPrice'), field_name='manualTokenPrice')

    async def get_token_price_usd(self) -> int:
        return to_int(await self.call_read_function('getTokenPriceUsd18'), field_name='tokenPriceUsd')

    async def get_company_pool_balance(self) -> int:
        return to_int(await self.call_read_function('companyPoolBalance'), field_name='companyPoolBalance')

    async def get_price_pair(self) -> str:
        return to_address(await self.call_read_function('pricePair'))

    async def get_owner(self) -> str:
        return to_address(await self.call_read_function('owner'))

    async def get_token_address(self) -> str:
        return to_address(await self.call_read_function('token'))

    async def get_globals(self) -> Dict[str, int]:
        """Daily rate and total staked in one round trip"""
        daily_rate, total_staked = await asyncio.gather(self.get_daily_rate(), self.get_total_staked())
        return {'daily_rate': daily_rate, 'total_staked': total_staked}

    # ============================================================
    # WRITE FUNCTIONS - Users
    # ============================================================

    async def _send(
        self, function, wallet: str, private_key: str, label: str, on_sent: Optional[SentCallback] = None
    ) -> Dict[str, Any]:
        logger.info(f"Submitting {label} from {wallet}")
        result = await self.build_and_send_transaction(
            function=function,
            from_address=wallet,
            private_key=private_key,
            on_sent=on_sent,
        )
        logger.info(f"{label} confirmed (tx: {result['tx_hash']})")
        return result

    async def stake(self, wallet: str, private_key: str, amount: int, referrer: str, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        """
        Stake tokens
        Note: the wallet must have approved the platform to spend the amount first
        """
        function = self.contract.functions.stake(amount, self.checksum_address(referrer))
        return await self._send(function, wallet, private_key, f"stake {amount}", on_sent)

    async def unstake(self, wallet: str, private_key: str, amount: int, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.unstake(amount)
        return await self._send(function, wallet, private_key, f"unstake {amount}", on_sent)

    async def claim_rewards(self, wallet: str, private_key: str, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.claimRewards()
        return await self._send(function, wallet, private_key, "claimRewards", on_sent)

    async def buy_bond(self, wallet: str, private_key: str, plan_id: int, amount: int, referrer: str, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.buyBond(plan_id, amount, self.checksum_address(referrer))
        return await self._send(function, wallet, private_key, f"buyBond plan={plan_id} amount={amount}", on_sent)

    async def withdraw_bond(self, wallet: str, private_key: str, index: int, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.withdrawBond(index)
        return await self._send(function, wallet, private_key, f"withdrawBond #{index}", on_sent)

    # ============================================================
    # WRITE FUNCTIONS - Owner
    # ============================================================

    async def set_daily_rate(self, wallet: str, private_key: str, rate: int, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.setDailyRate(rate)
        return await self._send(function, wallet, private_key, f"setDailyRate {rate}", on_sent)

    async def batch_compound(self, wallet: str, private_key: str, start: int, end: int, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.batchCompound(start, end)
        return await self._send(function, wallet, private_key, f"batchCompound [{start}, {end})", on_sent)

    async def fund_company_pool(self, wallet: str, private_key: str, amount: int, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.fundCompanyPool(amount)
        return await self._send(function, wallet, private_key, f"fundCompanyPool {amount}", on_sent)

    async def emergency_withdraw(self, wallet: str, private_key: str, to: str, amount: int, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.emergencyWithdraw(self.checksum_address(to), amount)
        return await self._send(function, wallet, private_key, f"emergencyWithdraw {amount} to {to}", on_sent)

    async def emergency_reset_user(self, wallet: str, private_key: str, account: str, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.emergencyResetUser(self.checksum_address(account))
        return await self._send(function, wallet, private_key, f"emergencyResetUser {account}", on_sent)

    async def transfer_ownership(self, wallet: str, private_key: str, new_owner: str, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.transferOwnership(self.checksum_address(new_owner))
        return await self._send(function, wallet, private_key, f"transferOwnership to {new_owner}", on_sent)

    async def block_user(self, wallet: str, private_key: str, account: str, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.blockUser(self.checksum_address(account))
        return await self._send(function, wallet, private_key, f"blockUser {account}", on_sent)

    async def unblock_user(self, wallet: str, private_key: str, account: str, on_sent: Optional[SentCallback] = None) -> Dict[str, Any]:
        function = self.contract.functions.unblockUser(self.checksum_address(account))
        return await self._send(function, wallet, private_key, f"unblockUser {account}", on_sent)
