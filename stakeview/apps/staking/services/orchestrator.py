"""
Write orchestration for the staking platform.

Every state-changing call follows the same sequence:

1. validate inputs locally and fail fast
2. for token-spending calls, read the allowance and approve
   ``ceil(amount * 1.01)`` when it is short, waiting for the approval receipt
3. submit the action and wait for its receipt
4. invalidate and re-read everything the write could have changed
5. surface failures as typed errors; nothing local changes before confirmation
"""

import asyncio
import inspect
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from django.conf import settings

from . import read_cache
from .base_contract import SentCallback
from .calculations import daily_rate_from_percent, usd_to_token_amount
from .entities import ZERO_ADDRESS
from .errors import LedgerError, LedgerValidationError, RemoteExecutionError
from .read_cache import ReadCache
from .staking_platform import StakingPlatformService
from .token import TokenService

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Reads a confirmed write can change for the sending wallet
WRITE_INVALIDATES = (
    read_cache.BALANCE,
    read_cache.ALLOWANCE,
    read_cache.ACCOUNT,
    read_cache.PENDING,
    read_cache.REPORT,
    read_cache.BONDS,
    read_cache.GLOBALS,
)

StageCallback = Callable[..., None]


# ============================================================
# Validation helpers
# ============================================================

def is_well_formed_address(value: Any) -> bool:
    return isinstance(value, str) and bool(ADDRESS_RE.match(value.strip()))


def validate_address(value: Any, field: str = "address", allow_zero: bool = False) -> str:
    if not is_well_formed_address(value):
        raise LedgerValidationError(f"Invalid {field}: {value!r}")
    address = StakingPlatformService.checksum_address(value.strip())
    if not allow_zero and address.lower() == ZERO_ADDRESS:
        raise LedgerValidationError(f"{field} must not be the zero address")
    return address


def validate_amount(amount: Any, field: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise LedgerValidationError(f"{field} must be an integer number of base units, got {amount!r}")
    if amount <= 0:
        raise LedgerValidationError(f"{field} must be positive, got {amount}")
    return amount


def validate_index(value: Any, field: str = "index") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise LedgerValidationError(f"{field} must be a non-negative integer, got {value!r}")
    return value


def parse_token_amount(value: Any, decimals: int = 18, field: str = "amount") -> int:
    """Human token amount ("1.5") -> positive base units."""
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise LedgerValidationError(f"Invalid {field}: {value!r}") from e
    if not amount.is_finite() or amount <= 0:
        raise LedgerValidationError(f"{field} must be positive, got {value!r}")
    return validate_amount(int(amount * (10 ** decimals)), field)


def allowance_target(amount: int) -> int:
    """Approval size with a 1% buffer rounded up: ceil(amount * 1.01)."""
    if amount <= 0:
        return 0
    return amount + (amount + 99) // 100


def needs_approval(current_allowance: int, amount: int) -> bool:
    return current_allowance < allowance_target(amount)


def resolve_referrer(
    candidates: Iterable[Optional[str]],
    caller: Optional[str],
    default: Optional[str] = None,
) -> str:
    """
    First candidate that is well formed, not the zero address and not the
    caller; the configured default referrer otherwise.
    """
    caller_lower = (caller or "").strip().lower()
    for candidate in candidates:
        if not is_well_formed_address(candidate):
            continue
        lowered = candidate.strip().lower()
        if lowered == ZERO_ADDRESS or lowered == caller_lower:
            continue
        return StakingPlatformService.checksum_address(candidate.strip())
    fallback = default or settings.DEFAULT_REFERRER
    return StakingPlatformService.checksum_address(fallback)


# ============================================================
# Orchestrator
# ============================================================

class WriteOrchestrator:
    """Sequences approvals, writes, confirmation and refresh for one platform/token pair"""

    def __init__(
        self,
        platform: StakingPlatformService,
        token: TokenService,
        cache: Optional[ReadCache] = None,
        default_referrer: Optional[str] = None,
    ):
        self.platform = platform
        self.token = token
        self.cache = cache
        self.default_referrer = default_referrer or settings.DEFAULT_REFERRER

    @property
    def spender(self) -> str:
        return self.platform.contract_address

    @staticmethod
    def _stage(on_stage: Optional[StageCallback], stage: str, **info) -> None:
        if on_stage is not None:
            on_stage(stage, **info)

    async def ensure_allowance(
        self,
        wallet: str,
        private_key: str,
        amount: int,
        on_stage: Optional[StageCallback] = None,
    ) -> Optional[str]:
        """
        Approve the platform for ``allowance_target(amount)`` when the current
        allowance is short. Returns the approval tx hash, or None if none was needed.
        """
        current = await self.token.get_allowance(wallet, self.spender)
        if not needs_approval(current, amount):
            return None

        target = allowance_target(amount)
        logger.info(f"Allowance {current} < {target} for {wallet}; approving")
        self._stage(on_stage, "approving", target=target)
        try:
            result = await self.token.approve(
                owner_address=wallet,
                spender_address=self.spender,
                amount=target,
                private_key=private_key,
                on_sent=lambda tx_hash: self._stage(on_stage, "approve_sent", approve_tx_hash=tx_hash),
            )
        except LedgerError as e:
            logger.error(f"Approval failed for {wallet}: {e}")
            raise RemoteExecutionError(f"Approval failed: {e}") from e

        self._stage(on_stage, "approved", approve_tx_hash=result['tx_hash'])
        return result['tx_hash']

    async def refresh(self, wallet: str) -> Dict[str, Any]:
        """Invalidate and re-read every value a write can change for ``wallet``."""
        if self.cache is not None:
            self.cache.invalidate(WRITE_INVALIDATES, wallet)

        reads = {
            read_cache.BALANCE: self.token.get_balance(wallet),
            read_cache.ALLOWANCE: self.token.get_allowance(wallet, self.spender),
            read_cache.ACCOUNT: self.platform.get_account_record(wallet),
            read_cache.PENDING: self.platform.get_pending_rewards(wallet),
        }
        results = await asyncio.gather(*reads.values(), return_exceptions=True)

        refreshed: Dict[str, Any] = {}
        for entity, value in zip(reads.keys(), results):
            if isinstance(value, Exception):
                logger.warning(f"Refresh of {entity} for {wallet} failed after write: {value}")
                continue
            if self.cache is not None:
                self.cache.set(ReadCache.key(entity, wallet), value)
            refreshed[entity] = value.to_dict() if hasattr(value, 'to_dict') else value
        return refreshed

    async def _run(
        self,
        operation: str,
        wallet: str,
        submit: Callable[[SentCallback], Awaitable[Dict[str, Any]]],
        approve_amount: Optional[int] = None,
        private_key: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> Dict[str, Any]:
        approve_tx_hash = None
        if approve_amount is not None:
            approve_tx_hash = await self.ensure_allowance(wallet, private_key, approve_amount, on_stage)

        self._stage(on_stage, "submitting", operation=operation)
        try:
            result = await submit(lambda tx_hash: self._stage(on_stage, "sent", tx_hash=tx_hash))
        except LedgerError as e:
            logger.error(f"{operation} failed for {wallet}: {e}")
            raise
        self._stage(on_stage, "confirmed", tx_hash=result['tx_hash'])

        refreshed = await self.refresh(wallet)
        return {
            'operation': operation,
            'tx_hash': result['tx_hash'],
            'block_number': result.get('block_number'),
            'gas_used': result.get('gas_used'),
            'approve_tx_hash': approve_tx_hash,
            'refreshed': refreshed,
        }

    async def _registered_referrer(self, wallet: str) -> Optional[str]:
        if self.cache is not None:
            hit, record = self.cache.get(ReadCache.key(read_cache.ACCOUNT, wallet))
            if hit:
                return record.referrer
        try:
            record = await self.platform.get_account_record(wallet)
        except LedgerError as e:
            logger.warning(f"Could not read registered referrer of {wallet}: {e}")
            return None
        return record.referrer

    # ============================================================
    # User operations
    # ============================================================

    async def stake(
        self,
        wallet: str,
        private_key: str,
        amount: int,
        referrer: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        amount = validate_amount(amount)
        ref = resolve_referrer(
            [referrer, await self._registered_referrer(wallet)], wallet, self.default_referrer
        )
        return await self._run(
            'stake', wallet,
            lambda on_sent: self.platform.stake(wallet, private_key, amount, ref, on_sent=on_sent),
            approve_amount=amount, private_key=private_key, on_stage=on_stage,
        )

    async def stake_usd(
        self,
        wallet: str,
        private_key: str,
        usd_amount: Any,
        referrer: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> Dict[str, Any]:
        """Stake the token amount worth ``usd_amount`` dollars at the ledger's price"""
        usd_18 = parse_token_amount(usd_amount, field="usd_amount")
        price = await self.platform.get_token_price_usd()
        if not price:
            price = await self.platform.get_manual_token_price()
        amount = usd_to_token_amount(usd_18, price)
        return await self.stake(wallet, private_key, amount, referrer, on_stage)

    async def unstake(self, wallet: str, private_key: str, amount: int, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        amount = validate_amount(amount)
        return await self._run(
            'unstake', wallet, lambda on_sent: self.platform.unstake(wallet, private_key, amount, on_sent=on_sent), on_stage=on_stage
        )

    async def claim_rewards(self, wallet: str, private_key: str, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        return await self._run(
            'claim_rewards', wallet, lambda on_sent: self.platform.claim_rewards(wallet, private_key, on_sent=on_sent), on_stage=on_stage
        )

    async def buy_bond(
        self,
        wallet: str,
        private_key: str,
        plan_id: int,
        amount: int,
        referrer: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        plan_id = validate_index(plan_id, "plan_id")
        amount = validate_amount(amount)
        ref = resolve_referrer(
            [referrer, await self._registered_referrer(wallet)], wallet, self.default_referrer
        )
        return await self._run(
            'buy_bond', wallet,
            lambda on_sent: self.platform.buy_bond(wallet, private_key, plan_id, amount, ref, on_sent=on_sent),
            approve_amount=amount, private_key=private_key, on_stage=on_stage,
        )

    async def withdraw_bond(self, wallet: str, private_key: str, index: int, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        index = validate_index(index)
        return await self._run(
            'withdraw_bond', wallet, lambda on_sent: self.platform.withdraw_bond(wallet, private_key, index, on_sent=on_sent), on_stage=on_stage
        )

    async def approve(
        self,
        wallet: str,
        private_key: str,
        amount: int,
        spender: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        amount = validate_amount(amount)
        spender = validate_address(spender, "spender") if spender else self.spender
        return await self._run(
            'approve', wallet,
            lambda on_sent: self.token.approve(wallet, spender, amount, private_key, on_sent=on_sent),
            on_stage=on_stage,
        )

    # ============================================================
    # Owner operations
    # ============================================================

    async def set_daily_rate(self, wallet: str, private_key: str, percent: Any, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        rate = daily_rate_from_percent(percent)
        return await self._run(
            'set_daily_rate', wallet, lambda on_sent: self.platform.set_daily_rate(wallet, private_key, rate, on_sent=on_sent), on_stage=on_stage
        )

    async def batch_compound(self, wallet: str, private_key: str, start: int, end: int, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        start = validate_index(start, "start")
        end = validate_index(end, "end")
        if end <= start:
            raise LedgerValidationError(f"Empty compound range [{start}, {end})")
        return await self._run(
            'batch_compound', wallet, lambda on_sent: self.platform.batch_compound(wallet, private_key, start, end, on_sent=on_sent), on_stage=on_stage
        )

    async def fund_company_pool(self, wallet: str, private_key: str, amount: int, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        amount = validate_amount(amount)
        return await self._run(
            'fund_company_pool', wallet,
            lambda on_sent: self.platform.fund_company_pool(wallet, private_key, amount, on_sent=on_sent),
            approve_amount=amount, private_key=private_key, on_stage=on_stage,
        )

    async def emergency_withdraw(self, wallet: str, private_key: str, to: str, amount: int, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        to = validate_address(to, "recipient")
        amount = validate_amount(amount)
        return await self._run(
            'emergency_withdraw', wallet,
            lambda on_sent: self.platform.emergency_withdraw(wallet, private_key, to, amount, on_sent=on_sent), on_stage=on_stage,
        )

    async def emergency_reset_account(self, wallet: str, private_key: str, account: str, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        account = validate_address(account, "account")
        result = await self._run(
            'emergency_reset_account', wallet,
            lambda on_sent: self.platform.emergency_reset_user(wallet, private_key, account, on_sent=on_sent), on_stage=on_stage,
        )
        if self.cache is not None:
            self.cache.invalidate(WRITE_INVALIDATES, account)
        return result

    async def transfer_ownership(self, wallet: str, private_key: str, new_owner: str, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        new_owner = validate_address(new_owner, "new_owner")
        return await self._run(
            'transfer_ownership', wallet,
            lambda on_sent: self.platform.transfer_ownership(wallet, private_key, new_owner, on_sent=on_sent), on_stage=on_stage,
        )

    async def block_account(self, wallet: str, private_key: str, account: str, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        account = validate_address(account, "account")
        return await self._run(
            'block_account', wallet, lambda on_sent: self.platform.block_user(wallet, private_key, account, on_sent=on_sent), on_stage=on_stage
        )

    async def unblock_account(self, wallet: str, private_key: str, account: str, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        wallet = validate_address(wallet, "wallet")
        account = validate_address(account, "account")
        return await self._run(
            'unblock_account', wallet, lambda on_sent: self.platform.unblock_user(wallet, private_key, account, on_sent=on_sent), on_stage=on_stage
        )

    # ============================================================
    # Dispatch
    # ============================================================

    OPERATIONS = (
        'stake', 'stake_usd', 'unstake', 'claim_rewards', 'buy_bond', 'withdraw_bond', 'approve',
        'set_daily_rate', 'batch_compound', 'fund_company_pool', 'emergency_withdraw',
        'emergency_reset_account', 'transfer_ownership', 'block_account', 'unblock_account',
    )

    async def execute(
        self,
        operation: str,
        wallet: str,
        private_key: str,
        params: Optional[Dict[str, Any]] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> Dict[str, Any]:
        """Run a write by name, e.g. ``execute('stake', wallet, key, {'amount': 10**18})``"""
        if operation not in self.OPERATIONS:
            raise LedgerValidationError(f"Unknown write operation: {operation!r}")
        method = getattr(self, operation)
        params = params or {}
        try:
            inspect.signature(method).bind(wallet, private_key, on_stage=on_stage, **params)
        except TypeError as e:
            raise LedgerValidationError(f"Bad parameters for {operation}: {e}") from e
        return await method(wallet, private_key, on_stage=on_stage, **params)
