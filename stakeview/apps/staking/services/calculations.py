"""
Derived values computed locally from ledger reads.

All amounts are integers in base units (18-decimal fixed point) so results
match the ledger's own integer arithmetic.
"""

import logging
import time
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Optional

from .decoders import to_int
from .entities import AccountRecord, BondStatus, DerivedReport
from .errors import LedgerValidationError

logger = logging.getLogger(__name__)

RATE_DECIMALS = 10**18
SECONDS_PER_DAY = 86400
PRICE_DECIMALS = 18

# Used when the ledger's dailyRate cannot be read (1e16 == 1% per day)
DEFAULT_DAILY_RATE = 10**16


def now_ts() -> int:
    return int(time.time())


def simulate_pending_reward(
    self_staked: int,
    last_accrued_at: int,
    daily_rate: Optional[int] = None,
    now: Optional[int] = None,
) -> int:
    """
    Replay the ledger's accrual formula:
    ``self_staked * daily_rate * elapsed / 1e18 / 86400``.
    """
    if self_staked <= 0 or last_accrued_at <= 0:
        return 0
    if not daily_rate or daily_rate < 0:
        daily_rate = DEFAULT_DAILY_RATE
    now = now_ts() if now is None else now
    elapsed = max(0, now - last_accrued_at)
    return self_staked * daily_rate * elapsed // RATE_DECIMALS // SECONDS_PER_DAY


def resolve_pending_roi(onchain: Optional[int], simulated: int) -> int:
    """The ledger's pendingRewards wins whenever it is non-zero."""
    if onchain:
        return onchain
    return simulated


def build_derived_report(
    record: AccountRecord,
    onchain_pending: Optional[int],
    daily_rate: Optional[int],
    now: Optional[int] = None,
) -> DerivedReport:
    simulated = simulate_pending_reward(record.self_staked, record.last_accrued_at, daily_rate, now)
    pending = resolve_pending_roi(onchain_pending, simulated)
    if onchain_pending and simulated and onchain_pending != simulated:
        logger.debug(
            f"pendingRewards for {record.address}: ledger={onchain_pending} simulated={simulated}"
        )
    return DerivedReport(
        pending_roi_onchain=onchain_pending or 0,
        pending_roi_simulated=simulated,
        pending_roi=pending,
        stake_with_accrued=record.self_staked + record.active_bond_value + pending,
    )


# ============================================================
# Bonds
# ============================================================

_STATUS_ORDER = {BondStatus.ACTIVE: 0, BondStatus.MATURED: 1, BondStatus.WITHDRAWN: 2}


def bond_status(withdrawn: bool, start_at: int, duration: int, now: Optional[int] = None) -> BondStatus:
    if withdrawn:
        return BondStatus.WITHDRAWN
    now = now_ts() if now is None else now
    if now >= start_at + duration:
        return BondStatus.MATURED
    return BondStatus.ACTIVE


def advance_bond_status(previous: Optional[BondStatus], observed: BondStatus) -> BondStatus:
    """Combine a previously seen status with a fresh one; status only moves forward."""
    if previous is None:
        return observed
    if _STATUS_ORDER[observed] < _STATUS_ORDER[previous]:
        return previous
    return observed


# ============================================================
# Prices
# ============================================================

def scale_to_18(amount: int, decimals: int) -> int:
    if decimals == PRICE_DECIMALS:
        return amount
    if decimals < PRICE_DECIMALS:
        return amount * 10 ** (PRICE_DECIMALS - decimals)
    return amount // 10 ** (decimals - PRICE_DECIMALS)


def spot_price(reserve_base: int, reserve_quote: int, base_decimals: int = 18, quote_decimals: int = 18) -> int:
    """Price of one base token in quote tokens, 18-decimal fixed point."""
    base_scaled = scale_to_18(reserve_base, base_decimals)
    quote_scaled = scale_to_18(reserve_quote, quote_decimals)
    if base_scaled == 0 or quote_scaled == 0:
        return 0
    return quote_scaled * 10**PRICE_DECIMALS // base_scaled


def pool_price(
    base_token: str,
    token0: str,
    token1: str,
    reserve0: int,
    reserve1: int,
    decimals0: int = 18,
    decimals1: int = 18,
) -> int:
    """Spot price of ``base_token`` against the other side of a two-token pool."""
    base = base_token.lower()
    if base == token0.lower():
        return spot_price(reserve0, reserve1, decimals0, decimals1)
    if base == token1.lower():
        return spot_price(reserve1, reserve0, decimals1, decimals0)
    raise LedgerValidationError(f"{base_token} is not one of the pool tokens")


# ============================================================
# Daily rate
# ============================================================

def format_daily_rate(raw: Any) -> str:
    """1e18 fixed-point fraction -> percentage with 3 decimals, e.g. 8e15 -> "0.800"."""
    if raw is None:
        return "0.000"
    rate = to_int(raw, field_name="dailyRate")
    percent = Decimal(rate) * 100 / Decimal(RATE_DECIMALS)
    return str(percent.quantize(Decimal("0.001"), rounding=ROUND_DOWN))


def daily_rate_from_percent(percent: Any) -> int:
    """Percentage per day ("0.8") -> 1e18 fixed-point fraction (8e15)."""
    try:
        value = Decimal(str(percent).strip())
    except (InvalidOperation, ValueError) as e:
        raise LedgerValidationError(f"Invalid daily rate percent: {percent!r}") from e
    if not value.is_finite() or value <= 0 or value > 100:
        raise LedgerValidationError(f"Daily rate percent must be in (0, 100], got {percent!r}")
    return int(value * RATE_DECIMALS / 100)


def usd_to_token_amount(usd_amount_18: int, token_price_usd_18: int) -> int:
    """Token base units worth ``usd_amount_18`` at an 18-decimal USD price."""
    if token_price_usd_18 <= 0:
        raise LedgerValidationError("Token price is unavailable")
    return usd_amount_18 * 10**PRICE_DECIMALS // token_price_usd_18
