"""
Record decoders.

Turn positional tuples returned by the staking ledger into typed records.
Decoding never raises: anything that cannot be parsed becomes zero so that a
single malformed record renders as an empty entity instead of aborting a batch.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence

from .entities import (
    ZERO_ADDRESS,
    AccountRecord,
    BondPlan,
    BondPosition,
    BondStatus,
    LevelInfo,
    RankInfo,
    RoiEntry,
    UserReport,
)
from .errors import DecodeError

logger = logging.getLogger(__name__)

# uint8 max is stored by the ledger when an account has no level
NO_LEVEL_SENTINEL = 255
MAX_SANE_LEVEL = 1_000_000

RANK_NAMES = {
    1: "Visionary",
    2: "Mentorink",
    3: "Peak Performer",
    4: "King Maker",
    5: "Legacy Ambassador",
}


def _parse_int(value: Any) -> int:
    if value is None:
        raise DecodeError("missing value")
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big") if value else 0
    if isinstance(value, Decimal):
        return int(value)
    text = str(value).strip()
    try:
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(Decimal(text))
    except (InvalidOperation, ValueError) as e:
        raise DecodeError(f"not a number: {value!r}") from e


def to_int(value: Any, default: int = 0, field_name: str = "value") -> int:
    """Coerce a ledger value to a non-negative int, falling back to ``default``."""
    try:
        parsed = _parse_int(value)
    except DecodeError as e:
        if value is not None:
            logger.warning(f"Could not decode {field_name}: {e}; using {default}")
        return default
    if parsed < 0:
        logger.warning(f"Negative {field_name} {parsed} from ledger; using {default}")
        return default
    return parsed


def to_address(value: Any) -> str:
    if isinstance(value, str) and value.startswith("0x") and len(value) == 42:
        return value
    if value not in (None, ""):
        logger.warning(f"Could not decode address {value!r}; using zero address")
    return ZERO_ADDRESS


def normalize_level(value: Any) -> int:
    level = to_int(value, field_name="level")
    if level == NO_LEVEL_SENTINEL or level > MAX_SANE_LEVEL:
        return 0
    return level


def _field(raw: Optional[Sequence[Any]], index: int) -> Any:
    try:
        return raw[index]
    except (IndexError, KeyError, TypeError):
        return None


def decode_account_record(address: str, raw: Optional[Sequence[Any]]) -> AccountRecord:
    """
    Decode the ``users(address)`` tuple:

    [0] originalStaked, [1] originalUsdLocked, [2] selfStaked,
    [3] selfStakedUsdLocked, [4] activeBondValue, [5] lastAccruedAt,
    [6] referrer, [7] directs, [8] level, [9] rank, [10] totalRoiEarned,
    [11] totalLevelRewardEarned, [12] totalReferralIncome, [13] totalWithdrawn
    """
    if not raw:
        return AccountRecord.zero(address)

    def num(i: int, name: str) -> int:
        return to_int(_field(raw, i), field_name=name)

    return AccountRecord(
        address=address,
        original_staked=num(0, "originalStaked"),
        original_usd_locked=num(1, "originalUsdLocked"),
        self_staked=num(2, "selfStaked"),
        self_staked_usd_locked=num(3, "selfStakedUsdLocked"),
        active_bond_value=num(4, "activeBondValue"),
        last_accrued_at=num(5, "lastAccruedAt"),
        referrer=to_address(_field(raw, 6)),
        direct_count=num(7, "directs"),
        level=normalize_level(_field(raw, 8)),
        rank=num(9, "rank"),
        total_roi_earned=num(10, "totalRoiEarned"),
        total_level_reward_earned=num(11, "totalLevelRewardEarned"),
        total_referral_income=num(12, "totalReferralIncome"),
        total_withdrawn=num(13, "totalWithdrawn"),
    )


def decode_user_report(raw: Optional[Sequence[Any]]) -> UserReport:
    if not raw:
        return UserReport()
    names = (
        "self_staked",
        "active_bond_value",
        "pending_roi",
        "total_roi_earned",
        "total_level_reward_earned",
        "total_referral_income",
        "total_withdrawn",
        "roi_history_count",
    )
    return UserReport(**{name: to_int(_field(raw, i), field_name=name) for i, name in enumerate(names)})


def decode_roi_entry(index: int, raw: Optional[Sequence[Any]]) -> RoiEntry:
    return RoiEntry(
        index=index,
        amount=to_int(_field(raw, 0), field_name="roi.amount"),
        timestamp=to_int(_field(raw, 1), field_name="roi.timestamp"),
    )


def decode_bond_plan(plan_id: int, raw: Optional[Sequence[Any]]) -> BondPlan:
    if not raw:
        return BondPlan(plan_id=plan_id)
    return BondPlan(
        plan_id=plan_id,
        duration=to_int(_field(raw, 0), field_name="plan.duration"),
        reward_percent=to_int(_field(raw, 1), field_name="plan.rewardPercent"),
        exists=bool(_field(raw, 2)),
    )


def decode_bond(
    index: int,
    raw: Optional[Sequence[Any]],
    plan: Optional[BondPlan] = None,
    status: BondStatus = BondStatus.ACTIVE,
) -> BondPosition:
    """Decode ``userBonds(address, index)``: planId, principal, reward, startAt, withdrawn."""
    return BondPosition(
        index=index,
        plan_id=to_int(_field(raw, 0), field_name="bond.planId"),
        principal=to_int(_field(raw, 1), field_name="bond.principal"),
        reward=to_int(_field(raw, 2), field_name="bond.reward"),
        start_at=to_int(_field(raw, 3), field_name="bond.startAt"),
        withdrawn=bool(_field(raw, 4)),
        duration=plan.duration if plan else 0,
        reward_percent=plan.reward_percent if plan else 0,
        status=status,
    )


def decode_level_info(level: int, raw: Optional[Sequence[Any]]) -> Optional[LevelInfo]:
    if not raw:
        return None
    return LevelInfo(
        level=level,
        reward_percent=to_int(_field(raw, 0), field_name="level.rewardPercent"),
        required_self_stake=to_int(_field(raw, 1), field_name="level.requiredSelfStake"),
        required_directs=to_int(_field(raw, 2), field_name="level.requiredDirects"),
        title=f"Level {level}",
    )


def decode_rank_info(rank: int, raw: Optional[Sequence[Any]]) -> Optional[RankInfo]:
    if not raw:
        return None
    return RankInfo(
        rank=rank,
        reward_percent=to_int(_field(raw, 0), field_name="rank.rewardPercent"),
        required_team_business=to_int(_field(raw, 1), field_name="rank.requiredTeamBusiness"),
        required_directs=to_int(_field(raw, 2), field_name="rank.requiredDirects"),
        title=RANK_NAMES.get(rank, f"Rank {rank}"),
    )


def shorten_address(address: Optional[str]) -> str:
    """``0x1234...abcd`` for display; the zero address reads as "No referrer"."""
    if not address:
        return ""
    if address.lower() == ZERO_ADDRESS:
        return "No referrer"
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


def format_units(raw: Any, decimals: int = 18) -> str:
    """Render base units as a plain decimal string, e.g. 1500000000000000000 -> "1.5"."""
    value = to_int(raw, field_name="amount")
    if value == 0:
        return "0"
    whole, frac = divmod(value, 10 ** decimals)
    if decimals == 0 or frac == 0:
        return str(whole)
    frac_text = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{frac_text}"
