"""Typed records produced by the decoders and the aggregation services."""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

T = TypeVar("T")


@dataclass(frozen=True)
class AccountRecord:
    """Per-address record as stored by the staking ledger (base units)."""

    address: str
    original_staked: int = 0
    original_usd_locked: int = 0
    self_staked: int = 0
    self_staked_usd_locked: int = 0
    active_bond_value: int = 0
    last_accrued_at: int = 0
    referrer: str = ZERO_ADDRESS
    direct_count: int = 0
    level: int = 0
    rank: int = 0
    total_roi_earned: int = 0
    total_level_reward_earned: int = 0
    total_referral_income: int = 0
    total_withdrawn: int = 0

    @classmethod
    def zero(cls, address: str) -> "AccountRecord":
        return cls(address=address)

    @property
    def has_referrer(self) -> bool:
        return bool(self.referrer) and self.referrer.lower() != ZERO_ADDRESS

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DerivedReport:
    pending_roi_onchain: int
    pending_roi_simulated: int
    pending_roi: int
    stake_with_accrued: int


@dataclass(frozen=True)
class UserReport:
    self_staked: int = 0
    active_bond_value: int = 0
    pending_roi: int = 0
    total_roi_earned: int = 0
    total_level_reward_earned: int = 0
    total_referral_income: int = 0
    total_withdrawn: int = 0
    roi_history_count: int = 0


@dataclass(frozen=True)
class RoiEntry:
    index: int
    amount: int
    timestamp: int


class BondStatus(str, Enum):
    ACTIVE = "Active"
    MATURED = "Matured"
    WITHDRAWN = "Withdrawn"


@dataclass(frozen=True)
class BondPlan:
    plan_id: int
    duration: int = 0
    reward_percent: int = 0
    exists: bool = False


@dataclass(frozen=True)
class BondPosition:
    index: int
    plan_id: int
    principal: int
    reward: int
    start_at: int
    withdrawn: bool
    duration: int = 0
    reward_percent: int = 0
    status: BondStatus = BondStatus.ACTIVE

    @property
    def end_at(self) -> int:
        return self.start_at + self.duration

    @property
    def total(self) -> int:
        return self.principal + self.reward


@dataclass(frozen=True)
class LevelInfo:
    level: int
    reward_percent: int
    required_self_stake: int
    required_directs: int
    title: str


@dataclass(frozen=True)
class RankInfo:
    rank: int
    reward_percent: int
    required_team_business: int
    required_directs: int
    title: str


class ActivityKind(str, Enum):
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    COMPOUND = "COMPOUND"
    CLAIM = "CLAIM"
    REFERRAL_IN = "REFERRAL_IN"
    REFERRAL_OUT = "REFERRAL_OUT"
    BOND_BUY = "BOND_BUY"
    BOND_WITHDRAW = "BOND_WITHDRAW"
    LEVEL_CHANGE = "LEVEL_CHANGE"
    RANK_CHANGE = "RANK_CHANGE"
    TOKEN_TRANSFER_IN = "TOKEN_TRANSFER_IN"
    TOKEN_TRANSFER_OUT = "TOKEN_TRANSFER_OUT"
    TOKEN_APPROVAL = "TOKEN_APPROVAL"


@dataclass(frozen=True)
class ActivityEvent:
    kind: ActivityKind
    tx_hash: str
    block_number: int
    log_index: int = 0
    timestamp: Optional[int] = None
    amount: Optional[int] = None
    counterparty: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self):
        return (-self.block_number, self.tx_hash, self.log_index)


@dataclass(frozen=True)
class MemberDetail:
    address: str
    record: AccountRecord
    referral_income: Optional[int] = None
    hydrated: bool = True


@dataclass(frozen=True)
class DirectEntry:
    address: str
    referral_income: int


@dataclass
class HistoryPage(Generic[T]):
    items: List[T]
    page: int
    page_size: int
    total_items: int
    total_pages: int


@dataclass
class UsersBatch:
    total: Optional[int]
    items: List[MemberDetail]


@dataclass(frozen=True)
class CompanyPoolStatus:
    pool_balance: int
    contract_token_balance: int
