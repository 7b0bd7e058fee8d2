"""
Account activity reconstructed from event logs.

The ledger keeps no history of its own, so every history view is rebuilt by
scanning a block window for the events an address took part in. Each
(event, filter) pair is its own query and fails on its own:

- a pruned-history rejection is retried once over the most recent
  ``LOG_SCAN_PRUNED_RETRY_BLOCKS`` blocks
- any other transport failure is retried with the window halved toward the
  chain head, up to ``LOG_SCAN_MAX_ATTEMPTS`` attempts
- a query that still fails contributes nothing; the others are still returned
"""

import asyncio
import dataclasses
import logging
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set

from django.conf import settings
from web3 import AsyncWeb3

from .decoders import to_address, to_int
from .entities import ActivityEvent, ActivityKind, HistoryPage, RoiEntry
from .errors import LedgerError, LedgerValidationError, PrunedHistoryError, TransportError
from .pagination import paginate

logger = logging.getLogger(__name__)

PLATFORM = "platform"
TOKEN = "token"


class LogQuery(NamedTuple):
    kind: ActivityKind
    source: str
    event: str
    # Event argument that must equal the scanned address
    match_arg: str


PLATFORM_QUERIES = (
    LogQuery(ActivityKind.STAKE, PLATFORM, "Staked", "user"),
    LogQuery(ActivityKind.UNSTAKE, PLATFORM, "Unstaked", "user"),
    LogQuery(ActivityKind.COMPOUND, PLATFORM, "Compounded", "user"),
    LogQuery(ActivityKind.CLAIM, PLATFORM, "RewardsClaimed", "user"),
    LogQuery(ActivityKind.REFERRAL_IN, PLATFORM, "ReferralIncome", "receiver"),
    LogQuery(ActivityKind.REFERRAL_OUT, PLATFORM, "ReferralIncome", "from"),
    LogQuery(ActivityKind.BOND_BUY, PLATFORM, "BondPurchased", "user"),
    LogQuery(ActivityKind.BOND_WITHDRAW, PLATFORM, "BondWithdrawn", "user"),
    LogQuery(ActivityKind.LEVEL_CHANGE, PLATFORM, "LevelChanged", "user"),
    LogQuery(ActivityKind.RANK_CHANGE, PLATFORM, "RankChanged", "user"),
)

TOKEN_QUERIES = (
    LogQuery(ActivityKind.TOKEN_TRANSFER_IN, TOKEN, "Transfer", "to"),
    LogQuery(ActivityKind.TOKEN_TRANSFER_OUT, TOKEN, "Transfer", "from"),
)

APPROVAL_QUERIES = (
    LogQuery(ActivityKind.TOKEN_APPROVAL, TOKEN, "Approval", "owner"),
)


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return AsyncWeb3.to_hex(value)


def decode_log(query: LogQuery, log: Any) -> ActivityEvent:
    """Turn one decoded web3 event log into an ActivityEvent"""
    args = log["args"]
    kind = query.kind
    amount: Optional[int] = None
    counterparty: Optional[str] = None
    meta: Dict[str, Any] = {}

    if kind == ActivityKind.STAKE:
        amount = to_int(args.get("amount"), field_name="Staked.amount")
        counterparty = to_address(args.get("referrer"))
    elif kind in (ActivityKind.UNSTAKE, ActivityKind.COMPOUND, ActivityKind.CLAIM):
        amount = to_int(args.get("amount"), field_name=f"{query.event}.amount")
    elif kind == ActivityKind.REFERRAL_IN:
        amount = to_int(args.get("amount"), field_name="ReferralIncome.amount")
        counterparty = to_address(args.get("from"))
        meta["level"] = to_int(args.get("level"), field_name="ReferralIncome.level")
    elif kind == ActivityKind.REFERRAL_OUT:
        amount = to_int(args.get("amount"), field_name="ReferralIncome.amount")
        counterparty = to_address(args.get("receiver"))
        meta["level"] = to_int(args.get("level"), field_name="ReferralIncome.level")
    elif kind == ActivityKind.BOND_BUY:
        amount = to_int(args.get("amount"), field_name="BondPurchased.amount")
        meta["index"] = to_int(args.get("index"), field_name="BondPurchased.index")
        meta["plan_id"] = to_int(args.get("planId"), field_name="BondPurchased.planId")
    elif kind == ActivityKind.BOND_WITHDRAW:
        amount = to_int(args.get("amount"), field_name="BondWithdrawn.amount")
        meta["index"] = to_int(args.get("index"), field_name="BondWithdrawn.index")
    elif kind == ActivityKind.LEVEL_CHANGE:
        meta["old"] = to_int(args.get("oldLevel"), field_name="LevelChanged.oldLevel")
        meta["new"] = to_int(args.get("newLevel"), field_name="LevelChanged.newLevel")
    elif kind == ActivityKind.RANK_CHANGE:
        meta["old"] = to_int(args.get("oldRank"), field_name="RankChanged.oldRank")
        meta["new"] = to_int(args.get("newRank"), field_name="RankChanged.newRank")
    elif kind == ActivityKind.TOKEN_TRANSFER_IN:
        amount = to_int(args.get("value"), field_name="Transfer.value")
        counterparty = to_address(args.get("from"))
    elif kind == ActivityKind.TOKEN_TRANSFER_OUT:
        amount = to_int(args.get("value"), field_name="Transfer.value")
        counterparty = to_address(args.get("to"))
    elif kind == ActivityKind.TOKEN_APPROVAL:
        amount = to_int(args.get("value"), field_name="Approval.value")
        counterparty = to_address(args.get("spender"))

    return ActivityEvent(
        kind=kind,
        tx_hash=_hex(log["transactionHash"]),
        block_number=to_int(log["blockNumber"], field_name="blockNumber"),
        log_index=to_int(log.get("logIndex"), field_name="logIndex"),
        amount=amount,
        counterparty=counterparty,
        meta=meta,
    )


class ActivityScanner:
    """Bounded, retrying event-log scans for one platform/token pair"""

    def __init__(
        self,
        platform,
        token=None,
        lookback: Optional[int] = None,
        pruned_window: Optional[int] = None,
        max_attempts: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        self.platform = platform
        self.token = token
        self.lookback = lookback or settings.LOG_SCAN_LOOKBACK_BLOCKS
        self.pruned_window = pruned_window or settings.LOG_SCAN_PRUNED_RETRY_BLOCKS
        self.max_attempts = max_attempts or settings.LOG_SCAN_MAX_ATTEMPTS
        self.concurrency = concurrency or settings.LOG_SCAN_CONCURRENCY

    def build_queries(
        self,
        include_token: bool = True,
        include_approvals: bool = True,
        kinds: Optional[Iterable[ActivityKind]] = None,
    ) -> List[LogQuery]:
        queries = list(PLATFORM_QUERIES)
        if self.token is not None:
            if include_token:
                queries.extend(TOKEN_QUERIES)
            if include_approvals:
                queries.extend(APPROVAL_QUERIES)
        if kinds is not None:
            wanted = {ActivityKind(k) for k in kinds}
            queries = [q for q in queries if q.kind in wanted]
        return queries

    def _service(self, query: LogQuery):
        return self.token if query.source == TOKEN else self.platform

    async def _query_logs(self, query: LogQuery, address: str, from_block: int, to_block: int) -> List[Any]:
        """Run one query with the pruned / narrowing retry policy; [] when it keeps failing"""
        service = self._service(query)
        filters = {query.match_arg: address}
        start = from_block
        attempts = 0
        pruned_retried = False

        while True:
            attempts += 1
            try:
                logs = await service.get_event_logs(query.event, start, to_block, filters)
                break
            except PrunedHistoryError as e:
                if pruned_retried:
                    logger.warning(f"{query.event}/{query.match_arg} still pruned at [{start}, {to_block}], giving up: {e}")
                    return []
                pruned_retried = True
                start = max(start, to_block - self.pruned_window + 1)
                logger.warning(f"{query.event}/{query.match_arg} hit pruned history, retrying from block {start}")
            except TransportError as e:
                if pruned_retried or attempts >= self.max_attempts:
                    logger.warning(f"{query.event}/{query.match_arg} failed after {attempts} attempts, giving up: {e}")
                    return []
                start = start + (to_block - start + 1) // 2
                logger.warning(f"{query.event}/{query.match_arg} failed ({e}), narrowing to [{start}, {to_block}]")
            except LedgerError as e:
                logger.error(f"{query.event}/{query.match_arg} rejected: {e}")
                return []

        return list(logs)

    async def _bounded_query(self, semaphore, query: LogQuery, address: str, from_block: int, to_block: int) -> List[ActivityEvent]:
        async with semaphore:
            logs = await self._query_logs(query, address, from_block, to_block)
        return [decode_log(query, log) for log in logs]

    async def _block_timestamp(self, semaphore, block_number: int) -> Optional[int]:
        async with semaphore:
            try:
                return await self.platform.get_block_timestamp(block_number)
            except LedgerError as e:
                logger.warning(f"Timestamp of block {block_number} unavailable: {e}")
                return None

    async def resolve_timestamps(self, events: List[ActivityEvent]) -> List[ActivityEvent]:
        """Fill ``timestamp`` with one block read per distinct block"""
        blocks = sorted({e.block_number for e in events})
        if not blocks:
            return events
        semaphore = asyncio.Semaphore(self.concurrency)
        stamps = await asyncio.gather(*[self._block_timestamp(semaphore, b) for b in blocks])
        by_block = dict(zip(blocks, stamps))
        return [dataclasses.replace(e, timestamp=by_block.get(e.block_number)) for e in events]

    async def _window(self, from_block: Optional[int], to_block: Optional[int]):
        if to_block is None:
            to_block = await self.platform.get_block_number()
        if from_block is None:
            from_block = max(0, to_block - self.lookback + 1)
        if from_block < 0 or to_block < 0 or from_block > to_block:
            raise LedgerValidationError(f"Invalid block range [{from_block}, {to_block}]")
        return from_block, to_block

    async def fetch_activity(
        self,
        address: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        include_token: bool = True,
        include_approvals: bool = True,
        kinds: Optional[Iterable[ActivityKind]] = None,
    ) -> List[ActivityEvent]:
        """
        All activity of ``address`` in ``[from_block, to_block]``, newest first.

        Defaults to the last ``LOG_SCAN_LOOKBACK_BLOCKS`` blocks. An unreadable
        chain head yields an empty list.
        """
        address = self.platform.checksum_address(address)
        try:
            from_block, to_block = await self._window(from_block, to_block)
        except LedgerValidationError:
            raise
        except LedgerError as e:
            logger.error(f"Chain head unavailable, no activity for {address}: {e}")
            return []

        queries = self.build_queries(include_token, include_approvals, kinds)
        semaphore = asyncio.Semaphore(self.concurrency)
        results = await asyncio.gather(*[
            self._bounded_query(semaphore, q, address, from_block, to_block) for q in queries
        ])

        seen: Set[tuple] = set()
        events: List[ActivityEvent] = []
        for batch in results:
            for event in batch:
                key = (event.tx_hash.lower(), event.log_index, event.kind)
                if key in seen:
                    continue
                seen.add(key)
                events.append(event)

        events = await self.resolve_timestamps(events)
        events.sort(key=lambda e: e.sort_key)
        logger.debug(f"{len(events)} activity events for {address} in [{from_block}, {to_block}]")
        return events

    # ============================================================
    # History accessors
    # ============================================================

    async def activity_page(
        self,
        address: str,
        page: int = 1,
        page_size: int = 10,
        kinds: Optional[Iterable[ActivityKind]] = None,
        **scan_kwargs,
    ) -> HistoryPage[ActivityEvent]:
        events = await self.fetch_activity(address, kinds=kinds, **scan_kwargs)
        return paginate(events, page, page_size)

    async def stake_history(self, address: str, page: int = 1, page_size: int = 10, **scan_kwargs) -> HistoryPage[ActivityEvent]:
        return await self.activity_page(
            address, page, page_size, kinds=[ActivityKind.STAKE], include_token=False, include_approvals=False, **scan_kwargs
        )

    async def unstake_history(self, address: str, page: int = 1, page_size: int = 10, **scan_kwargs) -> HistoryPage[ActivityEvent]:
        return await self.activity_page(
            address, page, page_size, kinds=[ActivityKind.UNSTAKE], include_token=False, include_approvals=False, **scan_kwargs
        )

    async def _roi_entry(self, semaphore, address: str, index: int) -> RoiEntry:
        async with semaphore:
            try:
                return await self.platform.get_roi_entry(address, index)
            except LedgerError as e:
                logger.warning(f"roiHistory({address}, {index}) failed: {e}")
                return RoiEntry(index=index, amount=0, timestamp=0)

    async def roi_history(self, address: str, page: int = 1, page_size: int = 10) -> HistoryPage[RoiEntry]:
        """
        ROI payouts recorded by the ledger, newest first.

        Only the entries on the requested page are read.
        """
        try:
            report = await self.platform.get_user_report(address)
            count = report.roi_history_count
        except LedgerError as e:
            logger.error(f"ROI history count unavailable for {address}: {e}")
            count = 0

        indexes = paginate(range(count - 1, -1, -1), page, page_size)
        semaphore = asyncio.Semaphore(self.concurrency)
        entries = await asyncio.gather(*[
            self._roi_entry(semaphore, address, i) for i in indexes.items
        ])
        return HistoryPage(
            items=list(entries),
            page=indexes.page,
            page_size=indexes.page_size,
            total_items=indexes.total_items,
            total_pages=indexes.total_pages,
        )
