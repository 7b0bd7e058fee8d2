"""
Tests for the write orchestrator:
1. Referrer resolution
2. Allowance buffering and the approve-before-act sequence
3. Refresh after confirmation, cache invalidation
4. Validation before any remote call, revert propagation
"""
import asyncio

import pytest

from conftest import addr
from stakeview.apps.staking.services import read_cache
from stakeview.apps.staking.services.entities import AccountRecord, ZERO_ADDRESS
from stakeview.apps.staking.services.errors import LedgerValidationError, RemoteExecutionError
from stakeview.apps.staking.services.orchestrator import (
    WriteOrchestrator,
    allowance_target,
    needs_approval,
    parse_token_amount,
    resolve_referrer,
)
from stakeview.apps.staking.services.read_cache import ReadCache

CALLER = addr(1)
THIRD_PARTY = addr(2)
DEFAULT = addr(3)
KEY = "0x" + "11" * 32


def _orchestrator(platform, token, cache=None):
    return WriteOrchestrator(platform, token, cache=cache, default_referrer=DEFAULT)


# =============================================================================
# TEST: REFERRER RESOLUTION
# =============================================================================

class TestResolveReferrer:

    def test_picks_valid_third_party(self):
        result = resolve_referrer([ZERO_ADDRESS, CALLER, THIRD_PARTY], CALLER, DEFAULT)
        assert result.lower() == THIRD_PARTY

    def test_caller_match_is_case_insensitive(self):
        result = resolve_referrer([CALLER.upper().replace("0X", "0x"), THIRD_PARTY], CALLER, DEFAULT)
        assert result.lower() == THIRD_PARTY

    def test_falls_back_to_default(self):
        result = resolve_referrer([None, "", "not-an-address", ZERO_ADDRESS, CALLER], CALLER, DEFAULT)
        assert result.lower() == DEFAULT
        assert result.lower() not in (ZERO_ADDRESS, CALLER)

    def test_empty_candidates(self):
        assert resolve_referrer([], CALLER, DEFAULT).lower() == DEFAULT

    def test_configured_default(self):
        from django.conf import settings

        assert resolve_referrer([], CALLER).lower() == settings.DEFAULT_REFERRER.lower()


# =============================================================================
# TEST: ALLOWANCE BUFFER
# =============================================================================

class TestAllowanceBuffer:

    def test_target_for_100_is_101(self):
        assert allowance_target(100) == 101

    def test_rounds_up(self):
        assert allowance_target(1) == 2
        assert allowance_target(250) == 253

    def test_allowance_100_needs_approval(self):
        assert needs_approval(100, 100) is True

    def test_allowance_101_does_not(self):
        assert needs_approval(101, 100) is False

    def test_parse_token_amount(self):
        assert parse_token_amount("1.5") == 15 * 10**17
        with pytest.raises(LedgerValidationError):
            parse_token_amount("0")
        with pytest.raises(LedgerValidationError):
            parse_token_amount("abc")


# =============================================================================
# TEST: WRITE SEQUENCE
# =============================================================================

class TestStake:

    def test_approves_then_stakes(self, platform, token):
        token.balances[CALLER] = 500
        stages = []
        result = asyncio.run(_orchestrator(platform, token).stake(
            CALLER, KEY, 100, referrer=THIRD_PARTY,
            on_stage=lambda stage, **info: stages.append(stage),
        ))

        owner, spender, approved = token.approvals[0]
        assert owner.lower() == CALLER
        assert spender == platform.contract_address
        assert approved == 101
        assert platform.writes[0][0] == "stake"
        amount, referrer = platform.writes[0][2]
        assert amount == 100
        assert referrer.lower() == THIRD_PARTY
        assert result["approve_tx_hash"] is not None
        assert result["tx_hash"].startswith("0x")
        assert stages == ["approving", "approve_sent", "approved", "submitting", "sent", "confirmed"]

    def test_sufficient_allowance_skips_approval(self, platform, token):
        token.allowances[(CALLER, platform.contract_address.lower())] = 101
        result = asyncio.run(_orchestrator(platform, token).stake(CALLER, KEY, 100))
        assert token.approvals == []
        assert result["approve_tx_hash"] is None
        assert len(platform.writes) == 1

    def test_registered_referrer_used_when_none_given(self, platform, token):
        platform.records[CALLER] = AccountRecord(address=CALLER, referrer=THIRD_PARTY)
        asyncio.run(_orchestrator(platform, token).stake(CALLER, KEY, 100))
        assert platform.writes[0][2][1].lower() == THIRD_PARTY

    def test_self_referral_replaced_by_default(self, platform, token):
        asyncio.run(_orchestrator(platform, token).stake(CALLER, KEY, 100, referrer=CALLER))
        assert platform.writes[0][2][1].lower() == DEFAULT

    def test_refresh_after_confirmation(self, platform, token):
        token.balances[CALLER] = 400
        platform.pending[CALLER] = 9
        result = asyncio.run(_orchestrator(platform, token).stake(CALLER, KEY, 100))
        refreshed = result["refreshed"]
        assert refreshed[read_cache.BALANCE] == 400
        assert refreshed[read_cache.PENDING] == 9
        assert refreshed[read_cache.ALLOWANCE] == 101
        assert refreshed[read_cache.ACCOUNT]["address"].lower() == CALLER

    def test_refresh_failure_is_not_raised(self, platform, token):
        token.failing.add(("balance", CALLER))
        result = asyncio.run(_orchestrator(platform, token).stake(CALLER, KEY, 100))
        assert read_cache.BALANCE not in result["refreshed"]
        assert result["tx_hash"]

    def test_cache_invalidated_and_repopulated(self, platform, token):
        cache = ReadCache(ttl=60)
        stale_key = ReadCache.key(read_cache.REPORT, CALLER)
        cache.set(stale_key, "stale")
        cache.set(ReadCache.key(read_cache.BALANCE, addr(99)), 1)
        token.balances[CALLER] = 7

        asyncio.run(_orchestrator(platform, token, cache).stake(CALLER, KEY, 100))

        assert cache.get(stale_key) == (False, None)
        assert cache.get(ReadCache.key(read_cache.BALANCE, CALLER)) == (True, 7)
        assert cache.get(ReadCache.key(read_cache.BALANCE, addr(99))) == (True, 1)


class TestFailures:

    @pytest.mark.parametrize("amount", [0, -5, "100", 1.5, True, None])
    def test_bad_amount_rejected_before_remote_calls(self, platform, token, amount):
        with pytest.raises(LedgerValidationError):
            asyncio.run(_orchestrator(platform, token).stake(CALLER, KEY, amount))
        assert platform.writes == []
        assert token.approvals == []

    def test_bad_wallet_rejected(self, platform, token):
        with pytest.raises(LedgerValidationError):
            asyncio.run(_orchestrator(platform, token).unstake("0x123", KEY, 5))

    def test_revert_propagates_and_skips_refresh(self, platform, token):
        platform.revert_writes = True
        cache = ReadCache(ttl=60)
        cache.set(ReadCache.key(read_cache.BALANCE, CALLER), 1)
        with pytest.raises(RemoteExecutionError, match="not allowed"):
            asyncio.run(_orchestrator(platform, token, cache).unstake(CALLER, KEY, 5))
        assert cache.get(ReadCache.key(read_cache.BALANCE, CALLER)) == (True, 1)

    def test_failed_approval_stops_the_write(self, platform, token):
        token.fail_approve = True
        with pytest.raises(RemoteExecutionError, match="Approval failed"):
            asyncio.run(_orchestrator(platform, token).fund_company_pool(CALLER, KEY, 100))
        assert platform.writes == []

    def test_empty_compound_range(self, platform, token):
        with pytest.raises(LedgerValidationError):
            asyncio.run(_orchestrator(platform, token).batch_compound(CALLER, KEY, 5, 5))


class TestOtherWrites:

    def test_buy_bond_needs_allowance(self, platform, token):
        asyncio.run(_orchestrator(platform, token).buy_bond(CALLER, KEY, 1, 1000, referrer=THIRD_PARTY))
        assert token.approvals[0][2] == 1010
        name, _, (plan_id, amount, referrer) = platform.writes[0]
        assert (name, plan_id, amount) == ("buy_bond", 1, 1000)
        assert referrer.lower() == THIRD_PARTY

    def test_claim_rewards_needs_no_allowance(self, platform, token):
        asyncio.run(_orchestrator(platform, token).claim_rewards(CALLER, KEY))
        assert token.approvals == []
        assert platform.writes[0][0] == "claim_rewards"

    def test_set_daily_rate_from_percent(self, platform, token):
        asyncio.run(_orchestrator(platform, token).set_daily_rate(CALLER, KEY, "0.8"))
        assert platform.writes[0][2] == (8 * 10**15,)

    def test_stake_usd_converts_at_ledger_price(self, platform, token):
        platform.token_price = 5 * 10**17
        asyncio.run(_orchestrator(platform, token).stake_usd(CALLER, KEY, "10"))
        assert platform.writes[0][2][0] == 20 * 10**18

    def test_stake_usd_falls_back_to_manual_price(self, platform, token):
        platform.manual_price = 2 * 10**18
        asyncio.run(_orchestrator(platform, token).stake_usd(CALLER, KEY, "10"))
        assert platform.writes[0][2][0] == 5 * 10**18

    def test_execute_dispatches_by_name(self, platform, token):
        result = asyncio.run(_orchestrator(platform, token).execute(
            "batch_compound", CALLER, KEY, {"start": 0, "end": 50}
        ))
        assert result["operation"] == "batch_compound"
        assert platform.writes[0][2] == (0, 50)

    def test_execute_rejects_unknown_operation(self, platform, token):
        with pytest.raises(LedgerValidationError):
            asyncio.run(_orchestrator(platform, token).execute("selfdestruct", CALLER, KEY))

    def test_execute_rejects_bad_params(self, platform, token):
        with pytest.raises(LedgerValidationError):
            asyncio.run(_orchestrator(platform, token).execute("unstake", CALLER, KEY, {"amout": 1}))
        assert platform.writes == []
