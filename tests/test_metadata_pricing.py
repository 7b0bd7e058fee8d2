"""
Tests for level/rank metadata lookups and price resolution.
"""
import asyncio

import pytest

from conftest import PLATFORM_ADDRESS, addr
from stakeview.apps.staking.services.errors import LedgerValidationError
from stakeview.apps.staking.services.metadata import LevelRankResolver
from stakeview.apps.staking.services.pricing import PoolPriceService
from stakeview.apps.staking.services.staking_platform import StakingPlatformService

PAIR = addr(0xAA)
BASE = addr(0xBB)
QUOTE = addr(0xCC)


@pytest.fixture
def ledger(fake_web3):
    return StakingPlatformService(contract_address=PLATFORM_ADDRESS, web3=fake_web3)


class TestLevelRankResolver:

    def test_level_read_at_zero_based_index(self, fake_web3, ledger):
        requested = []

        def levels(index):
            requested.append(index)
            return (5, 100 * 10**18, 3)

        fake_web3.on(PLATFORM_ADDRESS, functions={"levels": levels})
        info = asyncio.run(LevelRankResolver(ledger).get_level_info(4))
        assert requested == [3]
        assert info.level == 4
        assert info.reward_percent == 5
        assert info.required_directs == 3

    def test_rank_title(self, fake_web3, ledger):
        fake_web3.on(PLATFORM_ADDRESS, functions={"ranks": lambda index: (2, 10**21, 5)})
        info = asyncio.run(LevelRankResolver(ledger).get_rank_info(5))
        assert info.title == "Legacy Ambassador"
        assert info.required_team_business == 10**21

    @pytest.mark.parametrize("value", [0, None, -1])
    def test_no_level_or_rank(self, fake_web3, ledger, value):
        calls = []
        fake_web3.on(PLATFORM_ADDRESS, functions={
            "levels": lambda index: calls.append(index),
            "ranks": lambda index: calls.append(index),
        })
        resolver = LevelRankResolver(ledger)
        assert asyncio.run(resolver.get_level_info(value)) is None
        assert asyncio.run(resolver.get_rank_info(value)) is None
        assert calls == []

    def test_unconfigured_row_is_none(self, fake_web3, ledger):
        fake_web3.on(PLATFORM_ADDRESS, functions={"levels": lambda index: (0, 0, 0)})
        assert asyncio.run(LevelRankResolver(ledger).get_level_info(9)) is None

    def test_read_failure_is_none(self, fake_web3, ledger):
        def broken(index):
            raise ValueError({"code": -32000, "message": "execution reverted"})

        fake_web3.on(PLATFORM_ADDRESS, functions={"ranks": broken})
        assert asyncio.run(LevelRankResolver(ledger).get_rank_info(2)) is None


def make_pool(fake_web3, token0, token1, reserve0, reserve1, decimals0=18, decimals1=18):
    fake_web3.on(PAIR, functions={
        "token0": lambda: token0,
        "token1": lambda: token1,
        "getReserves": lambda: (reserve0, reserve1, 1_700_000_000),
    })
    fake_web3.on(token0, functions={"decimals": lambda: decimals0})
    fake_web3.on(token1, functions={"decimals": lambda: decimals1})


class TestPoolPrice:

    def test_base_is_token0(self, fake_web3, ledger):
        make_pool(fake_web3, BASE, QUOTE, 1000 * 10**18, 250 * 10**18)
        price = asyncio.run(PoolPriceService(ledger).get_pool_price(PAIR, BASE))
        assert price == 25 * 10**16

    def test_base_is_token1(self, fake_web3, ledger):
        make_pool(fake_web3, QUOTE, BASE, 250 * 10**18, 1000 * 10**18)
        price = asyncio.run(PoolPriceService(ledger).get_pool_price(PAIR, BASE))
        assert price == 25 * 10**16

    def test_mixed_decimals(self, fake_web3, ledger):
        make_pool(fake_web3, BASE, QUOTE, 1000 * 10**18, 250 * 10**6, 18, 6)
        price = asyncio.run(PoolPriceService(ledger).get_pool_price(PAIR, BASE))
        assert price == 25 * 10**16

    def test_empty_pool(self, fake_web3, ledger):
        make_pool(fake_web3, BASE, QUOTE, 0, 0)
        assert asyncio.run(PoolPriceService(ledger).get_pool_price(PAIR, BASE)) == 0

    def test_foreign_token(self, fake_web3, ledger):
        make_pool(fake_web3, BASE, QUOTE, 1, 1)
        with pytest.raises(LedgerValidationError):
            asyncio.run(PoolPriceService(ledger).get_pool_price(PAIR, addr(0xDD)))


class TestTokenPriceUsd:

    def test_oracle_price_preferred(self, fake_web3, ledger):
        fake_web3.on(PLATFORM_ADDRESS, functions={
            "getTokenPriceUsd18": lambda: 3 * 10**17,
            "manualTokenPrice": lambda: 10**18,
        })
        assert asyncio.run(PoolPriceService(ledger).get_token_price_usd()) == 3 * 10**17

    def test_zero_oracle_falls_back_to_manual(self, fake_web3, ledger):
        fake_web3.on(PLATFORM_ADDRESS, functions={
            "getTokenPriceUsd18": lambda: 0,
            "manualTokenPrice": lambda: 10**18,
        })
        assert asyncio.run(PoolPriceService(ledger).get_token_price_usd()) == 10**18

    def test_failing_oracle_falls_back_to_manual(self, fake_web3, ledger):
        def broken():
            raise ConnectionError("connection reset")

        fake_web3.on(PLATFORM_ADDRESS, functions={
            "getTokenPriceUsd18": broken,
            "manualTokenPrice": lambda: 2 * 10**18,
        })
        assert asyncio.run(PoolPriceService(ledger).get_token_price_usd()) == 2 * 10**18

    def test_platform_pool_price(self, fake_web3, ledger):
        make_pool(fake_web3, BASE, QUOTE, 4 * 10**18, 10**18)
        fake_web3.on(PLATFORM_ADDRESS, functions={"pricePair": lambda: PAIR, "token": lambda: BASE})
        assert asyncio.run(PoolPriceService(ledger).get_platform_pool_price()) == 25 * 10**16

    def test_no_price_pair(self, fake_web3, ledger):
        fake_web3.on(PLATFORM_ADDRESS, functions={"pricePair": lambda: "0x" + "0" * 40})
        assert asyncio.run(PoolPriceService(ledger).get_platform_pool_price()) is None
