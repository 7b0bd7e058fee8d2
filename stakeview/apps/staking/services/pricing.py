"""
Token price resolution.

Spot prices come from a two-token pool's reserves; the platform's USD price
comes from the ledger's oracle with the manually configured price as fallback.
"""

import asyncio
import logging
from typing import Optional

from django.conf import settings

from .base_contract import BaseContractService
from .calculations import pool_price
from .decoders import to_address, to_int
from .entities import ZERO_ADDRESS
from .errors import LedgerError
from .token import TokenService

logger = logging.getLogger(__name__)


class PairService(BaseContractService):
    """Read-only access to a liquidity pair contract"""

    def __init__(self, contract_address: str, **kwargs):
        super().__init__(
            contract_address=contract_address,
            abi_path=settings.PAIR_ABI_PATH,
            **kwargs,
        )

    async def get_tokens(self):
        token0, token1 = await asyncio.gather(
            self.call_read_function('token0'),
            self.call_read_function('token1'),
        )
        return to_address(token0), to_address(token1)

    async def get_reserves(self):
        raw = await self.call_read_function('getReserves')
        return to_int(raw[0], field_name='reserve0'), to_int(raw[1], field_name='reserve1')


class PoolPriceService:
    def __init__(self, platform, web3=None):
        self.platform = platform
        self.web3 = web3 or platform.web3

    def _pair(self, pair_address: str) -> PairService:
        return PairService(pair_address, web3=self.web3)

    def _token(self, token_address: str) -> TokenService:
        return TokenService(token_address, web3=self.web3)

    async def get_pool_price(self, pair_address: str, base_token: str) -> int:
        """
        Price of ``base_token`` in the pair's other token (18-decimal fixed point)

        Raises:
            LedgerValidationError: base_token is not in the pair
            TransportError / RemoteExecutionError: a pair read failed
        """
        pair = self._pair(pair_address)
        (token0, token1), (reserve0, reserve1) = await asyncio.gather(
            pair.get_tokens(), pair.get_reserves()
        )
        decimals0, decimals1 = await asyncio.gather(
            self._token(token0).get_decimals(),
            self._token(token1).get_decimals(),
        )
        price = pool_price(base_token, token0, token1, reserve0, reserve1, decimals0, decimals1)
        logger.debug(f"Pool {pair_address}: price of {base_token} = {price}")
        return price

    async def get_token_price_usd(self) -> int:
        """Oracle price when available and non-zero, manual price otherwise; 0 if neither reads"""
        try:
            price = await self.platform.get_token_price_usd()
            if price:
                return price
        except LedgerError as e:
            logger.warning(f"Oracle token price unavailable, using manual price: {e}")
        try:
            return await self.platform.get_manual_token_price()
        except LedgerError as e:
            logger.error(f"Manual token price unavailable: {e}")
            return 0

    async def get_platform_pool_price(self) -> Optional[int]:
        """Spot price of the staking token in the platform's configured price pair"""
        try:
            pair = await self.platform.get_price_pair()
            if pair.lower() == ZERO_ADDRESS:
                return None
            token = await self.platform.get_token_address()
            return await self.get_pool_price(pair, token)
        except LedgerError as e:
            logger.error(f"Pool price unavailable: {e}")
            return None
