"""
Staking token (ERC20) Contract Service
Handles balances, allowances and approvals for the token staked on the platform
"""

from typing import Optional, Dict, Any
from django.conf import settings
import logging
from .base_contract import BaseContractService, SentCallback
from .decoders import to_int

logger = logging.getLogger(__name__)


class TokenService(BaseContractService):
    """Service for interacting with an ERC20 token contract"""

    def __init__(self, contract_address: Optional[str] = None, **kwargs):
        super().__init__(
            contract_address=contract_address or settings.STAKING_TOKEN_ADDRESS,
            abi_path=settings.ERC20_ABI_PATH,
            **kwargs,
        )

    # ============================================================
    # READ-ONLY FUNCTIONS
    # ============================================================

    async def get_balance(self, address: str) -> int:
        """Token balance of an address in base units"""
        address = self.checksum_address(address)
        return to_int(await self.call_read_function('balanceOf', address), field_name='balanceOf')

    async def get_allowance(self, owner: str, spender: str) -> int:
        """
        Get approved allowance

        Args:
            owner: Token owner address
            spender: Spender address

        Returns:
            Allowance in base units
        """
        owner = self.checksum_address(owner)
        spender = self.checksum_address(spender)
        return to_int(await self.call_read_function('allowance', owner, spender), field_name='allowance')

    async def get_decimals(self) -> int:
        return to_int(await self.call_read_function('decimals'), default=18, field_name='decimals')

    # ============================================================
    # WRITE FUNCTIONS
    # ============================================================

    async def approve(
        self,
        owner_address: str,
        spender_address: str,
        amount: int,
        private_key: str,
        on_sent: Optional[SentCallback] = None,
    ) -> Dict[str, Any]:
        """
        Approve spender to spend tokens on behalf of owner

        Args:
            owner_address: Token owner address
            spender_address: Address allowed to spend tokens
            amount: Allowance in base units
            private_key: Owner's private key
            on_sent: Optional callback given the tx hash right after broadcast

        Returns:
            Transaction details
        """
        spender_address = self.checksum_address(spender_address)

        logger.info(f"Approving {spender_address} to spend {amount} base units for {owner_address}")

        function = self.contract.functions.approve(spender_address, amount)

        result = await self.build_and_send_transaction(
            function=function,
            from_address=owner_address,
            private_key=private_key,
            on_sent=on_sent,
        )

        logger.info(f"Approved {amount} for {spender_address} (tx: {result['tx_hash']})")
        return result
