"""
Base Web3 Contract Service
Provides common async functionality for interacting with smart contracts
"""

from web3 import AsyncWeb3
from web3.contract import AsyncContract
from web3.exceptions import ContractLogicError, TransactionNotFound
from typing import Optional, Dict, Any, List, Callable
from django.conf import settings
import asyncio
import logging
import json

from .errors import (
    LedgerError,
    LedgerValidationError,
    RemoteExecutionError,
    classify_rpc_error,
)

logger = logging.getLogger(__name__)

# Called with the hex hash once a transaction is broadcast, before its receipt
SentCallback = Callable[[str], None]


class BaseContractService:
    """Base class for async Web3 contract interactions"""

    def __init__(
        self,
        contract_address: str,
        abi_path,
        provider_url: Optional[str] = None,
        web3: Optional[AsyncWeb3] = None,
    ):
        """
        Initialize the contract service

        Args:
            contract_address: The deployed contract address
            abi_path: Path to the contract ABI JSON file
            provider_url: Optional Web3 provider URL (defaults to settings)
            web3: Optional pre-built AsyncWeb3 instance shared between services
        """
        self.provider_url = provider_url or settings.WEB3_PROVIDER_URL
        self.web3 = web3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.provider_url))

        # Load ABI
        with open(abi_path, 'r') as f:
            self.abi = json.load(f)

        if not contract_address:
            raise LedgerValidationError(f"No contract address configured for {self.__class__.__name__}")

        # Create contract instance
        self.contract_address = self.checksum_address(contract_address)
        self.contract: AsyncContract = self.web3.eth.contract(
            address=self.contract_address,
            abi=self.abi
        )

        logger.info(f"Initialized contract at {self.contract_address}")

    @staticmethod
    def checksum_address(address: str) -> str:
        """Convert address to checksum format"""
        try:
            return AsyncWeb3.to_checksum_address(address)
        except (TypeError, ValueError) as e:
            raise LedgerValidationError(f"Invalid address: {address!r}") from e

    async def build_and_send_transaction(
        self,
        function,
        from_address: str,
        private_key: str,
        value: int = 0,
        gas_multiplier: float = 1.2,
        max_retries: int = 3,
        on_sent: Optional[SentCallback] = None,
    ) -> Dict[str, Any]:
        """
        Build, sign, send a transaction and wait for its receipt, with nonce retry logic

        Args:
            function: Contract function to call
            from_address: Sender address
            private_key: Sender's private key
            value: Native token value to send (in wei)
            gas_multiplier: Multiplier for gas estimation (default 1.2 = 20% buffer)
            max_retries: Maximum number of retry attempts for nonce conflicts (default 3)
            on_sent: Optional callback given the tx hash right after broadcast

        Returns:
            Dict with transaction hash and receipt

        Raises:
            RemoteExecutionError: the ledger reverted or rejected the transaction
        """
        last_error = None

        for attempt in range(max_retries):
            try:
                account = self.web3.eth.account.from_key(private_key)
                from_address = self.checksum_address(from_address)

                # Get nonce (fresh for each attempt)
                nonce = await self.web3.eth.get_transaction_count(from_address, 'pending')

                # Estimate gas
                try:
                    estimated_gas = await function.estimate_gas({'from': from_address, 'value': value})
                    gas_limit = int(estimated_gas * gas_multiplier)
                except ContractLogicError as e:
                    # A revert during estimation will revert on-chain as well
                    raise RemoteExecutionError(str(e)) from e
                except Exception as e:
                    logger.warning(f"Gas estimation failed: {e}. Using default 500000")
                    gas_limit = 500000

                transaction = await function.build_transaction({
                    'from': from_address,
                    'nonce': nonce,
                    'gas': gas_limit,
                    'gasPrice': await self.web3.eth.gas_price,
                    'value': value,
                    'chainId': await self.web3.eth.chain_id,
                })

                signed_txn = account.sign_transaction(transaction)
                tx_hash = await self.web3.eth.send_raw_transaction(signed_txn.raw_transaction)
                logger.info(f"Transaction sent: {self.web3.to_hex(tx_hash)}")
                if on_sent is not None:
                    on_sent(self.web3.to_hex(tx_hash))

                receipt = await self.web3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=settings.TX_RECEIPT_TIMEOUT
                )

                if receipt['status'] == 0:
                    raise RemoteExecutionError("Transaction reverted on-chain", tx_hash=self.web3.to_hex(tx_hash))

                logger.info(f"Transaction confirmed in block {receipt['blockNumber']}")

                # Small delay to ensure nonce updates propagate
                await asyncio.sleep(0.5)

                return {
                    'tx_hash': self.web3.to_hex(tx_hash),
                    'receipt': receipt,
                    'gas_used': receipt['gasUsed'],
                    'block_number': receipt['blockNumber'],
                }

            except LedgerError:
                raise
            except ContractLogicError as e:
                logger.error(f"Contract logic error: {e}")
                raise RemoteExecutionError(str(e)) from e
            except Exception as e:
                error_message = str(e).lower()
                if ('nonce' in error_message or 'replacement transaction underpriced' in error_message) and attempt < max_retries - 1:
                    logger.warning(f"Transaction conflict, retrying... (attempt {attempt + 2}/{max_retries})")
                    await asyncio.sleep(1)
                    last_error = e
                    continue
                logger.error(f"Transaction error: {e}")
                raise classify_rpc_error(e) from e

        # If we get here, all retries failed
        if last_error:
            raise classify_rpc_error(last_error) from last_error
        raise RemoteExecutionError("Transaction failed after maximum retries")

    async def call_read_function(self, function_name: str, *args) -> Any:
        """
        Call a read-only contract function

        Args:
            function_name: Name of the function to call
            *args: Arguments to pass to the function

        Returns:
            Function result

        Raises:
            LedgerError subclass chosen by classify_rpc_error
        """
        try:
            function = getattr(self.contract.functions, function_name)
            return await function(*args).call()
        except Exception as e:
            logger.error(f"Error calling {function_name}{args}: {e}")
            raise classify_rpc_error(e) from e

    async def get_event_logs(
        self,
        event_name: str,
        from_block: int = 0,
        to_block='latest',
        filters: Optional[Dict] = None
    ) -> List[Any]:
        """
        Get event logs from the contract

        Args:
            event_name: Name of the event
            from_block: Starting block number
            to_block: Ending block number or 'latest'
            filters: Optional filters for indexed parameters

        Returns:
            List of event logs
        """
        try:
            event = getattr(self.contract.events, event_name)

            filter_params = {
                'from_block': from_block,
                'to_block': to_block,
            }

            if filters:
                filter_params['argument_filters'] = filters

            return await event.get_logs(**filter_params)

        except Exception as e:
            logger.error(f"Error getting {event_name} logs [{from_block}, {to_block}]: {e}")
            raise classify_rpc_error(e) from e

    async def get_transaction_receipt(self, tx_hash: str):
        """Get transaction receipt, None while the transaction is not mined"""
        try:
            return await self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def get_block_number(self) -> int:
        """Get current block number"""
        try:
            return await self.web3.eth.block_number
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def get_block_timestamp(self, block_number: int) -> int:
        """Get the unix timestamp of a block"""
        try:
            block = await self.web3.eth.get_block(block_number)
            return int(block['timestamp'])
        except Exception as e:
            raise classify_rpc_error(e) from e
