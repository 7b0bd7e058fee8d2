"""
Error taxonomy for ledger access.

Every failure coming out of web3 / the RPC provider is mapped into one of
these classes by ``classify_rpc_error``. Callers branch on the class, never
on provider message text.
"""

import asyncio
from typing import Optional

from web3.exceptions import ContractLogicError, TimeExhausted


class LedgerError(RuntimeError):
    """Base class for every error raised by the staking services."""


class LedgerValidationError(LedgerError, ValueError):
    """Input rejected locally before any remote call was made."""


class DecodeError(LedgerError):
    """A remote value could not be parsed into its expected form."""


class TransportError(LedgerError):
    """Network, timeout or provider failure on a read."""


class PrunedHistoryError(TransportError):
    """Provider refused a log query because the range is past its retention horizon."""


class RemoteExecutionError(LedgerError):
    """A write (or a read) was reverted or rejected by the ledger."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


_PRUNED_MARKERS = (
    "pruned",
    "missing trie node",
    "header not found",
    "history not available",
    "historical state",
    "ancient block",
    "beyond the retention",
    "not available on this node",
)

_REVERT_MARKERS = (
    "execution reverted",
    "revert",
    "insufficient funds",
    "gas required exceeds allowance",
    "user rejected",
    "denied transaction",
)

_TRANSPORT_MARKERS = (
    "timeout",
    "timed out",
    "too many requests",
    "rate limit",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "connection reset",
    "connection refused",
    "cannot connect",
    "internal error",
    "query returned more than",
    "response size exceeded",
    "block range too wide",
    "limit exceeded",
)


def _message_of(exc: BaseException) -> str:
    # web3 RPC errors often carry a dict {"code": ..., "message": ...} as first arg
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("message") or exc.args[0])
    return str(exc) or exc.__class__.__name__


def classify_rpc_error(exc: BaseException) -> LedgerError:
    """
    Map a provider/web3 failure onto the ledger error taxonomy.

    This is the only place where provider-specific message substrings are
    inspected.
    """
    if isinstance(exc, LedgerError):
        return exc

    message = _message_of(exc)
    lowered = message.lower()

    if isinstance(exc, ContractLogicError):
        return RemoteExecutionError(message)
    if any(marker in lowered for marker in _PRUNED_MARKERS):
        return PrunedHistoryError(message)
    if isinstance(exc, (asyncio.TimeoutError, TimeExhausted, ConnectionError)):
        return TransportError(message)
    if any(marker in lowered for marker in _REVERT_MARKERS):
        return RemoteExecutionError(message)
    if any(marker in lowered for marker in _TRANSPORT_MARKERS):
        return TransportError(message)
    if isinstance(exc, OSError):
        return TransportError(message)

    return TransportError(message)
