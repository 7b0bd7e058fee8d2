"""
Shared fixtures: Django settings plus in-memory stand-ins for the ledger,
the token and Redis.
"""
import os

import django
import pytest

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "stakeview.settings")
django.setup()

from stakeview.apps.staking.services.base_contract import BaseContractService  # noqa: E402
from stakeview.apps.staking.services.entities import AccountRecord, DirectEntry  # noqa: E402
from stakeview.apps.staking.services.errors import RemoteExecutionError, TransportError  # noqa: E402


def addr(n: int) -> str:
    """Deterministic lowercase address for test account ``n``."""
    return "0x" + f"{n:040x}"


PLATFORM_ADDRESS = addr(0xFEED)
TOKEN_ADDRESS = addr(0xBEEF)


# =============================================================================
# LEDGER FAKES (service level)
# =============================================================================

class FakePlatform:
    """Duck-typed StakingPlatformService backed by dicts."""

    contract_address = BaseContractService.checksum_address(PLATFORM_ADDRESS)
    checksum_address = staticmethod(BaseContractService.checksum_address)

    def __init__(self):
        self.records = {}
        self.directs = {}
        self.users = []
        self.total_users = None
        self.pending = {}
        self.failing = set()
        self.writes = []
        self.revert_writes = False
        self.during_write = None
        self.token_price = 0
        self.manual_price = 0

    def _check(self, *tag):
        if tag in self.failing:
            raise TransportError(f"simulated failure for {tag}")

    async def get_account_record(self, address):
        self._check("account", address.lower())
        return self.records.get(address.lower(), AccountRecord.zero(address))

    async def get_pending_rewards(self, address):
        self._check("pending", address.lower())
        return self.pending.get(address.lower(), 0)

    async def get_user_directs(self, address):
        self._check("directs", address.lower())
        return list(self.directs.get(address.lower(), []))

    async def get_total_users(self):
        self._check("total_users")
        return len(self.users) if self.total_users is None else self.total_users

    async def get_user_at(self, index):
        self._check("user_at", index)
        if index >= len(self.users):
            raise RemoteExecutionError("execution reverted: index out of range")
        return self.users[index]

    async def get_token_price_usd(self):
        self._check("token_price")
        return self.token_price

    async def get_manual_token_price(self):
        self._check("manual_price")
        return self.manual_price

    async def _write(self, name, wallet, *args, on_sent=None):
        if self.revert_writes:
            raise RemoteExecutionError(f"execution reverted: {name} not allowed")
        self.writes.append((name, wallet, args))
        tx_hash = f"0x{len(self.writes):064x}"
        if on_sent is not None:
            on_sent(tx_hash)
        if self.during_write is not None:
            self.during_write()
        return {"tx_hash": tx_hash, "block_number": 100 + len(self.writes), "gas_used": 21000}

    async def stake(self, wallet, private_key, amount, referrer, on_sent=None):
        return await self._write("stake", wallet, amount, referrer, on_sent=on_sent)

    async def unstake(self, wallet, private_key, amount, on_sent=None):
        return await self._write("unstake", wallet, amount, on_sent=on_sent)

    async def claim_rewards(self, wallet, private_key, on_sent=None):
        return await self._write("claim_rewards", wallet, on_sent=on_sent)

    async def buy_bond(self, wallet, private_key, plan_id, amount, referrer, on_sent=None):
        return await self._write("buy_bond", wallet, plan_id, amount, referrer, on_sent=on_sent)

    async def fund_company_pool(self, wallet, private_key, amount, on_sent=None):
        return await self._write("fund_company_pool", wallet, amount, on_sent=on_sent)

    async def set_daily_rate(self, wallet, private_key, rate, on_sent=None):
        return await self._write("set_daily_rate", wallet, rate, on_sent=on_sent)

    async def batch_compound(self, wallet, private_key, start, end, on_sent=None):
        return await self._write("batch_compound", wallet, start, end, on_sent=on_sent)


class FakeToken:
    """Duck-typed TokenService with a balance and allowance table."""

    def __init__(self):
        self.balances = {}
        self.allowances = {}
        self.approvals = []
        self.fail_approve = False
        self.failing = set()

    async def get_balance(self, address):
        if ("balance", address.lower()) in self.failing:
            raise TransportError("balance read failed")
        return self.balances.get(address.lower(), 0)

    async def get_allowance(self, owner, spender):
        return self.allowances.get((owner.lower(), spender.lower()), 0)

    async def approve(self, owner_address, spender_address, amount, private_key, on_sent=None):
        if self.fail_approve:
            raise RemoteExecutionError("execution reverted: approve failed")
        self.approvals.append((owner_address, spender_address, amount))
        self.allowances[(owner_address.lower(), spender_address.lower())] = amount
        tx_hash = f"0xa{len(self.approvals):063x}"
        if on_sent is not None:
            on_sent(tx_hash)
        return {"tx_hash": tx_hash, "block_number": 50, "gas_used": 46000}


def link(platform, upline, *downlines, income=0):
    """Register ``downlines`` as directs of ``upline``."""
    platform.directs.setdefault(upline.lower(), []).extend(
        DirectEntry(address=d, referral_income=income) for d in downlines
    )


# =============================================================================
# WEB3 FAKES (contract level)
# =============================================================================

class FakeCall:
    def __init__(self, handler, args):
        self.handler = handler
        self.args = args

    async def call(self):
        return self.handler(*self.args)


class FakeFunctions:
    def __init__(self, handlers):
        self._handlers = handlers

    def __getattr__(self, name):
        try:
            handler = self._handlers[name]
        except KeyError:
            raise AttributeError(name)
        return lambda *args: FakeCall(handler, args)


class FakeEvent:
    def __init__(self, name, handler):
        self.name = name
        self.handler = handler

    async def get_logs(self, from_block=None, to_block=None, argument_filters=None):
        return self.handler(from_block, to_block, argument_filters)


class FakeEvents:
    def __init__(self, handlers):
        self._handlers = handlers

    def __getattr__(self, name):
        try:
            return FakeEvent(name, self._handlers[name])
        except KeyError:
            raise AttributeError(name)


class FakeContract:
    def __init__(self, address, functions=None, events=None):
        self.address = address
        self.functions = FakeFunctions(functions if functions is not None else {})
        self.events = FakeEvents(events if events is not None else {})


class FakeEth:
    def __init__(self, web3):
        self._web3 = web3

    def contract(self, address, abi):
        entry = self._web3.contracts.setdefault(address.lower(), {"functions": {}, "events": {}})
        return FakeContract(address, entry["functions"], entry["events"])

    @property
    def block_number(self):
        async def head():
            if self._web3.head_error is not None:
                raise self._web3.head_error
            return self._web3.head
        return head()

    async def get_block(self, number):
        if number in self._web3.failing_blocks:
            raise TransportError(f"block {number} unavailable")
        self._web3.block_reads.append(number)
        return {"number": number, "timestamp": 1_700_000_000 + number}


class FakeWeb3:
    """Just enough of AsyncWeb3 for BaseContractService and its subclasses."""

    def __init__(self, head=1_000_000):
        self.contracts = {}
        self.head = head
        self.head_error = None
        self.failing_blocks = set()
        self.block_reads = []
        self.eth = FakeEth(self)

    def on(self, address, functions=None, events=None):
        entry = self.contracts.setdefault(address.lower(), {"functions": {}, "events": {}})
        entry["functions"].update(functions or {})
        entry["events"].update(events or {})
        return entry


# =============================================================================
# REDIS FAKE
# =============================================================================

class FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def get(self, key):
        return self.store.get(key)

    def delete(self, key):
        self.store.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def token():
    return FakeToken()


@pytest.fixture
def fake_web3():
    return FakeWeb3()


@pytest.fixture
def fake_redis():
    return FakeRedis()
