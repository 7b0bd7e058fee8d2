"""
Tests for the Redis-backed write status store.
"""
import json

from conftest import addr
from stakeview.apps.staking.services.errors import TransportError
from stakeview.apps.staking.tx_status_store import KEY_PREFIX, TTL, TxStatusStore

WALLET = addr(1)
TASK = "task-1"


def _store(fake_redis, receipts=None):
    receipts = receipts if receipts is not None else {}

    def checker(tx_hash):
        receipt = receipts.get(tx_hash)
        if isinstance(receipt, Exception):
            raise receipt
        return receipt

    return TxStatusStore(redis_client=fake_redis, receipt_checker=checker)


class TestLifecycle:

    def test_create(self, fake_redis):
        store = _store(fake_redis)
        store.create(TASK, "stake", WALLET, {"amount": 100})

        raw = json.loads(fake_redis.store[f"{KEY_PREFIX}{TASK}"])
        assert raw["status"] == "pending"
        assert raw["params"] == {"amount": 100}
        assert fake_redis.ttls[f"{KEY_PREFIX}{TASK}"] == TTL

    def test_stage_callback_records_hashes(self, fake_redis):
        store = _store(fake_redis)
        store.create(TASK, "stake", WALLET)
        callback = store.on_stage(TASK)

        callback("approving")
        assert store.get(TASK)["stage"] == "approving"

        callback("approved", approve_tx_hash="0xa1")
        status = store.get(TASK)
        assert status["approve_tx_hash"] == "0xa1"
        assert status["approve_tx_status"] == "confirmed"

        callback("submitting")
        callback("confirmed", tx_hash="0xb2")
        status = store.get(TASK)
        assert status["stage"] == "confirming"
        assert status["tx_hash"] == "0xb2"

    def test_success(self, fake_redis):
        store = _store(fake_redis)
        store.create(TASK, "claim_rewards", WALLET)
        store.set_success(TASK, {"tx_hash": "0xb2", "block_number": 7})
        status = store.get(TASK)
        assert status["status"] == "success"
        assert status["stage"] == "completed"
        assert status["block_number"] == 7

    def test_error(self, fake_redis):
        store = _store(fake_redis)
        store.create(TASK, "unstake", WALLET)
        store.set_error(TASK, "execution reverted: too early")
        status = store.get(TASK)
        assert status["status"] == "error"
        assert "too early" in status["error"]

    def test_unknown_task(self, fake_redis):
        store = _store(fake_redis)
        store.update_stage("missing", "approving")
        store.set_success("missing", {})
        assert store.get("missing") is None
        assert fake_redis.store == {}

    def test_delete(self, fake_redis):
        store = _store(fake_redis)
        store.create(TASK, "stake", WALLET)
        store.delete(TASK)
        assert store.get(TASK) is None


class TestPendingRecheck:

    def _pending(self, store, tx_hash):
        store.create(TASK, "stake", WALLET)
        store.on_stage(TASK)("sent", tx_hash=tx_hash)

    def test_mined_receipt_confirms(self, fake_redis):
        store = _store(fake_redis, {"0xb2": {"status": 1}})
        self._pending(store, "0xb2")
        assert store.get(TASK)["tx_status"] == "confirmed"

    def test_reverted_receipt_fails(self, fake_redis):
        store = _store(fake_redis, {"0xb2": {"status": 0}})
        self._pending(store, "0xb2")
        assert store.get(TASK)["tx_status"] == "failed"

    def test_not_mined_stays_pending(self, fake_redis):
        store = _store(fake_redis)
        self._pending(store, "0xb2")
        assert store.get(TASK)["tx_status"] == "pending"

    def test_lookup_failure_stays_pending(self, fake_redis):
        store = _store(fake_redis, {"0xb2": TransportError("node down")})
        self._pending(store, "0xb2")
        assert store.get(TASK)["tx_status"] == "pending"

    def test_pending_approval_hash_rechecked(self, fake_redis):
        store = _store(fake_redis, {"0xa1": {"status": 1}})
        store.create(TASK, "stake", WALLET)
        store.on_stage(TASK)("approve_sent", approve_tx_hash="0xa1")

        status = store.get(TASK)
        assert status["stage"] == "approving"
        assert status["approve_tx_hash"] == "0xa1"
        assert status["approve_tx_status"] == "confirmed"

    def test_broadcast_hash_recorded_before_receipt(self, fake_redis):
        store = _store(fake_redis)
        self._pending(store, "0xb2")
        raw = json.loads(fake_redis.store[f"{KEY_PREFIX}{TASK}"])
        assert raw["stage"] == "submitting"
        assert raw["tx_hash"] == "0xb2"
        assert raw["tx_status"] == "pending"
