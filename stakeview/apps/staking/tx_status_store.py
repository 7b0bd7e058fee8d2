"""
Redis-based store for tracking background write status.
Each orchestrated write (stake, bond purchase, owner action...) gets one
record that the Celery task advances and the status endpoint reads.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from asgiref.sync import async_to_sync
from django.conf import settings
from redis import Redis

from stakeview.apps.staking.services.errors import LedgerError

logger = logging.getLogger(__name__)

KEY_PREFIX = "staking:write:"
TTL = 30 * 60  # 30 minutes, longer than a write plus its approval


def _default_receipt_checker(tx_hash: str):
    from stakeview.apps.staking.services.token import TokenService

    service = TokenService()
    return async_to_sync(service.get_transaction_receipt)(tx_hash)


class TxStatusStore:
    """Store for tracking write progress and on-chain confirmation."""

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        receipt_checker: Optional[Callable[[str], Any]] = None,
    ):
        self.redis = redis_client or Redis.from_url(
            getattr(settings, "CELERY_BROKER_URL", "redis://redis:6379/0")
        )
        self.receipt_checker = receipt_checker or _default_receipt_checker

    def _key(self, task_id: str) -> str:
        return f"{KEY_PREFIX}{task_id}"

    def _load(self, task_id: str) -> Optional[Dict[str, Any]]:
        raw = self.redis.get(self._key(task_id))
        if not raw:
            return None
        return json.loads(raw)

    def _save(self, task_id: str, data: Dict[str, Any]) -> None:
        data["updated_at"] = int(time.time())
        self.redis.setex(self._key(task_id), TTL, json.dumps(data))

    def create(self, task_id: str, operation: str, wallet: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Initialize write status tracking."""
        now = int(time.time())
        data = {
            "task_id": task_id,
            "operation": operation,
            "wallet": wallet,
            "params": params or {},
            "status": "pending",
            "stage": "pending",
            "approve_tx_hash": None,
            "approve_tx_status": None,
            "tx_hash": None,
            "tx_status": None,
            "created_at": now,
            "updated_at": now,
            "error": None,
        }
        self.redis.setex(self._key(task_id), TTL, json.dumps(data))

    def update_stage(self, task_id: str, stage: str, **kwargs) -> None:
        """Update processing stage; unknown task ids are ignored."""
        data = self._load(task_id)
        if data is None:
            return
        data["stage"] = stage
        data.update(kwargs)
        self._save(task_id, data)

    def on_stage(self, task_id: str) -> Callable[..., None]:
        """Stage callback for WriteOrchestrator bound to one task."""

        def callback(stage: str, **info) -> None:
            # Broadcast hashes are stored as pending so get() can re-check them
            if stage == "approve_sent":
                self.update_stage(
                    task_id, "approving",
                    approve_tx_hash=info.get("approve_tx_hash"),
                    approve_tx_status="pending",
                )
            elif stage == "sent":
                self.update_stage(task_id, "submitting", tx_hash=info.get("tx_hash"), tx_status="pending")
            elif stage == "approved":
                self.update_stage(
                    task_id, "approving",
                    approve_tx_hash=info.get("approve_tx_hash"),
                    approve_tx_status="confirmed",
                )
            elif stage == "confirmed":
                self.update_stage(task_id, "confirming", tx_hash=info.get("tx_hash"), tx_status="confirmed")
            else:
                self.update_stage(task_id, stage)

        return callback

    def set_success(self, task_id: str, result: Dict[str, Any]) -> None:
        """Mark write as completed with final results."""
        data = self._load(task_id)
        if data is None:
            return
        data.update({
            "status": "success",
            "stage": "completed",
            "tx_status": "confirmed",
        })
        if data.get("approve_tx_hash"):
            data["approve_tx_status"] = "confirmed"
        data.update(result)
        self._save(task_id, data)

    def set_error(self, task_id: str, error: str) -> None:
        """Mark write as failed."""
        data = self._load(task_id)
        if data is None:
            return
        data.update({"status": "error", "stage": "error", "error": error})
        self._save(task_id, data)

    def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Get current write status, re-checking pending hashes on-chain."""
        data = self._load(task_id)
        if data is None:
            return None

        if data.get("approve_tx_hash") and data.get("approve_tx_status") == "pending":
            data["approve_tx_status"] = self._check_tx_status(data["approve_tx_hash"])

        if data.get("tx_hash") and data.get("tx_status") == "pending":
            data["tx_status"] = self._check_tx_status(data["tx_hash"])

        return data

    def _check_tx_status(self, tx_hash: str) -> str:
        """
        Check if a transaction is confirmed on-chain.
        Returns 'pending', 'confirmed', or 'failed'.
        """
        try:
            receipt = self.receipt_checker(tx_hash)
        except LedgerError as e:
            logger.warning(f"Receipt lookup for {tx_hash} failed: {e}")
            return "pending"
        if receipt:
            return "confirmed" if receipt["status"] == 1 else "failed"
        return "pending"

    def delete(self, task_id: str) -> None:
        """Delete write status (cleanup)."""
        self.redis.delete(self._key(task_id))
