from __future__ import annotations

import logging

from asgiref.sync import async_to_sync
from celery import shared_task

from stakeview.apps.staking.services.dashboard import StakingDashboard
from stakeview.apps.staking.tx_status_store import TxStatusStore

logger = logging.getLogger(__name__)


@shared_task(bind=True, time_limit=300)
def process_write(
    self,
    operation: str,
    wallet: str,
    private_key: str,
    params: dict | None = None,
    task_id: str | None = None,
) -> dict:
    """
    Run one orchestrated ledger write off the web thread.
    Progress (approving -> submitting -> completed / error) is recorded in
    the TxStatusStore under the task id.
    """
    task_id = task_id or self.request.id
    status_store = TxStatusStore()

    try:
        status_store.create(task_id, operation, wallet, params)

        dashboard = StakingDashboard()
        result = async_to_sync(dashboard.orchestrator.execute)(
            operation,
            wallet,
            private_key,
            params or {},
            on_stage=status_store.on_stage(task_id),
        )

        status_store.set_success(task_id, result)
        logger.info(f"Write {operation} for {wallet} completed (tx: {result['tx_hash']})")
        return result

    except Exception as e:
        # Store error in status
        logger.error(f"Write {operation} for {wallet} failed: {e}")
        status_store.set_error(task_id, str(e))
        raise


@shared_task(bind=True, time_limit=600)
def export_users(self, page_size: int | None = None) -> dict:
    """Full registered-user export, as plain JSON-able dicts."""
    dashboard = StakingDashboard()
    batch = async_to_sync(dashboard.collect_all_users)(page_size)
    return {
        "total": batch.total,
        "items": [
            {"address": item.address, "hydrated": item.hydrated, **item.record.to_dict()}
            for item in batch.items
        ],
    }
