import json
import logging
from dataclasses import asdict, is_dataclass
from functools import wraps

from asgiref.sync import async_to_sync
from celery.result import AsyncResult
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from stakeview.celery import app
from stakeview.apps.staking.services.dashboard import StakingDashboard
from stakeview.apps.staking.services.errors import (
    LedgerError,
    LedgerValidationError,
    RemoteExecutionError,
)
from stakeview.apps.staking.services.orchestrator import WriteOrchestrator
from stakeview.apps.staking.tasks import process_write
from stakeview.apps.staking.tx_status_store import TxStatusStore

logger = logging.getLogger(__name__)

# Write parameters carried as integers (base units, ids, indexes)
INT_PARAMS = {"amount", "plan_id", "index", "start", "end"}


def to_json(value):
    if is_dataclass(value):
        return asdict(value)
    return value


def ledger_view(view):
    """Translate ledger errors into HTTP responses."""

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except LedgerValidationError as e:
            return JsonResponse({"error": str(e)}, status=400)
        except RemoteExecutionError as e:
            return JsonResponse({"error": str(e), "tx_hash": e.tx_hash}, status=502)
        except LedgerError as e:
            logger.error(f"{view.__name__} failed: {e}")
            return JsonResponse({"error": str(e)}, status=502)

    return wrapper


def int_param(request, name, default=None, minimum=None):
    raw = request.GET.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise LedgerValidationError(f"{name} must be an integer, got {raw!r}")
    if minimum is not None and value < minimum:
        raise LedgerValidationError(f"{name} must be >= {minimum}, got {value}")
    return value


def coerce_write_params(params):
    if not isinstance(params, dict):
        raise LedgerValidationError("params must be an object")
    coerced = dict(params)
    for name in INT_PARAMS & coerced.keys():
        value = coerced[name]
        if isinstance(value, str) and value.strip().isdigit():
            coerced[name] = int(value.strip())
    return coerced


def page_response(page):
    return JsonResponse({
        "items": [to_json(item) for item in page.items],
        "page": page.page,
        "page_size": page.page_size,
        "total_items": page.total_items,
        "total_pages": page.total_pages,
    })


# ============================================================
# Reads
# ============================================================

@require_GET
@ledger_view
def account_summary_view(request, address: str):
    dashboard = StakingDashboard()
    return JsonResponse(async_to_sync(dashboard.get_account_summary)(address))


@require_GET
@ledger_view
def bonds_view(request, address: str):
    dashboard = StakingDashboard()
    bonds = async_to_sync(dashboard.get_bonds)(address)
    return JsonResponse({
        "items": [to_json(b) for b in bonds],
        "summary": dashboard.summarize_bonds(bonds),
    })


@require_GET
@ledger_view
def activity_view(request, address: str):
    kinds = [k for k in request.GET.get("kinds", "").split(",") if k]
    dashboard = StakingDashboard()
    try:
        page = async_to_sync(dashboard.activity_page)(
            address,
            int_param(request, "page", 1),
            int_param(request, "page_size", 10),
            kinds=kinds or None,
            from_block=int_param(request, "from_block", minimum=0),
            to_block=int_param(request, "to_block", minimum=0),
        )
    except ValueError as e:
        raise LedgerValidationError(str(e)) from e
    return page_response(page)


@require_GET
@ledger_view
def stake_history_view(request, address: str):
    dashboard = StakingDashboard()
    page = async_to_sync(dashboard.stake_history)(
        address, int_param(request, "page", 1), int_param(request, "page_size", 10)
    )
    return page_response(page)


@require_GET
@ledger_view
def unstake_history_view(request, address: str):
    dashboard = StakingDashboard()
    page = async_to_sync(dashboard.unstake_history)(
        address, int_param(request, "page", 1), int_param(request, "page_size", 10)
    )
    return page_response(page)


@require_GET
@ledger_view
def roi_history_view(request, address: str):
    dashboard = StakingDashboard()
    page = async_to_sync(dashboard.roi_history)(
        address, int_param(request, "page", 1), int_param(request, "page_size", 10)
    )
    return page_response(page)


@require_GET
@ledger_view
def downline_view(request, address: str):
    dashboard = StakingDashboard()
    max_depth = int_param(request, "max_depth", minimum=1)
    if request.GET.get("details") in {"1", "true", "yes"}:
        tree = async_to_sync(dashboard.get_downline_details)(address, max_depth)
        levels = {
            str(level): [
                {
                    "address": m.address,
                    "referral_income": m.referral_income,
                    "hydrated": m.hydrated,
                    "record": m.record.to_dict(),
                }
                for m in members
            ]
            for level, members in tree.items()
        }
    else:
        tree = async_to_sync(dashboard.get_downline_by_level)(address, max_depth)
        levels = {str(level): members for level, members in tree.items()}
    return JsonResponse({"address": address, "levels": levels})


@require_GET
@ledger_view
def directs_view(request, address: str):
    dashboard = StakingDashboard()
    directs = async_to_sync(dashboard.get_directs)(address)
    return JsonResponse({"items": [to_json(d) for d in directs]})


@require_GET
@ledger_view
def users_batch_view(request):
    dashboard = StakingDashboard()
    batch = async_to_sync(dashboard.fetch_users_batch)(
        int_param(request, "offset", 0), int_param(request, "limit", 25)
    )
    return JsonResponse({
        "total": batch.total,
        "items": [
            {"address": item.address, "hydrated": item.hydrated, "record": item.record.to_dict()}
            for item in batch.items
        ],
    })


@require_GET
@ledger_view
def company_pool_view(request):
    dashboard = StakingDashboard()
    status = async_to_sync(dashboard.get_company_pool_status)()
    price = async_to_sync(dashboard.get_token_price_usd)()
    return JsonResponse({**asdict(status), "token_price_usd": price})


# ============================================================
# Writes
# ============================================================

@csrf_exempt
@require_POST
@ledger_view
def submit_write_view(request):
    """Queue an orchestrated write; poll write_status_view with the task id."""
    try:
        body = json.loads(request.body or b"{}")
    except json.JSONDecodeError:
        raise LedgerValidationError("Request body must be JSON")

    operation = body.get("operation")
    wallet = (body.get("wallet") or "").strip()
    private_key = (body.get("private_key") or "").strip()
    if operation not in WriteOrchestrator.OPERATIONS:
        raise LedgerValidationError(f"Unknown write operation: {operation!r}")
    if not wallet or not private_key:
        raise LedgerValidationError("wallet and private_key are required")
    params = coerce_write_params(body.get("params") or {})

    task = process_write.delay(operation, wallet, private_key, params)
    return JsonResponse({"task_id": task.id, "status": "pending"}, status=202)


@require_GET
def write_status_view(request, task_id: str):
    """Check the status of a write task and its transactions."""
    status_data = TxStatusStore().get(task_id)

    if not status_data:
        # Fallback to Celery result if status store not found
        result = AsyncResult(task_id, app=app)
        if result.state == "PENDING":
            return JsonResponse({"error": "Unknown task", "task_id": task_id}, status=404)
        if result.ready():
            if result.successful():
                return JsonResponse({"status": "success", "stage": "completed", "result": result.result})
            return JsonResponse({
                "status": "error",
                "stage": "error",
                "error": str(result.info) if result.info else "Task failed",
            })
        return JsonResponse({"status": "pending", "stage": "processing", "state": result.state})

    status_data.pop("params", None)
    return JsonResponse(status_data)
