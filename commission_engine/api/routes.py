"""
API routes for payment confirmation, withdrawals and administration.

Domain errors propagate as ``SettlementError`` and are mapped to HTTP status
codes by the application's exception handler.
"""
import time
import uuid
from datetime import date
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.core.errors import ValidationError
from commission_engine.core.ledger import AttributionLedger, ReferralHint
from commission_engine.core.reconciliation import GatewayPayment, ReconciliationEngine
from commission_engine.core.reporting import revenue_stats
from commission_engine.core.rollup import CMORollup
from commission_engine.core.verification import Actor
from commission_engine.core.withdrawals import WithdrawalStateMachine
from commission_engine.database.connection import get_db
from commission_engine.database.models import CreatorProfile
from commission_engine.monitoring.health import HealthCheck

from .dependencies import (
    get_actor,
    get_current_creator,
    get_ledger,
    get_reconciliation,
    get_rollup,
    get_withdrawals,
    require_admin_role,
    require_gateway_key,
)
from .schemas import (
    ApproveWithdrawalRequest,
    AttributionResponse,
    CMOPayoutResponse,
    HealthCheckResponse,
    MarkPaidRequest,
    MarkPaidResponse,
    OrphanBackfillRequest,
    OrphanBackfillResponse,
    PaymentConfirmationRequest,
    ReconciliationResponse,
    RejectWithdrawalRequest,
    RevenueStatsResponse,
    SettlePayoutRequest,
    WithdrawalCreateRequest,
    WithdrawalResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
withdrawal_router = APIRouter(prefix="/withdrawals", tags=["withdrawals"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


@payment_router.post(
    "/confirmations",
    response_model=AttributionResponse,
    summary="Record a confirmed payment",
    description="Gateway callback; idempotent on order_id",
    dependencies=[Depends(require_gateway_key)],
)
async def confirm_payment(
    request: PaymentConfirmationRequest,
    db: AsyncSession = Depends(get_db),
    ledger: AttributionLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    """Record a payment exactly once; a repeated order returns the original entry."""
    start_time = time.time()
    result = await ledger.record_payment(
        db,
        request.order_id,
        request.payer_id,
        request.enrollment_ref,
        request.original_amount_cents,
        request.final_amount_cents,
        ReferralHint(referral_code=request.referral_code, discount_code=request.discount_code),
        tier=request.tier,
        payment_channel=request.payment_channel,
        payment_kind=request.payment_kind,
        paid_at=request.paid_at,
    )
    logger.info(
        "api_payment_confirmed",
        order_id=result.order_id,
        idempotent_replay=result.idempotent_replay,
        duration_seconds=time.time() - start_time,
    )
    return result.to_dict()


@withdrawal_router.post(
    "",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a withdrawal",
)
async def request_withdrawal(
    request: WithdrawalCreateRequest,
    creator: CreatorProfile = Depends(get_current_creator),
    db: AsyncSession = Depends(get_db),
    withdrawals: WithdrawalStateMachine = Depends(get_withdrawals),
) -> Any:
    """Open a withdrawal against the caller's available balance."""
    return await withdrawals.request(
        db, creator.id, request.withdrawal_method_id, request.amount_cents
    )


@withdrawal_router.post(
    "/{withdrawal_id}/approve",
    response_model=WithdrawalResponse,
    summary="Approve a pending withdrawal",
)
async def approve_withdrawal(
    withdrawal_id: uuid.UUID,
    request: ApproveWithdrawalRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    withdrawals: WithdrawalStateMachine = Depends(get_withdrawals),
) -> Any:
    return await withdrawals.approve(
        db, actor, withdrawal_id, request.verification_code, request.admin_notes
    )


@withdrawal_router.post(
    "/{withdrawal_id}/mark-paid",
    response_model=MarkPaidResponse,
    summary="Mark an approved withdrawal as paid",
)
async def mark_withdrawal_paid(
    withdrawal_id: uuid.UUID,
    request: MarkPaidRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    withdrawals: WithdrawalStateMachine = Depends(get_withdrawals),
) -> Any:
    """Idempotent under a repeated idempotency key."""
    result = await withdrawals.mark_paid(
        db, actor, withdrawal_id, request.verification_code, request.idempotency_key
    )
    return MarkPaidResponse(
        withdrawal=WithdrawalResponse.model_validate(result.withdrawal),
        idempotent_replay=result.idempotent_replay,
    )


@withdrawal_router.post(
    "/{withdrawal_id}/reject",
    response_model=WithdrawalResponse,
    summary="Reject a pending withdrawal",
)
async def reject_withdrawal(
    withdrawal_id: uuid.UUID,
    request: RejectWithdrawalRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    withdrawals: WithdrawalStateMachine = Depends(get_withdrawals),
) -> Any:
    return await withdrawals.reject(
        db, actor, withdrawal_id, request.verification_code, request.reason, request.admin_notes
    )


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Rebuild every derived aggregate from the ledgers",
)
async def run_reconciliation(
    actor: Actor = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation),
) -> Dict[str, Any]:
    logger.info("api_reconciliation_started", admin_id=str(actor.user_id))
    report = await engine.recompute_all(db)
    return report.to_dict()


@admin_router.post(
    "/reconcile/orphans",
    response_model=OrphanBackfillResponse,
    summary="Backfill orphaned payments",
    description="Record gateway-confirmed payments missing from the ledger",
)
async def backfill_orphans(
    request: OrphanBackfillRequest,
    actor: Actor = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation),
) -> Dict[str, Any]:
    confirmed = [GatewayPayment(**payment.model_dump()) for payment in request.payments]
    orphans = await engine.find_orphaned_payments(db, confirmed)
    orphan_ids = [payment.order_id for payment in orphans]

    if request.dry_run:
        return {
            "checked": len(confirmed),
            "orphaned": len(orphans),
            "fixed": 0,
            "failed": 0,
            "orphan_order_ids": orphan_ids,
        }

    logger.info("api_orphan_backfill_started", admin_id=str(actor.user_id), orphaned=len(orphans))
    report = await engine.backfill_orphans(db, orphans)
    return {
        "checked": len(confirmed),
        "orphaned": len(orphans),
        "fixed": report.fixed,
        "failed": report.failed,
        "orphan_order_ids": orphan_ids,
        "errors": report.errors,
    }


@admin_router.get(
    "/revenue-stats",
    response_model=RevenueStatsResponse,
    summary="Revenue statistics",
)
async def get_revenue_stats(
    months: int = Query(default=6, ge=1, le=36),
    actor: Actor = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    stats = await revenue_stats(db, months=months)
    return stats.to_dict()


@admin_router.post(
    "/cmo-payouts/{cmo_id}/{month}/settle",
    response_model=CMOPayoutResponse,
    summary="Settle a closed month's CMO payout",
)
async def settle_cmo_payout(
    cmo_id: uuid.UUID,
    month: str,
    request: SettlePayoutRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    rollup: CMORollup = Depends(get_rollup),
) -> Any:
    """``month`` is ``YYYY-MM``."""
    try:
        year, month_number = (int(part) for part in month.split("-"))
        payout_month = date(year, month_number, 1)
    except ValueError:
        raise ValidationError("Month must be formatted YYYY-MM", {"month": month})
    return await rollup.settle_payout(db, actor, cmo_id, payout_month, request.verification_code)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
)
async def readiness() -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
