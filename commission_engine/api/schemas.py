"""
Pydantic schemas for API request/response models.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentConfirmationRequest(BaseModel):
    """Gateway callback confirming a payment."""

    order_id: str = Field(..., min_length=1, max_length=255, description="External order identifier")
    payer_id: UUID = Field(..., description="Paying user")
    enrollment_ref: Optional[str] = Field(default=None, description="Enrollment the payment is for")
    original_amount_cents: int = Field(..., ge=0, description="Price before discount in cents")
    final_amount_cents: int = Field(..., ge=0, description="Amount paid in cents")
    referral_code: Optional[str] = Field(default=None, description="Creator referral code")
    discount_code: Optional[str] = Field(default=None, description="Creator discount code")
    tier: Optional[str] = Field(default=None, description="Purchased tier")
    payment_channel: Literal["card", "bank"] = Field(default="card")
    payment_kind: Literal["new", "upgrade"] = Field(default="new")
    paid_at: Optional[datetime] = Field(default=None, description="Confirmation time")

    @field_validator("referral_code", "discount_code")
    @classmethod
    def normalize_code(cls, v: Optional[str]) -> Optional[str]:
        """Codes are matched upper-case."""
        if v is None or not v.strip():
            return None
        return v.strip().upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "ord_20240115_0001",
                    "payer_id": "123e4567-e89b-12d3-a456-426614174000",
                    "enrollment_ref": "enr_88231",
                    "original_amount_cents": 1000000,
                    "final_amount_cents": 900000,
                    "discount_code": "NIMAL10",
                    "tier": "gold",
                }
            ]
        }
    }


class AttributionResponse(BaseModel):
    """Recorded ledger entry."""

    order_id: str
    attribution_id: int
    creator_id: Optional[UUID] = None
    discount_code_id: Optional[UUID] = None
    attribution_source: Optional[str] = None
    original_amount_cents: int
    discount_cents: int
    final_amount_cents: int
    commission_rate_bps: int
    commission_cents: int
    payment_month: date
    payment_kind: str
    counts_as_paid_user: bool
    idempotent_replay: bool = Field(..., description="True if the order was already recorded")
    aggregates_applied: Optional[bool] = Field(
        default=None, description="False if derived totals await reconciliation"
    )


class WithdrawalCreateRequest(BaseModel):
    """Creator withdrawal request."""

    withdrawal_method_id: UUID = Field(..., description="Payout destination")
    amount_cents: int = Field(..., gt=0, description="Gross amount in cents")


class ApproveWithdrawalRequest(BaseModel):
    verification_code: str = Field(..., min_length=1)
    admin_notes: Optional[str] = None


class MarkPaidRequest(BaseModel):
    verification_code: str = Field(..., min_length=1)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class RejectWithdrawalRequest(BaseModel):
    verification_code: str = Field(..., min_length=1)
    reason: str = Field(..., description="Shown to the creator")
    admin_notes: Optional[str] = None


class WithdrawalResponse(BaseModel):
    """Withdrawal request state."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    creator_id: UUID
    withdrawal_method_id: UUID
    amount_cents: int
    fee_bps: int
    fee_cents: int
    net_amount_cents: int
    status: str
    idempotency_key: Optional[str] = None
    reviewed_by: Optional[UUID] = None
    reviewed_at: Optional[datetime] = None
    paid_by: Optional[UUID] = None
    paid_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime


class MarkPaidResponse(BaseModel):
    withdrawal: WithdrawalResponse
    idempotent_replay: bool


class GatewayPaymentSchema(BaseModel):
    """Payment the gateway reports as confirmed."""

    order_id: str = Field(..., min_length=1, max_length=255)
    payer_id: UUID
    original_amount_cents: int = Field(..., ge=0)
    final_amount_cents: int = Field(..., ge=0)
    enrollment_ref: Optional[str] = None
    referral_code: Optional[str] = None
    discount_code: Optional[str] = None
    tier: Optional[str] = None
    payment_channel: Literal["card", "bank"] = "card"
    payment_kind: Literal["new", "upgrade"] = "new"
    paid_at: Optional[datetime] = None


class OrphanBackfillRequest(BaseModel):
    payments: List[GatewayPaymentSchema] = Field(..., description="Gateway-confirmed payments")
    dry_run: bool = Field(default=False, description="Only report orphans")


class OrphanBackfillResponse(BaseModel):
    checked: int
    orphaned: int
    fixed: int
    failed: int
    orphan_order_ids: List[str] = Field(default_factory=list)
    errors: List[Dict[str, str]] = Field(default_factory=list)


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation."""

    run_id: int
    creators_processed: int
    creators_drifted: int
    discount_codes_corrected: int
    attributions_restored: int
    payout_rows: int
    payouts_drifted: int
    drift: List[Dict[str, Any]]


class MonthlyRevenueResponse(BaseModel):
    month: date
    revenue_cents: int
    payments: int


class RevenueStatsResponse(BaseModel):
    total_revenue_cents: int
    this_month_revenue_cents: int
    monthly: List[MonthlyRevenueResponse]


class SettlePayoutRequest(BaseModel):
    verification_code: str = Field(..., min_length=1)


class CMOPayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    cmo_id: UUID
    payout_month: date
    paid_users: int
    gross_amount_cents: int
    base_commission_cents: int
    bonus_commission_cents: int
    total_commission_cents: int
    status: str


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
