"""Payout and refund records: created once, updated by reconciliation."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class PayoutRecordStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class PayoutKind(str, Enum):
    prize = "prize"
    refund = "refund"


class PayoutRecordInDB(BaseModel):
    """Unique per (contest_id, user_id, kind)."""
    model_config = {"use_enum_values": True, "validate_default": True}

    contest_id: str
    user_id: str
    kind: PayoutKind = PayoutKind.prize
    rank: Optional[int] = None
    amount: float
    currency: str = "USD"
    status: PayoutRecordStatus = PayoutRecordStatus.pending
    attempts: int = 0
    payment_ref: Optional[str] = None
    last_error: Optional[str] = None
    needs_manual_review: bool = False
    created_at: datetime
    updated_at: datetime


class PayoutRecordResponse(BaseModel):
    user_id: str
    kind: PayoutKind
    rank: Optional[int] = None
    amount: float
    status: PayoutRecordStatus
    needs_manual_review: bool = False
