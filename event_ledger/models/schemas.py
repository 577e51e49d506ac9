from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

CURRENCY_PATTERN = r"^[A-Z]{3}$"
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class LedgerEntryInput(BaseModel):
    account_id: UUID
    amount_cents: int = Field(
        ..., ge=INT64_MIN, le=INT64_MAX, description="Signed amount in minor units; must be nonzero"
    )
    currency: str = Field(..., pattern=CURRENCY_PATTERN, description="ISO 4217 alpha-3 code")
    event_type: str = Field(..., min_length=1, description="Free-form classification, e.g. transfer.debit")


class OperationRequest(BaseModel):
    entries: list[LedgerEntryInput] = Field(..., min_length=1)


class TransferRequest(BaseModel):
    from_account_id: UUID
    to_account_id: UUID
    amount_cents: int = Field(..., ge=1, le=INT64_MAX, description="Amount in minor units (must be >= 1)")
    currency: str = Field(..., pattern=CURRENCY_PATTERN)


class LedgerEntryResponse(BaseModel):
    entry_id: UUID
    operation_id: UUID
    account_id: UUID
    sequence_number: int
    amount_cents: int
    currency: str
    event_type: str
    occurred_at: datetime


class OperationResponse(BaseModel):
    operation_id: UUID
    entries: list[LedgerEntryResponse]


class BalanceResponse(BaseModel):
    account_id: UUID
    balance_cents: int


class LedgerPageResponse(BaseModel):
    items: list[LedgerEntryResponse]
    limit: int
    offset: int
    next_offset: Optional[int] = Field(
        default=None, description="Offset of the following page, if this page was full"
    )


class BalanceDriftResponse(BaseModel):
    account_id: UUID
    cached_cents: int
    ledger_cents: int


class RebuildResponse(BaseModel):
    accounts_rebuilt: int
