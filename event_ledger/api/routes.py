from typing import Optional
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, Header, Query, status

from ..core.config import get_settings
from ..core.dependencies import (
    get_balance_cache_service,
    get_ledger_service,
    get_query_service,
)
from ..models import (
    BalanceDriftResponse,
    BalanceResponse,
    LedgerEntryInput,
    LedgerPageResponse,
    OperationRequest,
    OperationResponse,
    RebuildResponse,
    TransferRequest,
)
from ..services import BalanceCacheService, LedgerQueryService, LedgerService


operations_router = APIRouter(prefix="/operations", tags=["operations"])

@operations_router.post("", response_model=OperationResponse, status_code=status.HTTP_201_CREATED)
def append_operation(
    payload: OperationRequest,
    service: LedgerService = Depends(get_ledger_service),
    idempotency_key: str = Header(..., convert_underscores=False, alias="Idempotency-Key"),
) -> OperationResponse:
    return service.append_operation(uuid4(), payload.entries, idempotency_key)

@operations_router.post("/transfer", response_model=OperationResponse, status_code=status.HTTP_201_CREATED)
def create_transfer(
    payload: TransferRequest,
    service: LedgerService = Depends(get_ledger_service),
    idempotency_key: str = Header(..., convert_underscores=False, alias="Idempotency-Key"),
) -> OperationResponse:
    entries = [
        LedgerEntryInput(
            account_id=payload.from_account_id,
            amount_cents=-payload.amount_cents,
            currency=payload.currency,
            event_type="transfer.debit",
        ),
        LedgerEntryInput(
            account_id=payload.to_account_id,
            amount_cents=payload.amount_cents,
            currency=payload.currency,
            event_type="transfer.credit",
        ),
    ]
    return service.append_operation(uuid4(), entries, idempotency_key)

accounts_router = APIRouter(prefix="/accounts", tags=["accounts"])

@accounts_router.get("/{account_id}/balance", response_model=BalanceResponse)
def get_balance(
    account_id: UUID,
    service: LedgerQueryService = Depends(get_query_service),
) -> BalanceResponse:
    return BalanceResponse(account_id=account_id, balance_cents=service.get_balance(account_id))

@accounts_router.get("/{account_id}/ledger", response_model=LedgerPageResponse)
def get_ledger(
    account_id: UUID,
    limit: Optional[int] = Query(default=None, ge=0),
    offset: int = Query(default=0, ge=0),
    service: LedgerQueryService = Depends(get_query_service),
) -> LedgerPageResponse:
    if limit is None:
        limit = get_settings().default_page_limit
    items = service.get_entries(account_id, limit=limit, offset=offset)
    next_offset = offset + limit if limit and len(items) == limit else None
    return LedgerPageResponse(items=items, limit=limit, offset=offset, next_offset=next_offset)

admin_router = APIRouter(prefix="/admin", tags=["admin"])

@admin_router.post("/balances/rebuild", response_model=RebuildResponse)
def rebuild_balances(
    service: BalanceCacheService = Depends(get_balance_cache_service),
) -> RebuildResponse:
    return RebuildResponse(accounts_rebuilt=service.rebuild_all())

@admin_router.get("/balances/drift", response_model=list[BalanceDriftResponse])
def get_balance_drift(
    service: BalanceCacheService = Depends(get_balance_cache_service),
) -> list[BalanceDriftResponse]:
    return service.find_drift()

__all__ = ["accounts_router", "admin_router", "operations_router"]
