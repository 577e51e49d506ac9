from fastapi import Depends
from sqlmodel import Session

from ..services import BalanceCacheService, LedgerQueryService, LedgerRepository, LedgerService
from .db import get_session

def get_ledger_service(session: Session = Depends(get_session)) -> LedgerService:
    repository = LedgerRepository(session)
    return LedgerService(session, repository)

def get_query_service(session: Session = Depends(get_session)) -> LedgerQueryService:
    return LedgerQueryService(session)

def get_balance_cache_service(session: Session = Depends(get_session)) -> BalanceCacheService:
    return BalanceCacheService(session)
