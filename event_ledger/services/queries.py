from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlmodel import Session

from ..models import LedgerEntryResponse
from .ledger import entry_to_response
from .repository import LedgerRepository


class LedgerQueryService:
    """Read-only access to balances and an account's ordered entries."""

    def __init__(
        self,
        session: Session,
        repository: Optional[LedgerRepository] = None,
    ) -> None:
        self.session = session
        self.repository = repository or LedgerRepository(session)

    def get_balance(self, account_id: UUID) -> int:
        with self.session.begin():
            balance = self.repository.get_balance(account_id)
        return int(balance or 0)

    def get_entries(self, account_id: UUID, limit: int, offset: int = 0) -> list[LedgerEntryResponse]:
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")

        with self.session.begin():
            entries = self.repository.list_entries(account_id, limit=limit, offset=offset)
            return [entry_to_response(entry) for entry in entries]
