from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, func, insert, literal
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, select

from ..models import AccountBalanceModel, LedgerEntryModel, OperationModel
from ..models.db import utcnow


_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class LedgerRepository:
    """Thin data access layer around the SQLModel session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Operations ---------------------------------------------------------
    def add_operation(self, *, operation_id: UUID, idempotency_key: str) -> OperationModel:
        operation = OperationModel(
            operation_id=operation_id,
            idempotency_key=idempotency_key,
        )
        self.session.add(operation)
        self.session.flush()
        return operation

    # Ledger entries -----------------------------------------------------
    def max_sequence_number(self, account_id: UUID) -> int:
        stmt = select(func.max(LedgerEntryModel.sequence_number)).where(
            LedgerEntryModel.account_id == account_id
        )
        return self.session.exec(stmt).one() or 0

    def add_entry(
        self,
        *,
        operation_id: UUID,
        account_id: UUID,
        sequence_number: int,
        amount_cents: int,
        currency: str,
        event_type: str,
    ) -> LedgerEntryModel:
        entry = LedgerEntryModel(
            operation_id=operation_id,
            account_id=account_id,
            sequence_number=sequence_number,
            amount_cents=amount_cents,
            currency=currency,
            event_type=event_type,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_entries(self, account_id: UUID, *, limit: int, offset: int) -> list[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.account_id == account_id)
            .order_by(LedgerEntryModel.sequence_number)
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.exec(stmt))

    def ledger_totals(self) -> dict[UUID, int]:
        stmt = select(
            LedgerEntryModel.account_id, func.sum(LedgerEntryModel.amount_cents)
        ).group_by(LedgerEntryModel.account_id)
        return {account_id: int(total) for account_id, total in self.session.exec(stmt)}

    # Balance cache ------------------------------------------------------
    def get_balance(self, account_id: UUID) -> Optional[int]:
        stmt = select(AccountBalanceModel.balance_cents).where(
            AccountBalanceModel.account_id == account_id
        )
        return self.session.exec(stmt).first()

    def cached_balances(self) -> dict[UUID, int]:
        stmt = select(AccountBalanceModel.account_id, AccountBalanceModel.balance_cents)
        return {account_id: balance for account_id, balance in self.session.exec(stmt)}

    def apply_balance_delta(self, account_id: UUID, delta_cents: int) -> None:
        table = AccountBalanceModel.__table__
        dialect = self.session.get_bind().dialect.name
        try:
            upsert = _UPSERT_INSERTS[dialect]
        except KeyError as exc:
            raise NotImplementedError(f"No balance upsert for dialect {dialect}") from exc

        now = utcnow()
        stmt = upsert(table).values(account_id=account_id, balance_cents=delta_cents, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.account_id],
            set_={
                "balance_cents": table.c.balance_cents + stmt.excluded.balance_cents,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self.session.connection().execute(stmt)

    def clear_balances(self) -> int:
        result = self.session.connection().execute(delete(AccountBalanceModel.__table__))
        return result.rowcount

    def rebuild_balances_from_ledger(self, now: datetime) -> int:
        balances = AccountBalanceModel.__table__
        entries = LedgerEntryModel.__table__
        totals = select(
            entries.c.account_id,
            func.sum(entries.c.amount_cents),
            literal(now, type_=balances.c.updated_at.type),
        ).group_by(entries.c.account_id)
        result = self.session.connection().execute(
            insert(balances).from_select(
                ["account_id", "balance_cents", "updated_at"], totals
            )
        )
        return result.rowcount
