from __future__ import annotations
from datetime import datetime, UTC
from uuid import UUID, uuid4
from sqlalchemy import BigInteger, CheckConstraint, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC)


class Operation(SQLModel, table=True):
    __tablename__ = "operations"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_operations_idempotency_key"),
    )

    operation_id: UUID = Field(primary_key=True)
    idempotency_key: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence_number", name="uq_ledger_entries_account_sequence"),
        CheckConstraint("amount_cents <> 0", name="ck_ledger_entries_amount_non_zero"),
        CheckConstraint(
            "currency ~ '^[A-Z]{3}$'", name="ck_ledger_entries_currency_iso"
        ).ddl_if(dialect="postgresql"),
        CheckConstraint(
            "currency GLOB '[A-Z][A-Z][A-Z]'", name="ck_ledger_entries_currency_iso"
        ).ddl_if(dialect="sqlite"),
    )

    entry_id: UUID = Field(default_factory=uuid4, primary_key=True)
    operation_id: UUID = Field(foreign_key="operations.operation_id", index=True)
    account_id: UUID = Field(index=True)
    sequence_number: int = Field(sa_type=BigInteger)
    amount_cents: int = Field(sa_type=BigInteger)
    currency: str = Field(min_length=3, max_length=3)
    event_type: str
    occurred_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class AccountBalance(SQLModel, table=True):
    __tablename__ = "account_balances"

    account_id: UUID = Field(primary_key=True)
    balance_cents: int = Field(default=0, sa_type=BigInteger)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
