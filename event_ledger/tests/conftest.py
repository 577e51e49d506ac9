from collections.abc import Iterator
from uuid import UUID

import pytest
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, select

from ..core.db import create_engine_for_url
from ..models import LedgerEntryInput


@pytest.fixture
def engine(tmp_path) -> Iterator[Engine]:
    test_db = tmp_path / "test.db"
    engine = create_engine_for_url(f"sqlite:///{test_db}")
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


def count_rows(engine: Engine, model) -> int:
    with Session(engine) as session:
        return session.exec(select(func.count()).select_from(model)).one()


def transfer_entries(source: UUID, dest: UUID, amount: int, currency: str = "USD") -> list[LedgerEntryInput]:
    return [
        LedgerEntryInput(
            account_id=source,
            amount_cents=-amount,
            currency=currency,
            event_type="transfer.debit",
        ),
        LedgerEntryInput(
            account_id=dest,
            amount_cents=amount,
            currency=currency,
            event_type="transfer.credit",
        ),
    ]
