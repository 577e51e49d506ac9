import uuid

import pytest
from sqlalchemy.exc import DataError, IntegrityError, OperationalError
from sqlmodel import Session

from ..core.errors import (
    DuplicateOperationError,
    InvalidEntryError,
    OrderingHazardError,
    StoreUnavailableError,
)
from ..models import (
    INT64_MAX,
    INT64_MIN,
    AccountBalanceModel,
    LedgerEntryInput,
    LedgerEntryModel,
    OperationModel,
)
from ..services import LedgerQueryService, LedgerRepository, LedgerService
from ..services.ledger import classify_store_error, lock_order
from .conftest import count_rows, transfer_entries


def _append(engine, entries, idempotency_key, operation_id=None):
    with Session(engine) as session:
        return LedgerService(session).append_operation(
            operation_id or uuid.uuid4(), entries, idempotency_key
        )


def _balance(engine, account_id) -> int:
    with Session(engine) as session:
        return LedgerQueryService(session).get_balance(account_id)


def test_transfer_is_atomic(engine) -> None:
    account_a, account_b = uuid.uuid4(), uuid.uuid4()
    operation_id = uuid.uuid4()

    result = _append(engine, transfer_entries(account_a, account_b, 1000), "op-1", operation_id)

    assert result.operation_id == operation_id
    assert [entry.sequence_number for entry in result.entries] == [1, 1]
    assert [entry.event_type for entry in result.entries] == ["transfer.debit", "transfer.credit"]
    assert _balance(engine, account_a) == -1000
    assert _balance(engine, account_b) == 1000
    assert count_rows(engine, LedgerEntryModel) == 2
    assert count_rows(engine, OperationModel) == 1


def test_entries_for_same_account_are_sequenced_in_input_order(engine) -> None:
    account = uuid.uuid4()
    entries = [
        LedgerEntryInput(account_id=account, amount_cents=500, currency="EUR", event_type="deposit"),
        LedgerEntryInput(account_id=account, amount_cents=-200, currency="EUR", event_type="fee"),
        LedgerEntryInput(account_id=account, amount_cents=-100, currency="EUR", event_type="fee"),
    ]

    result = _append(engine, entries, "multi-1")

    assert [entry.sequence_number for entry in result.entries] == [1, 2, 3]
    assert [entry.amount_cents for entry in result.entries] == [500, -200, -100]
    assert _balance(engine, account) == 200


def test_sequence_continues_across_operations(engine) -> None:
    account_a, account_b = uuid.uuid4(), uuid.uuid4()
    for index in range(3):
        _append(engine, transfer_entries(account_a, account_b, 10), f"seq-{index}")

    result = _append(engine, transfer_entries(account_b, account_a, 5), "seq-back")

    assert [(entry.account_id, entry.sequence_number) for entry in result.entries] == [
        (account_b, 4),
        (account_a, 4),
    ]


def test_duplicate_idempotency_key_is_rejected(engine) -> None:
    account_a, account_b = uuid.uuid4(), uuid.uuid4()
    entries = transfer_entries(account_a, account_b, 500)
    _append(engine, entries, "dup-key")

    with pytest.raises(DuplicateOperationError):
        _append(engine, entries, "dup-key")

    assert count_rows(engine, LedgerEntryModel) == 2
    assert count_rows(engine, OperationModel) == 1
    assert _balance(engine, account_a) == -500
    assert _balance(engine, account_b) == 500


def test_duplicate_key_with_different_entries_writes_nothing(engine) -> None:
    account_a, account_b, account_c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    _append(engine, transfer_entries(account_a, account_b, 500), "dup-key")

    with pytest.raises(DuplicateOperationError):
        _append(engine, transfer_entries(account_a, account_c, 900), "dup-key")

    assert _balance(engine, account_a) == -500
    assert _balance(engine, account_c) == 0
    assert count_rows(engine, LedgerEntryModel) == 2


@pytest.mark.parametrize(
    "amount, currency",
    [
        (0, "USD"),
        (100, "usd"),
        (100, "US"),
        (100, "USDX"),
        (100, "USD\n"),
        (100, "U$D"),
    ],
)
def test_invalid_entries_are_rejected_before_any_write(engine, amount, currency) -> None:
    account_a, account_b = uuid.uuid4(), uuid.uuid4()
    entries = [
        LedgerEntryInput(account_id=account_a, amount_cents=-100, currency="USD", event_type="transfer.debit"),
        LedgerEntryInput.model_construct(
            account_id=account_b, amount_cents=amount, currency=currency, event_type="transfer.credit"
        ),
    ]

    with pytest.raises(InvalidEntryError):
        _append(engine, entries, "bad-op")

    assert count_rows(engine, OperationModel) == 0
    assert count_rows(engine, LedgerEntryModel) == 0
    assert count_rows(engine, AccountBalanceModel) == 0


@pytest.mark.parametrize("amount", [INT64_MAX + 1, INT64_MIN - 1])
def test_amounts_outside_int64_are_rejected_before_any_write(engine, amount) -> None:
    entries = [
        LedgerEntryInput.model_construct(
            account_id=uuid.uuid4(), amount_cents=amount, currency="USD", event_type="adjustment"
        ),
    ]

    with pytest.raises(InvalidEntryError):
        _append(engine, entries, "too-big")

    assert count_rows(engine, OperationModel) == 0
    assert count_rows(engine, LedgerEntryModel) == 0


def test_int64_bounds_are_accepted(engine) -> None:
    account_a, account_b = uuid.uuid4(), uuid.uuid4()
    entries = [
        LedgerEntryInput(account_id=account_a, amount_cents=INT64_MAX, currency="USD", event_type="adjustment"),
        LedgerEntryInput(account_id=account_b, amount_cents=INT64_MIN, currency="USD", event_type="adjustment"),
    ]

    _append(engine, entries, "bounds")

    assert _balance(engine, account_a) == INT64_MAX
    assert _balance(engine, account_b) == INT64_MIN


def test_balance_overflow_is_rejected_and_rolled_back(engine) -> None:
    account = uuid.uuid4()
    entry = LedgerEntryInput(account_id=account, amount_cents=INT64_MAX, currency="USD", event_type="adjustment")
    _append(engine, [entry], "fill-up")

    with pytest.raises(InvalidEntryError, match="overflow"):
        _append(engine, [entry], "overflow")

    assert _balance(engine, account) == INT64_MAX
    assert count_rows(engine, OperationModel) == 1
    assert count_rows(engine, LedgerEntryModel) == 1

    # The rejected key was never consumed.
    negative = LedgerEntryInput(account_id=account, amount_cents=-1, currency="USD", event_type="adjustment")
    result = _append(engine, [negative], "overflow")
    assert result.entries[0].sequence_number == 2


def test_empty_operation_is_rejected(engine) -> None:
    with pytest.raises(InvalidEntryError):
        _append(engine, [], "empty-op")
    assert count_rows(engine, OperationModel) == 0


def test_empty_idempotency_key_is_rejected(engine) -> None:
    with pytest.raises(InvalidEntryError):
        _append(engine, transfer_entries(uuid.uuid4(), uuid.uuid4(), 1), "")
    assert count_rows(engine, OperationModel) == 0


def test_lock_order_is_sorted_and_distinct() -> None:
    first, second = sorted([uuid.uuid4(), uuid.uuid4()], key=str)
    forward = transfer_entries(first, second, 100)
    backward = transfer_entries(second, first, 100) + transfer_entries(second, first, 50)

    assert lock_order(forward) == [first, second]
    assert lock_order(backward) == [first, second]


def test_failure_midway_rolls_back_everything(engine, monkeypatch) -> None:
    account_a, account_b = uuid.uuid4(), uuid.uuid4()
    original = LedgerRepository.apply_balance_delta
    calls = []

    def flaky_apply(self, account_id, delta_cents):
        calls.append(account_id)
        if len(calls) == 2:
            raise RuntimeError("connection dropped")
        return original(self, account_id, delta_cents)

    monkeypatch.setattr(LedgerRepository, "apply_balance_delta", flaky_apply)
    with pytest.raises(RuntimeError, match="connection dropped"):
        _append(engine, transfer_entries(account_a, account_b, 300), "retry-me")

    assert count_rows(engine, OperationModel) == 0
    assert count_rows(engine, LedgerEntryModel) == 0
    assert count_rows(engine, AccountBalanceModel) == 0

    monkeypatch.setattr(LedgerRepository, "apply_balance_delta", original)
    result = _append(engine, transfer_entries(account_a, account_b, 300), "retry-me")

    assert len(result.entries) == 2
    assert _balance(engine, account_a) == -300


def test_sequence_collision_surfaces_as_ordering_hazard(engine, monkeypatch) -> None:
    account_a, account_b = uuid.uuid4(), uuid.uuid4()
    _append(engine, transfer_entries(account_a, account_b, 100), "first")

    monkeypatch.setattr(LedgerRepository, "max_sequence_number", lambda self, account_id: 0)
    with pytest.raises(OrderingHazardError):
        _append(engine, transfer_entries(account_a, account_b, 100), "second")

    assert count_rows(engine, OperationModel) == 1
    assert count_rows(engine, LedgerEntryModel) == 2
    assert _balance(engine, account_a) == -100


class _DriverError(Exception):
    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


@pytest.mark.parametrize("sqlstate", ["40P01", "55P03", "40001"])
def test_lock_conflicts_are_classified_as_ordering_hazards(sqlstate) -> None:
    exc = OperationalError("SELECT 1", {}, _DriverError("deadlock", sqlstate))
    assert isinstance(classify_store_error(exc), OrderingHazardError)


def test_connection_failures_are_classified_as_store_unavailable() -> None:
    exc = OperationalError("SELECT 1", {}, _DriverError("server closed the connection"))
    error = classify_store_error(exc)
    assert isinstance(error, StoreUnavailableError)
    assert not isinstance(error, OrderingHazardError)


def test_out_of_range_values_from_the_store_are_invalid_input() -> None:
    exc = DataError("INSERT", {}, _DriverError("bigint out of range", "22003"))
    error = classify_store_error(exc)
    assert isinstance(error, InvalidEntryError)
    assert not isinstance(error, StoreUnavailableError)


def test_integrity_errors_after_the_operation_row_are_ordering_hazards() -> None:
    exc = IntegrityError("INSERT", {}, _DriverError("unique violation", "23505"))
    assert isinstance(classify_store_error(exc), OrderingHazardError)


def test_store_enforces_non_zero_amount(engine) -> None:
    operation_id = uuid.uuid4()
    with Session(engine) as session:
        with pytest.raises(IntegrityError):
            with session.begin():
                session.add(OperationModel(operation_id=operation_id, idempotency_key="raw"))
                session.add(
                    LedgerEntryModel(
                        operation_id=operation_id,
                        account_id=uuid.uuid4(),
                        sequence_number=1,
                        amount_cents=0,
                        currency="USD",
                        event_type="raw",
                    )
                )
    assert count_rows(engine, LedgerEntryModel) == 0


def test_store_enforces_currency_shape(engine) -> None:
    operation_id = uuid.uuid4()
    with Session(engine) as session:
        with pytest.raises(IntegrityError):
            with session.begin():
                session.add(OperationModel(operation_id=operation_id, idempotency_key="raw"))
                session.add(
                    LedgerEntryModel(
                        operation_id=operation_id,
                        account_id=uuid.uuid4(),
                        sequence_number=1,
                        amount_cents=10,
                        currency="usd",
                        event_type="raw",
                    )
                )
    assert count_rows(engine, LedgerEntryModel) == 0
