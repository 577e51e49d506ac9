from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlmodel import Session

from ..core.config import get_settings
from ..core.errors import (
    DuplicateOperationError,
    InvalidEntryError,
    LedgerError,
    OrderingHazardError,
    StoreUnavailableError,
)
from ..core.locks import advisory_lock_for
from ..models import (
    CURRENCY_PATTERN,
    INT64_MAX,
    INT64_MIN,
    LedgerEntryInput,
    LedgerEntryModel,
    LedgerEntryResponse,
    OperationResponse,
)
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

_CURRENCY_RE = re.compile(CURRENCY_PATTERN)

# deadlock_detected, lock_not_available, serialization_failure, query_canceled
_ORDERING_SQLSTATES = frozenset({"40P01", "55P03", "40001", "57014"})
# class 22: data exceptions such as numeric_value_out_of_range
_DATA_EXCEPTION_CLASS = "22"


def account_lock_key(account_id: UUID) -> str:
    return f"ledger.account:{account_id}"


def lock_order(entries: Sequence[LedgerEntryInput]) -> list[UUID]:
    """Distinct account ids in the order their locks must be taken."""
    return sorted({entry.account_id for entry in entries}, key=str)


def entry_to_response(entry: LedgerEntryModel) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        entry_id=entry.entry_id,
        operation_id=entry.operation_id,
        account_id=entry.account_id,
        sequence_number=entry.sequence_number,
        amount_cents=entry.amount_cents,
        currency=entry.currency,
        event_type=entry.event_type,
        occurred_at=entry.occurred_at,
    )


def classify_store_error(exc: DBAPIError) -> LedgerError:
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate and sqlstate.startswith(_DATA_EXCEPTION_CLASS):
        return InvalidEntryError(f"Rejected by the store: {exc.orig}")
    if isinstance(exc, IntegrityError) or sqlstate in _ORDERING_SQLSTATES:
        return OrderingHazardError(f"Transaction aborted by the store: {exc.orig}")
    return StoreUnavailableError(f"Ledger store unavailable: {exc.orig}")


class LedgerService:
    """Appends operations to the ledger and keeps the balance cache in step."""

    def __init__(
        self,
        session: Session,
        repository: Optional[LedgerRepository] = None,
        lock_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.session = session
        self.repository = repository or LedgerRepository(session)
        if lock_timeout_seconds is None:
            lock_timeout_seconds = get_settings().lock_timeout_seconds
        self.lock_timeout_seconds = lock_timeout_seconds

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _validate(self, entries: Sequence[LedgerEntryInput], idempotency_key: str) -> None:
        if not idempotency_key:
            raise InvalidEntryError("Idempotency key must not be empty")
        if not entries:
            raise InvalidEntryError("An operation needs at least one entry")
        for position, entry in enumerate(entries):
            if entry.amount_cents == 0:
                raise InvalidEntryError(f"Entry {position} has a zero amount")
            if not INT64_MIN <= entry.amount_cents <= INT64_MAX:
                raise InvalidEntryError(f"Entry {position} amount is outside the 64-bit range")
            if not isinstance(entry.currency, str) or not _CURRENCY_RE.fullmatch(entry.currency):
                raise InvalidEntryError(
                    f"Entry {position} has malformed currency {entry.currency!r}"
                )

    def _insert_operation(self, operation_id: UUID, idempotency_key: str) -> None:
        try:
            self.repository.add_operation(
                operation_id=operation_id,
                idempotency_key=idempotency_key,
            )
        except IntegrityError as exc:
            raise DuplicateOperationError(
                f"Idempotency key {idempotency_key!r} was already used"
            ) from exc

    def _lock_accounts(self, entries: Sequence[LedgerEntryInput]) -> None:
        lock = advisory_lock_for(self.session, self.lock_timeout_seconds)
        for account_id in lock_order(entries):
            lock.acquire(account_lock_key(account_id))

    def _append_entry(self, operation_id: UUID, entry: LedgerEntryInput) -> LedgerEntryModel:
        balance = (self.repository.get_balance(entry.account_id) or 0) + entry.amount_cents
        if not INT64_MIN <= balance <= INT64_MAX:
            raise InvalidEntryError(
                f"Entry for account {entry.account_id} would overflow its 64-bit balance"
            )
        sequence_number = self.repository.max_sequence_number(entry.account_id) + 1
        written = self.repository.add_entry(
            operation_id=operation_id,
            account_id=entry.account_id,
            sequence_number=sequence_number,
            amount_cents=entry.amount_cents,
            currency=entry.currency,
            event_type=entry.event_type,
        )
        self.repository.apply_balance_delta(entry.account_id, entry.amount_cents)
        return written

    def _log_abort(self, operation_id: UUID, idempotency_key: str, error: LedgerError) -> None:
        logger.warning(
            "ledger.operation.aborted",
            extra={
                "operation_id": str(operation_id),
                "idempotency_key": idempotency_key,
                "error": type(error).__name__,
            },
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def append_operation(
        self,
        operation_id: UUID,
        entries: Sequence[LedgerEntryInput],
        idempotency_key: str,
    ) -> OperationResponse:
        self._validate(entries, idempotency_key)

        try:
            with self.session.begin():
                self._insert_operation(operation_id, idempotency_key)
                self._lock_accounts(entries)
                written = [self._append_entry(operation_id, entry) for entry in entries]
                response = OperationResponse(
                    operation_id=operation_id,
                    entries=[entry_to_response(entry) for entry in written],
                )
        except DuplicateOperationError:
            logger.info(
                "ledger.operation.duplicate",
                extra={"operation_id": str(operation_id), "idempotency_key": idempotency_key},
            )
            raise
        except DBAPIError as exc:
            error = classify_store_error(exc)
            self._log_abort(operation_id, idempotency_key, error)
            raise error from exc
        except (InvalidEntryError, StoreUnavailableError) as error:
            self._log_abort(operation_id, idempotency_key, error)
            raise

        logger.info(
            "ledger.operation.appended",
            extra={
                "operation_id": str(operation_id),
                "idempotency_key": idempotency_key,
                "entries": len(response.entries),
            },
        )
        return response
