"""Transaction-scoped advisory locks.

A lock taken through this module is held until the surrounding transaction
ends, by commit or rollback. There is no ``release`` method.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import event, text
from sqlalchemy.orm import Session, SessionTransaction

from .errors import OrderingHazardError


logger = logging.getLogger(__name__)

_HELD_LOCKS_KEY = "event_ledger.advisory_locks"


class AdvisoryLock(Protocol):
    def acquire(self, key: str) -> None:
        ...

    def try_acquire(self, key: str) -> bool:
        ...


def _require_transaction(session: Session) -> None:
    if not session.in_transaction():
        raise RuntimeError("Advisory locks can only be taken inside a transaction")


class PostgresAdvisoryLock:
    """``pg_advisory_xact_lock`` keyed by ``hashtext(key)``."""

    def __init__(self, session: Session, timeout_seconds: float) -> None:
        self.session = session
        self.timeout_seconds = timeout_seconds

    def _set_lock_timeout(self) -> None:
        timeout_ms = max(int(self.timeout_seconds * 1000), 1)
        self.session.connection().execute(
            text("SELECT set_config('lock_timeout', :timeout, true)"),
            {"timeout": f"{timeout_ms}ms"},
        )

    def acquire(self, key: str) -> None:
        _require_transaction(self.session)
        self._set_lock_timeout()
        self.session.connection().execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": key},
        )

    def try_acquire(self, key: str) -> bool:
        _require_transaction(self.session)
        acquired = self.session.connection().execute(
            text("SELECT pg_try_advisory_xact_lock(hashtext(:key))"),
            {"key": key},
        ).scalar_one()
        return bool(acquired)


@dataclass
class _RegistryEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class ProcessAdvisoryLock:
    """In-process stand-in for stores without an advisory lock primitive.

    Locks live in a registry shared by every session in the process and are
    released from the session's ``after_transaction_end`` event. A key leaves
    the registry once nobody holds or waits for it.
    """

    _registry: dict[str, _RegistryEntry] = {}
    _registry_guard = threading.Lock()

    def __init__(self, session: Session, timeout_seconds: float = 10.0) -> None:
        self.session = session
        self.timeout_seconds = timeout_seconds

    @classmethod
    def _checkout(cls, key: str) -> threading.Lock:
        with cls._registry_guard:
            entry = cls._registry.get(key)
            if entry is None:
                entry = cls._registry[key] = _RegistryEntry()
            entry.users += 1
            return entry.lock

    @classmethod
    def _checkin(cls, key: str) -> None:
        with cls._registry_guard:
            entry = cls._registry[key]
            entry.users -= 1
            if entry.users == 0:
                del cls._registry[key]

    def _held(self) -> dict[str, threading.Lock]:
        held = self.session.info.get(_HELD_LOCKS_KEY)
        if held is None:
            held = self.session.info[_HELD_LOCKS_KEY] = {}
        if not event.contains(self.session, "after_transaction_end", _release_held_locks):
            event.listen(self.session, "after_transaction_end", _release_held_locks)
        return held

    def _take(self, key: str, blocking: bool) -> bool:
        _require_transaction(self.session)
        held = self._held()
        if key in held:
            return True

        lock = self._checkout(key)
        if blocking:
            acquired = lock.acquire(timeout=self.timeout_seconds)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            self._checkin(key)
            return False
        held[key] = lock
        return True

    def acquire(self, key: str) -> None:
        if not self._take(key, blocking=True):
            raise OrderingHazardError(
                f"Timed out after {self.timeout_seconds}s waiting for lock {key}"
            )

    def try_acquire(self, key: str) -> bool:
        return self._take(key, blocking=False)


def _release_held_locks(session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is not None:
        return
    held = session.info.pop(_HELD_LOCKS_KEY, None)
    if not held:
        return
    for key, lock in held.items():
        lock.release()
        ProcessAdvisoryLock._checkin(key)
    logger.debug("advisory_locks.released", extra={"keys": list(held)})


def advisory_lock_for(session: Session, timeout_seconds: float) -> AdvisoryLock:
    if session.get_bind().dialect.name == "postgresql":
        return PostgresAdvisoryLock(session, timeout_seconds)
    return ProcessAdvisoryLock(session, timeout_seconds)
