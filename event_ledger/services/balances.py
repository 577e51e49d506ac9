from __future__ import annotations

import logging
from typing import Optional

from sqlmodel import Session

from ..core.config import get_settings
from ..core.errors import RebuildInProgressError
from ..core.locks import advisory_lock_for
from ..models import BalanceDriftResponse
from ..models.db import utcnow
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

REBUILD_LOCK_KEY = "ledger.balances:rebuild"


class BalanceCacheService:
    """Maintenance for the ``account_balances`` projection.

    Live writes keep the cache current from ``LedgerService``; this service
    recomputes it from ``ledger_entries`` when it has to be repaired.
    """

    def __init__(
        self,
        session: Session,
        repository: Optional[LedgerRepository] = None,
    ) -> None:
        self.session = session
        self.repository = repository or LedgerRepository(session)

    def rebuild_all(self) -> int:
        """Replace every cached balance with the sum of the account's entries.

        Returns the number of accounts written. Raises ``RebuildInProgressError``
        when another rebuild is running.
        """
        lock = advisory_lock_for(self.session, get_settings().lock_timeout_seconds)
        with self.session.begin():
            if not lock.try_acquire(REBUILD_LOCK_KEY):
                raise RebuildInProgressError("A balance rebuild is already running")
            cleared = self.repository.clear_balances()
            rebuilt = self.repository.rebuild_balances_from_ledger(utcnow())

        logger.info(
            "ledger.balances.rebuilt",
            extra={"cleared": cleared, "accounts": rebuilt},
        )
        return rebuilt

    def find_drift(self) -> list[BalanceDriftResponse]:
        with self.session.begin():
            cached = self.repository.cached_balances()
            totals = self.repository.ledger_totals()

        drift = [
            BalanceDriftResponse(
                account_id=account_id,
                cached_cents=cached.get(account_id, 0),
                ledger_cents=totals.get(account_id, 0),
            )
            for account_id in sorted(cached.keys() | totals.keys(), key=str)
            if cached.get(account_id, 0) != totals.get(account_id, 0)
        ]
        if drift:
            logger.warning("ledger.balances.drift", extra={"accounts": len(drift)})
        return drift
