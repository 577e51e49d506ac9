from .balances import BalanceCacheService
from .ledger import LedgerService
from .queries import LedgerQueryService
from .repository import LedgerRepository

__all__ = [
    "BalanceCacheService",
    "LedgerQueryService",
    "LedgerRepository",
    "LedgerService",
]
