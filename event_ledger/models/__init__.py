from .db import AccountBalance as AccountBalanceModel
from .db import LedgerEntry as LedgerEntryModel
from .db import Operation as OperationModel
from .schemas import (
    CURRENCY_PATTERN,
    INT64_MAX,
    INT64_MIN,
    BalanceDriftResponse,
    BalanceResponse,
    LedgerEntryInput,
    LedgerEntryResponse,
    LedgerPageResponse,
    OperationRequest,
    OperationResponse,
    RebuildResponse,
    TransferRequest,
)

__all__ = [
    "CURRENCY_PATTERN",
    "INT64_MAX",
    "INT64_MIN",
    "BalanceDriftResponse",
    "BalanceResponse",
    "LedgerEntryInput",
    "LedgerEntryResponse",
    "LedgerPageResponse",
    "OperationRequest",
    "OperationResponse",
    "RebuildResponse",
    "TransferRequest",
    "AccountBalanceModel",
    "LedgerEntryModel",
    "OperationModel",
]
