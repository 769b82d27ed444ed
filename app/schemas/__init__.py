"""
Pydantic Schemas
================

Canonical events, settlement rows, reconciliation values and API
response wrappers.
"""

from app.schemas.common import BaseResponse, ErrorDetail, ErrorResponse
from app.schemas.notification import LifecycleEvent, NotificationEnvelope
from app.schemas.reconciliation import (
    DailyReport,
    Discrepancy,
    ReconciliationResult,
    TrendReport,
)
from app.schemas.settlement import SettlementRecord, SettlementSummary

__all__ = [
    "BaseResponse",
    "ErrorDetail",
    "ErrorResponse",
    "LifecycleEvent",
    "NotificationEnvelope",
    "DailyReport",
    "Discrepancy",
    "ReconciliationResult",
    "TrendReport",
    "SettlementRecord",
    "SettlementSummary",
]
