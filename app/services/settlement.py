"""
Settlement Collector
====================

Normalizes raw platform settlement rows for one (date, platform) into
``SettlementRecord``s. Shape validation only, no matching.

Malformed rows are skipped and reported; a bad row never aborts
collection.
"""

import logging
from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from pydantic import ValidationError as PydanticValidationError

from app.models.event import Platform
from app.schemas.settlement import (
    CollectionResult,
    SettlementRecord,
    SettlementSummary,
    SkippedRow,
)

logger = logging.getLogger(__name__)

_ID_KEYS = ("id", "recordId", "settlementId")
_DATE_KEYS = ("settlement_date", "settlementDate", "date")
_TRANSACTION_KEYS = ("transaction_ref", "transactionRef", "transactionId", "orderId")


def _first(row: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if row.get(key) not in (None, ""):
            return row[key]
    return None


def _reason(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = error.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


class SettlementCollector:
    """Validates settlement rows and summarizes the result."""

    def collect(
        self,
        settlement_date: date,
        platform: Platform,
        rows: Iterable[Any],
    ) -> CollectionResult:
        """
        Normalize rows for ``(settlement_date, platform)``.

        Rows without their own id get ``{platform}-{date}-{index}``. Refund
        and chargeback rows are stored with negative amounts whatever sign
        the export used.

        Returns:
            CollectionResult with valid records and skipped rows
        """
        records: list[SettlementRecord] = []
        skipped: list[SkippedRow] = []

        for index, row in enumerate(rows):
            if not isinstance(row, Mapping):
                skipped.append(SkippedRow(index=index, reason="row is not an object"))
                continue

            data = dict(row)
            data["platform"] = platform
            if _first(row, _ID_KEYS) is None:
                data["id"] = f"{platform.value}-{settlement_date.isoformat()}-{index}"
            if _first(row, _DATE_KEYS) is None:
                data["settlement_date"] = settlement_date

            try:
                record = SettlementRecord.model_validate(data)
            except PydanticValidationError as exc:
                ref = _first(row, _TRANSACTION_KEYS)
                skipped.append(
                    SkippedRow(
                        index=index,
                        reason=_reason(exc),
                        transaction_ref=str(ref) if ref is not None else None,
                    )
                )
                continue

            records.append(self._signed(record))

        if skipped:
            logger.warning(
                "Skipped %d of %d %s settlement rows for %s",
                len(skipped),
                len(records) + len(skipped),
                platform.value,
                settlement_date,
            )

        return CollectionResult(
            platform=platform,
            settlement_date=settlement_date,
            records=tuple(records),
            skipped=tuple(skipped),
        )

    @staticmethod
    def _signed(record: SettlementRecord) -> SettlementRecord:
        if not record.event_kind.is_reversal or record.gross_amount <= 0:
            return record
        return record.model_copy(
            update={
                "gross_amount": -record.gross_amount,
                "platform_fee": -record.platform_fee,
                "net_amount": -record.net_amount,
            }
        )

    def summarize(
        self,
        settlement_date: date,
        platform: Platform,
        records: Sequence[SettlementRecord],
    ) -> SettlementSummary:
        """Totals and per-kind counts for one day's records."""
        counts = Counter(record.event_kind for record in records)
        return SettlementSummary(
            platform=platform,
            settlement_date=settlement_date,
            total_transactions=len(records),
            gross_amount=sum((r.gross_amount for r in records), Decimal("0")),
            fee_amount=sum((r.platform_fee for r in records), Decimal("0")),
            net_amount=sum((r.net_amount for r in records), Decimal("0")),
            tax_amount=sum((r.tax_amount for r in records), Decimal("0")),
            counts_by_kind=dict(counts),
            data_available=True,
        )
