from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from depositwatch.domain.errors import UnsupportedCurrencyError


class Currency(str, Enum):
    BTC = "BTC"
    ETH = "ETH"
    DOGE = "DOGE"

    @classmethod
    def parse(cls, value: object) -> Currency:
        if isinstance(value, Currency):
            return value
        normalized = str(value or "").strip().upper()
        try:
            return cls(normalized)
        except ValueError as exc:
            raise UnsupportedCurrencyError(f"unsupported currency: {normalized or repr(value)}") from exc


class VerificationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CREDITED = "credited"
    EXHAUSTED = "exhausted"


class RecordOutcome(str, Enum):
    STILL_PENDING = "still_pending"
    CONFIRMED = "confirmed"
    CREDITED = "credited"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TxOutput:
    address: str
    amount_minor: int


@dataclass(frozen=True)
class ChainTransaction:
    """Normalized explorer view of one transaction."""

    txid: str
    confirmations: int
    outputs: tuple[TxOutput, ...]
    block_height: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class VerificationRecord:
    id: int
    txid: str
    currency: str
    matched_address: str
    amount_minor: int
    amount_major: Decimal
    confirmed: bool
    confirmed_at: datetime | None
    credited: bool
    credited_at: datetime | None
    user_id: int | None
    retry_count: int
    error_message: str | None
    last_checked: datetime
    first_seen: datetime
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def awaiting_credit(self) -> bool:
        return self.confirmed and not self.credited and self.user_id is not None

    def status(self, *, max_retries: int) -> VerificationStatus:
        if self.credited:
            return VerificationStatus.CREDITED
        if self.confirmed:
            return VerificationStatus.CONFIRMED
        if self.retry_count >= max_retries:
            return VerificationStatus.EXHAUSTED
        return VerificationStatus.PENDING

    def to_public_dict(self, *, max_retries: int) -> dict[str, object]:
        """Depositor-facing view; operator diagnostics are left out."""
        return {
            "id": self.id,
            "txid": self.txid,
            "currency": self.currency,
            "amountMajorUnits": format(self.amount_major, "f"),
            "status": self.status(max_retries=max_retries).value,
            "confirmed": self.confirmed,
            "credited": self.credited,
            "firstSeen": self.first_seen.isoformat(),
        }

    def to_operator_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "txid": self.txid,
            "currency": self.currency,
            "matchedAddress": self.matched_address,
            "amountMinorUnits": self.amount_minor,
            "amountMajorUnits": format(self.amount_major, "f"),
            "confirmed": self.confirmed,
            "confirmedAt": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "credited": self.credited,
            "creditedAt": self.credited_at.isoformat() if self.credited_at else None,
            "userId": self.user_id,
            "retryCount": self.retry_count,
            "errorMessage": self.error_message,
            "lastChecked": self.last_checked.isoformat(),
            "firstSeen": self.first_seen.isoformat(),
            "meta": self.meta,
        }


@dataclass
class BatchSummary:
    total: int = 0
    confirmed: int = 0
    credited: int = 0
    still_pending: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: RecordOutcome, *, credited: bool = False) -> None:
        if outcome is RecordOutcome.CONFIRMED:
            self.confirmed += 1
        elif outcome is RecordOutcome.STILL_PENDING:
            self.still_pending += 1
        elif outcome is RecordOutcome.FAILED:
            self.failed += 1
        elif outcome is RecordOutcome.SKIPPED:
            self.skipped += 1
        # CREDITED alone means the record was confirmed by an earlier batch
        if credited or outcome is RecordOutcome.CREDITED:
            self.credited += 1

    def merge(self, other: BatchSummary) -> None:
        self.total += other.total
        self.confirmed += other.confirmed
        self.credited += other.credited
        self.still_pending += other.still_pending
        self.failed += other.failed
        self.skipped += other.skipped

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "confirmed": self.confirmed,
            "credited": self.credited,
            "stillPending": self.still_pending,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class WalletAddress:
    currency: str
    address: str
    is_active: bool
    updated_at: datetime
