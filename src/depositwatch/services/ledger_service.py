from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

from depositwatch.domain.errors import LedgerWriteFailure, RecordNotFoundError
from depositwatch.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)


VERIFICATION_REFERENCE_PREFIX = "verification:"
MANUAL_REFERENCE_PREFIX = "manual:"


def credit_reference(record_id: int) -> str:
    return f"{VERIFICATION_REFERENCE_PREFIX}{record_id}"


@dataclass(frozen=True)
class CreditResult:
    record_id: int
    user_id: int | None
    amount: Decimal
    applied: bool
    balance: Decimal | None = None


@dataclass(frozen=True)
class ManualCreditResult:
    user_id: int
    amount: Decimal
    reference: str
    applied: bool
    balance: Decimal


class LedgerService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    def open_account(self, user_id: int) -> bool:
        with self._uow_factory() as uow:
            created = uow.ledger.open_account(user_id, now=self.now_provider())
        if created:
            logger.info("ledger_account_opened", extra={"extra": {"user_id": user_id}})
        return created

    def get_balance(self, user_id: int) -> Decimal:
        with self._uow_factory(read_only=True) as uow:
            balance = uow.ledger.get_balance(user_id)
        if balance is None:
            raise RecordNotFoundError(f"ledger account {user_id} does not exist")
        return balance

    def credit_user(
        self,
        user_id: int,
        amount: Decimal,
        *,
        reference: str | None = None,
    ) -> ManualCreditResult:
        """Operator credit outside the deposit flow; a reused reference is applied once."""
        if amount <= 0:
            raise LedgerWriteFailure(f"manual credit amount must be > 0, got {amount}")
        resolved = reference or f"{MANUAL_REFERENCE_PREFIX}{uuid4().hex}"
        if resolved.startswith(VERIFICATION_REFERENCE_PREFIX):
            raise ValueError(
                f"reference prefix {VERIFICATION_REFERENCE_PREFIX!r} is reserved for deposit credits"
            )
        with self._uow_factory() as uow:
            balance, applied = uow.ledger.credit(user_id, amount, reference=resolved, now=self.now_provider())
        logger.info(
            "manual_credit_applied" if applied else "manual_credit_replayed",
            extra={
                "extra": {
                    "user_id": user_id,
                    "amount": format(amount, "f"),
                    "reference": resolved,
                    "balance": format(balance, "f"),
                }
            },
        )
        return ManualCreditResult(user_id, amount, resolved, applied, balance)

    def credit_verification(self, record_id: int, *, count_attempt: bool) -> CreditResult:
        """Credit a confirmed record's amount to its user at most once.

        The credited flag and the ledger increment commit in one transaction;
        a ledger failure rolls both back and leaves credited=false. A record
        that is already credited is a no-op success.
        """
        now = self.now_provider()
        with self._uow_factory() as uow:
            record = uow.verifications.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"verification {record_id} does not exist")
            if record.credited:
                return CreditResult(record_id, record.user_id, record.amount_major, applied=False)
            if not record.confirmed or record.user_id is None:
                raise LedgerWriteFailure(
                    f"verification {record_id} is not creditable (confirmed={record.confirmed}, "
                    f"user_id={record.user_id})"
                )
            if not uow.verifications.mark_credited(record_id, now=now, count_attempt=count_attempt):
                return CreditResult(record_id, record.user_id, record.amount_major, applied=False)
            balance, applied = uow.ledger.credit(
                record.user_id,
                record.amount_major,
                reference=credit_reference(record_id),
                now=now,
            )

        logger.info(
            "verification_credited",
            extra={
                "extra": {
                    "user_id": record.user_id,
                    "amount": format(record.amount_major, "f"),
                    "balance": format(balance, "f"),
                    "journal_applied": applied,
                }
            },
        )
        return CreditResult(record_id, record.user_id, record.amount_major, applied=True, balance=balance)
