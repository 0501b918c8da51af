from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from depositwatch.domain.errors import AlreadyCreditedError, RecordNotFoundError, UserAlreadyAssignedError
from depositwatch.domain.models import Currency, VerificationRecord
from depositwatch.domain.txid import normalize_txid
from depositwatch.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    record: VerificationRecord
    created: bool


class IngestService:
    """Registers observed transactions and backfills their owning user."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    def submit(self, txid: str, currency: str, *, user_id: int | None = None) -> IngestResult:
        resolved = Currency.parse(currency)
        normalized_txid = normalize_txid(txid, resolved)
        now = self.now_provider()
        with self._uow_factory() as uow:
            record, created = uow.verifications.insert_if_absent(
                txid=normalized_txid,
                currency=resolved.value,
                user_id=user_id,
                now=now,
            )
            if not created and user_id is not None and record.user_id is None and not record.credited:
                uow.verifications.assign_user(record.id, user_id, now=now)
                record = uow.verifications.get(record.id) or record

        logger.info(
            "verification_submitted",
            extra={
                "extra": {
                    "verification_id": record.id,
                    "currency": resolved.value,
                    "txid": normalized_txid,
                    "created": created,
                }
            },
        )
        return IngestResult(record=record, created=created)

    def assign_user(self, record_id: int, user_id: int) -> VerificationRecord:
        with self._uow_factory() as uow:
            record = uow.verifications.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"verification {record_id} does not exist")
            if record.credited:
                raise AlreadyCreditedError(f"verification {record_id} has already been credited")
            if record.user_id is not None:
                if record.user_id == user_id:
                    return record
                raise UserAlreadyAssignedError(
                    f"verification {record_id} already belongs to user {record.user_id}"
                )
            uow.verifications.assign_user(record_id, user_id, now=self.now_provider())
            updated = uow.verifications.get(record_id)
        logger.info("verification_user_assigned", extra={"extra": {"verification_id": record_id, "user_id": user_id}})
        return updated or record
