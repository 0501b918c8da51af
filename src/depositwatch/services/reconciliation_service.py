from __future__ import annotations

import contextvars
import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import uuid4

from depositwatch.adapters.registry import ChainAdapterRegistry
from depositwatch.domain.confirmation_policy import ConfirmationPolicy
from depositwatch.domain.errors import (
    AlreadyCreditedError,
    DepositWatchError,
    LedgerWriteFailure,
    NoMatchingOutput,
    RecordNotFoundError,
    RetryExhausted,
)
from depositwatch.domain.models import (
    BatchSummary,
    ChainTransaction,
    Currency,
    RecordOutcome,
    TxOutput,
    VerificationRecord,
)
from depositwatch.domain.units import addresses_match, minor_to_major
from depositwatch.logging_context import with_batch_context, with_logging_context
from depositwatch.observability import get_instrumentation
from depositwatch.persistence.uow import UnitOfWorkFactory
from depositwatch.security.redaction import sanitize_text
from depositwatch.services.batch_status import (
    BatchProgress,
    BatchState,
    BatchStatusStore,
    InMemoryBatchStatusStore,
)
from depositwatch.services.ledger_service import LedgerService
from depositwatch.services.wallet_registry import WalletRegistry

logger = logging.getLogger(__name__)

_ERROR_MESSAGE_LIMIT = 500


@dataclass(frozen=True)
class RecordResult:
    record_id: int
    outcome: RecordOutcome
    credited: bool = False
    error: str | None = None


def _match_output(tx: ChainTransaction, address: str) -> TxOutput:
    for output in tx.outputs:
        if addresses_match(output.address, address):
            return output
    raise NoMatchingOutput()


def _error_text(message: str) -> str:
    return sanitize_text(message)[:_ERROR_MESSAGE_LIMIT]


class ReconciliationService:
    """Periodic confirmation and crediting loop over pending verification records.

    Each record is committed on its own, so an interrupted batch leaves every
    record it touched in a re-processable state. Per-record failures are
    written to the record and never escape the batch; only a failure to load
    the batch itself propagates to the caller.
    """

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        adapters: ChainAdapterRegistry,
        wallets: WalletRegistry,
        ledger: LedgerService,
        policy: ConfirmationPolicy,
        max_retries: int = 10,
        batch_size: int = 50,
        request_delay_seconds: float = 1.0,
        parallel_currencies: bool = False,
        status_store: BatchStatusStore | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._uow_factory = uow_factory
        self.adapters = adapters
        self.wallets = wallets
        self.ledger = ledger
        self.policy = policy
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.request_delay_seconds = max(0.0, request_delay_seconds)
        self.parallel_currencies = parallel_currencies
        self.status_store = status_store or InMemoryBatchStatusStore()
        self._sleep = sleep_fn
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    def process_batch(self, batch_size: int | None = None, *, job_id: str | None = None) -> BatchSummary:
        size = self.batch_size if batch_size is None else batch_size
        if size < 1:
            raise ValueError("batch_size must be >= 1")
        job_id = job_id or uuid4().hex
        started = time.monotonic()

        with with_batch_context(job_id):
            with self._uow_factory(read_only=True) as uow:
                records = uow.verifications.list_selectable(limit=size, max_retries=self.max_retries)

            summary = BatchSummary(total=len(records))
            self.status_store.put(
                BatchProgress(
                    job_id=job_id,
                    state=BatchState.RUNNING,
                    total=len(records),
                    processed=0,
                    started_at=self.now_provider(),
                )
            )
            logger.info("batch_started", extra={"extra": {"job_id": job_id, "selected": len(records)}})

            try:
                if self.parallel_currencies:
                    self._run_parallel(records, summary, job_id)
                else:
                    self._run_sequential(records, summary, job_id)
            except Exception as exc:
                self._finish(job_id, summary, state=BatchState.FAILED, error=_error_text(str(exc)))
                logger.exception("batch_failed", extra={"extra": {"job_id": job_id}})
                raise

            self._finish(job_id, summary, state=BatchState.COMPLETED)
            duration = time.monotonic() - started
            get_instrumentation().histogram("batch_duration_seconds", duration)
            logger.info(
                "batch_completed",
                extra={"extra": {"job_id": job_id, "duration_s": round(duration, 3), **summary.as_dict()}},
            )
        return summary

    def _finish(
        self,
        job_id: str,
        summary: BatchSummary,
        *,
        state: BatchState,
        error: str | None = None,
    ) -> None:
        current = self.status_store.get(job_id)
        self.status_store.put(
            BatchProgress(
                job_id=job_id,
                state=state,
                total=summary.total,
                processed=current.processed if current is not None else 0,
                started_at=current.started_at if current is not None else self.now_provider(),
                finished_at=self.now_provider(),
                summary=summary.as_dict(),
                error=error,
            )
        )

    def _run_sequential(self, records: Sequence[VerificationRecord], summary: BatchSummary, job_id: str) -> None:
        partial = self._process_group(records, job_id)
        summary.merge(partial)

    def _run_parallel(self, records: Sequence[VerificationRecord], summary: BatchSummary, job_id: str) -> None:
        groups: dict[str, list[VerificationRecord]] = {}
        for record in records:
            groups.setdefault(record.currency, []).append(record)
        if len(groups) <= 1:
            self._run_sequential(records, summary, job_id)
            return

        # Records of one currency stay sequential against their rate-limited explorer.
        with ThreadPoolExecutor(max_workers=len(groups), thread_name_prefix="depositwatch") as pool:
            futures = [
                pool.submit(contextvars.copy_context().run, self._process_group, group, job_id)
                for group in groups.values()
            ]
            for future in futures:
                summary.merge(future.result())

    def _process_group(self, records: Sequence[VerificationRecord], job_id: str) -> BatchSummary:
        partial = BatchSummary()
        for index, record in enumerate(records):
            if index > 0 and self.request_delay_seconds > 0:
                self._sleep(self.request_delay_seconds)
            result = self._process_one(record, force=False)
            partial.record(result.outcome, credited=result.credited)
            self.status_store.advance(job_id)
        return partial

    def process_record(self, record_id: int) -> RecordResult:
        """Operator retry of one record, ignoring the retry ceiling."""
        with self._uow_factory(read_only=True) as uow:
            record = uow.verifications.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"verification {record_id} does not exist")
        if record.credited:
            raise AlreadyCreditedError(f"verification {record_id} has already been credited")
        logger.info(
            "manual_retry_requested",
            extra={"extra": {"verification_id": record_id, "retry_count": record.retry_count}},
        )
        return self._process_one(record, force=True)

    def _process_one(self, record: VerificationRecord, *, force: bool) -> RecordResult:
        with with_logging_context(verification_id=record.id, txid=record.txid, currency=record.currency):
            try:
                result = self._reconcile(record, force=force)
            except Exception as exc:
                message = _error_text(f"unexpected error: {type(exc).__name__}: {exc}")
                logger.exception("record_processing_failed")
                with self._uow_factory() as uow:
                    uow.verifications.record_failure(
                        record.id, error_message=message, now=self.now_provider(), max_retries=self.max_retries
                    )
                if record.retry_count + 1 >= self.max_retries:
                    message = self._log_exhausted(message)
                result = RecordResult(record.id, RecordOutcome.FAILED, error=message)
            get_instrumentation().counter(
                "records_processed_total",
                1,
                attrs={"outcome": result.outcome.value, "currency": record.currency},
            )
            return result

    def _record_failure(self, record: VerificationRecord, exc: DepositWatchError) -> RecordResult:
        message = _error_text(exc.message)
        with self._uow_factory() as uow:
            uow.verifications.record_failure(
                record.id, error_message=message, now=self.now_provider(), max_retries=self.max_retries
            )
        attempts = record.retry_count + 1
        logger.info(
            "record_attempt_failed",
            extra={"extra": {"code": exc.code, "error": message, "retry_count": attempts}},
        )
        if attempts >= self.max_retries:
            message = self._log_exhausted(message)
        return RecordResult(record.id, RecordOutcome.FAILED, error=message)

    def _log_exhausted(self, reason: str) -> str:
        exhausted = RetryExhausted(self.max_retries, reason)
        logger.warning(
            "record_retry_exhausted",
            extra={"extra": {"code": exhausted.code, "error": exhausted.message}},
        )
        get_instrumentation().counter("records_exhausted_total", 1)
        return exhausted.message

    def _reconcile(self, record: VerificationRecord, *, force: bool) -> RecordResult:
        if record.credited:
            return RecordResult(record.id, RecordOutcome.SKIPPED)
        if not force and record.retry_count >= self.max_retries:
            logger.debug("record_exhausted_skipped", extra={"extra": {"retry_count": record.retry_count}})
            return RecordResult(record.id, RecordOutcome.SKIPPED)

        if record.confirmed:
            if not record.awaiting_credit:
                return RecordResult(record.id, RecordOutcome.SKIPPED)
            return self._credit_only(record)

        now = self.now_provider()
        try:
            currency = Currency.parse(record.currency)
            required = self.policy.required_confirmations(currency)
            address = self.wallets.active_address(currency)
            tx = self.adapters.get(currency).fetch_transaction(record.txid)
            output = _match_output(tx, address)
        except DepositWatchError as exc:
            return self._record_failure(record, exc)

        amount_major = minor_to_major(output.amount_minor, currency)
        meta = {
            "confirmations": tx.confirmations,
            "required_confirmations": required,
            "block_height": tx.block_height,
            "checked_at": now.isoformat(),
            "explorer": tx.raw,
        }

        if not self.policy.is_confirmed(currency, tx.confirmations):
            pending_reason = f"awaiting confirmations ({tx.confirmations}/{required})"
            with self._uow_factory() as uow:
                uow.verifications.record_progress(
                    record.id,
                    matched_address=output.address,
                    amount_minor=output.amount_minor,
                    amount_major=amount_major,
                    now=now,
                    meta=meta,
                    pending_reason=pending_reason,
                    max_retries=self.max_retries,
                )
            logger.info(
                "record_still_pending",
                extra={"extra": {"confirmations": tx.confirmations, "required": required}},
            )
            if record.retry_count + 1 >= self.max_retries:
                return RecordResult(
                    record.id, RecordOutcome.STILL_PENDING, error=self._log_exhausted(pending_reason)
                )
            return RecordResult(record.id, RecordOutcome.STILL_PENDING)

        with self._uow_factory() as uow:
            uow.verifications.mark_confirmed(
                record.id,
                matched_address=output.address,
                amount_minor=output.amount_minor,
                amount_major=amount_major,
                now=now,
                meta=meta,
            )
        logger.info(
            "record_confirmed",
            extra={
                "extra": {
                    "confirmations": tx.confirmations,
                    "required": required,
                    "amount": format(amount_major, "f"),
                }
            },
        )
        if record.user_id is None:
            return RecordResult(record.id, RecordOutcome.CONFIRMED)

        try:
            credit = self.ledger.credit_verification(record.id, count_attempt=False)
        except LedgerWriteFailure as exc:
            message = _error_text(exc.message)
            with self._uow_factory() as uow:
                uow.verifications.record_error(
                    record.id, error_message=message, now=self.now_provider(), max_retries=self.max_retries
                )
            logger.warning("record_credit_failed", extra={"extra": {"error": message}})
            return RecordResult(record.id, RecordOutcome.CONFIRMED, error=message)
        return RecordResult(record.id, RecordOutcome.CONFIRMED, credited=credit.applied)

    def _credit_only(self, record: VerificationRecord) -> RecordResult:
        """Confirmed but uncredited: skip the explorer and retry the ledger step."""
        try:
            credit = self.ledger.credit_verification(record.id, count_attempt=True)
        except LedgerWriteFailure as exc:
            return self._record_failure(record, exc)
        if not credit.applied:
            return RecordResult(record.id, RecordOutcome.SKIPPED)
        return RecordResult(record.id, RecordOutcome.CREDITED, credited=True)
