from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from depositwatch.domain.errors import (
    AlreadyCreditedError,
    NotFoundOnChain,
    RecordNotFoundError,
    TransientNetworkError,
)
from depositwatch.domain.models import Currency, RecordOutcome
from depositwatch.services.batch_status import BatchState, InMemoryBatchStatusStore
from depositwatch.services.ingest_service import IngestService

BTC_TXID = "abc" + "0" * 61
DOGE_TXID = "d0" * 32
ETH_TXID = "0x" + "e1" * 32
BTC_ADDRESS = "bc1qxyz"
DOGE_ADDRESS = "DQKfGqDvMTYLrSXvJpXb2PmrJbS4bG2Q1e"
ETH_ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"


@pytest.fixture
def ingest(uow_factory):
    return IngestService(uow_factory)


def _get(uow_factory, record_id):
    with uow_factory(read_only=True) as uow:
        return uow.verifications.get(record_id)


def test_below_threshold_stays_pending_then_confirms_and_credits(
    make_service, fake_adapters, tx_factory, ingest, ledger, uow_factory
) -> None:
    ledger.open_account(42)
    record = ingest.submit(BTC_TXID, "BTC", user_id=42).record
    fake_adapters[Currency.BTC].queue(
        BTC_TXID,
        tx_factory(BTC_TXID, 1, [(BTC_ADDRESS, 50_000_000)]),
        tx_factory(BTC_TXID, 2, [(BTC_ADDRESS, 50_000_000)]),
    )
    service = make_service()

    first = service.process_batch()
    pending = _get(uow_factory, record.id)

    assert first.still_pending == 1
    assert pending.confirmed is False
    assert pending.amount_major == Decimal("0.5")
    assert pending.amount_minor == 50_000_000
    assert pending.retry_count == 1
    assert pending.error_message is None
    assert pending.meta["confirmations"] == 1
    assert pending.meta["required_confirmations"] == 2

    second = service.process_batch()
    done = _get(uow_factory, record.id)

    assert second.as_dict() == {
        "total": 1,
        "confirmed": 1,
        "credited": 1,
        "stillPending": 0,
        "failed": 0,
        "skipped": 0,
    }
    assert done.confirmed is True
    assert done.credited is True
    assert done.confirmed_at is not None
    assert done.credited_at is not None
    assert done.retry_count == 2
    assert ledger.get_balance(42) == Decimal("0.5")

    third = service.process_batch()
    assert third.total == 0
    assert ledger.get_balance(42) == Decimal("0.5")


def test_not_found_a_few_times_then_confirmed(
    make_service, fake_adapters, tx_factory, ingest, ledger, uow_factory
) -> None:
    ledger.open_account(42)
    record = ingest.submit(BTC_TXID, "BTC", user_id=42).record
    fake_adapters[Currency.BTC].queue(
        BTC_TXID,
        NotFoundOnChain(),
        NotFoundOnChain(),
        NotFoundOnChain(),
        tx_factory(BTC_TXID, 3, [(BTC_ADDRESS, 50_000_000)]),
    )
    service = make_service()

    for _ in range(3):
        assert service.process_batch().failed == 1
    failing = _get(uow_factory, record.id)
    assert failing.retry_count == 3
    assert failing.error_message == "not found"

    summary = service.process_batch()
    done = _get(uow_factory, record.id)

    assert summary.credited == 1
    assert done.credited is True
    assert done.error_message is None
    assert done.retry_count == 4


def test_never_found_record_is_abandoned_after_max_retries(
    make_service, fake_adapters, ingest, uow_factory
) -> None:
    record = ingest.submit(BTC_TXID, "BTC", user_id=42).record
    service = make_service(max_retries=10)

    for _ in range(10):
        service.process_batch()
    exhausted = _get(uow_factory, record.id)
    after = service.process_batch()

    assert exhausted.retry_count == 10
    assert exhausted.status(max_retries=10).value == "exhausted"
    assert exhausted.error_message == "retry limit reached (10): not found"
    assert after.total == 0
    assert len(fake_adapters[Currency.BTC].calls) == 10


def test_missing_wallet_is_recorded_as_failure(make_service, wallets, fake_adapters, ingest, uow_factory) -> None:
    wallets.set_address("ETH", ETH_ADDRESS, active=False)
    record = ingest.submit(ETH_TXID, "ETH", user_id=42).record

    summary = make_service().process_batch()
    stored = _get(uow_factory, record.id)

    assert summary.failed == 1
    assert stored.retry_count == 1
    assert stored.error_message == "no active wallet address configured for ETH"
    assert fake_adapters[Currency.ETH].calls == []


def test_no_matching_output(make_service, fake_adapters, tx_factory, ingest, uow_factory) -> None:
    record = ingest.submit(BTC_TXID, "BTC", user_id=42).record
    fake_adapters[Currency.BTC].queue(BTC_TXID, tx_factory(BTC_TXID, 6, [("bc1qsomeoneelse", 10_000)]))

    make_service().process_batch()
    stored = _get(uow_factory, record.id)

    assert stored.error_message == "no matching output"
    assert stored.confirmed is False
    assert stored.retry_count == 1


def test_eth_address_match_is_case_insensitive(
    make_service, fake_adapters, tx_factory, ingest, ledger, uow_factory
) -> None:
    ledger.open_account(7)
    record = ingest.submit(ETH_TXID, "ETH", user_id=7).record
    fake_adapters[Currency.ETH].queue(ETH_TXID, tx_factory(ETH_TXID, 12, [(ETH_ADDRESS.lower(), 25 * 10**17)]))

    make_service().process_batch()
    stored = _get(uow_factory, record.id)

    assert stored.credited is True
    assert stored.amount_major == Decimal("2.5")
    assert ledger.get_balance(7) == Decimal("2.5")


def test_unsupported_currency_record_fails_without_escaping_batch(make_service, uow_factory) -> None:
    with uow_factory() as uow:
        odd, _ = uow.verifications.insert_if_absent(
            txid="ff" * 32, currency="LTC", user_id=1, now=datetime.now(UTC)
        )

    summary = make_service().process_batch()
    stored = _get(uow_factory, odd.id)

    assert summary.failed == 1
    assert stored.retry_count == 1
    assert stored.error_message == "unsupported currency: LTC"


def test_transient_and_unexpected_errors_are_recorded(
    make_service, fake_adapters, ingest, uow_factory
) -> None:
    btc = ingest.submit(BTC_TXID, "BTC", user_id=1).record
    doge = ingest.submit(DOGE_TXID, "DOGE", user_id=1).record
    fake_adapters[Currency.BTC].queue(BTC_TXID, TransientNetworkError("mempool request timed out"))
    fake_adapters[Currency.DOGE].queue(DOGE_TXID, RuntimeError("boom"))

    summary = make_service().process_batch()

    assert summary.failed == 2
    assert _get(uow_factory, btc.id).error_message == "mempool request timed out"
    assert _get(uow_factory, doge.id).error_message == "unexpected error: RuntimeError: boom"
    assert _get(uow_factory, doge.id).retry_count == 1


def test_confirmed_without_user_waits_for_backfill_then_credits_without_explorer(
    make_service, fake_adapters, tx_factory, ingest, ledger, uow_factory
) -> None:
    record = ingest.submit(DOGE_TXID, "DOGE").record
    fake_adapters[Currency.DOGE].queue(DOGE_TXID, tx_factory(DOGE_TXID, 5, [(DOGE_ADDRESS, 150_000_000)]))
    service = make_service()

    first = service.process_batch()
    confirmed = _get(uow_factory, record.id)
    assert first.confirmed == 1 and first.credited == 0
    assert confirmed.confirmed is True and confirmed.credited is False
    assert service.process_batch().total == 0

    ledger.open_account(9)
    ingest.assign_user(record.id, 9)
    fake_adapters[Currency.DOGE].queue(DOGE_TXID, tx_factory(DOGE_TXID, 0))
    summary = service.process_batch()
    credited = _get(uow_factory, record.id)

    assert summary.credited == 1
    assert credited.credited is True
    assert credited.confirmed is True
    assert ledger.get_balance(9) == Decimal("1.5")
    assert fake_adapters[Currency.DOGE].calls == [DOGE_TXID]


def test_ledger_failure_keeps_record_confirmed_and_uncredited(
    make_service, fake_adapters, tx_factory, ingest, ledger, uow_factory
) -> None:
    record = ingest.submit(BTC_TXID, "BTC", user_id=42).record
    fake_adapters[Currency.BTC].queue(BTC_TXID, tx_factory(BTC_TXID, 2, [(BTC_ADDRESS, 1_000)]))
    service = make_service()

    summary = service.process_batch()
    stored = _get(uow_factory, record.id)

    assert summary.confirmed == 1 and summary.credited == 0
    assert stored.confirmed is True
    assert stored.credited is False
    assert stored.retry_count == 1
    assert stored.error_message == "ledger account 42 does not exist"

    ledger.open_account(42)
    retry = service.process_batch()
    stored = _get(uow_factory, record.id)

    assert retry.credited == 1
    assert stored.credited is True
    assert stored.retry_count == 2
    assert stored.error_message is None
    assert ledger.get_balance(42) == Decimal("0.00001")
    assert len(fake_adapters[Currency.BTC].calls) == 1


def test_operator_retry_ignores_retry_ceiling(
    make_service, fake_adapters, tx_factory, ingest, ledger, uow_factory
) -> None:
    ledger.open_account(42)
    record = ingest.submit(BTC_TXID, "BTC", user_id=42).record
    service = make_service(max_retries=2)
    service.process_batch()
    service.process_batch()
    assert service.process_batch().total == 0

    fake_adapters[Currency.BTC].queue(BTC_TXID, tx_factory(BTC_TXID, 2, [(BTC_ADDRESS, 50_000_000)]))
    result = service.process_record(record.id)

    assert result.outcome is RecordOutcome.CONFIRMED
    assert result.credited is True
    assert _get(uow_factory, record.id).retry_count == 3
    with pytest.raises(AlreadyCreditedError):
        service.process_record(record.id)
    with pytest.raises(RecordNotFoundError):
        service.process_record(9999)


def test_parallel_currencies_process_every_group(
    make_service, fake_adapters, tx_factory, ingest, ledger
) -> None:
    ledger.open_account(1)
    ingest.submit(BTC_TXID, "BTC", user_id=1)
    ingest.submit(DOGE_TXID, "DOGE", user_id=1)
    ingest.submit(ETH_TXID, "ETH", user_id=1)
    fake_adapters[Currency.BTC].queue(BTC_TXID, tx_factory(BTC_TXID, 2, [(BTC_ADDRESS, 50_000_000)]))
    fake_adapters[Currency.DOGE].queue(DOGE_TXID, tx_factory(DOGE_TXID, 2, [(DOGE_ADDRESS, 100_000_000)]))
    fake_adapters[Currency.ETH].queue(ETH_TXID, tx_factory(ETH_TXID, 11, [(ETH_ADDRESS, 10**18)]))

    summary = make_service(parallel_currencies=True).process_batch()

    assert summary.total == 3
    assert summary.credited == 2
    assert summary.still_pending == 1
    assert ledger.get_balance(1) == Decimal("1.5")


def test_batch_progress_is_published(make_service, fake_adapters, tx_factory, ingest) -> None:
    store = InMemoryBatchStatusStore(ttl_seconds=60)
    ingest.submit(BTC_TXID, "BTC")
    ingest.submit(DOGE_TXID, "DOGE")
    fake_adapters[Currency.BTC].queue(BTC_TXID, tx_factory(BTC_TXID, 1, [(BTC_ADDRESS, 1)]))

    summary = make_service(status_store=store).process_batch(job_id="job-1")
    progress = store.get("job-1")

    assert progress is not None
    assert progress.state is BatchState.COMPLETED
    assert progress.total == 2
    assert progress.processed == 2
    assert progress.finished_at is not None
    assert progress.summary == summary.as_dict()


def test_requests_are_throttled_within_a_currency(make_service, ingest) -> None:
    sleeps: list[float] = []
    for i in range(3):
        ingest.submit(f"{i:02d}" * 32, "BTC", user_id=1)

    make_service(request_delay_seconds=0.25, sleep_fn=sleeps.append).process_batch()

    assert sleeps == [0.25, 0.25]


def test_batch_size_limits_selection(make_service, fake_adapters, ingest, uow_factory) -> None:
    records = [ingest.submit(f"{i:02d}" * 32, "BTC", user_id=1).record for i in range(4)]

    summary = make_service(batch_size=3).process_batch()
    untouched = _get(uow_factory, records[3].id)

    assert summary.total == 3
    assert len(fake_adapters[Currency.BTC].calls) == 3
    assert records[3].txid not in fake_adapters[Currency.BTC].calls
    assert untouched.retry_count == 0
    assert untouched.last_checked == records[3].last_checked
    assert untouched.error_message is None
    with pytest.raises(ValueError):
        make_service().process_batch(0)


def test_last_pending_attempt_marks_record_terminal(
    make_service, fake_adapters, tx_factory, ingest, uow_factory
) -> None:
    record = ingest.submit(BTC_TXID, "BTC", user_id=42).record
    fake_adapters[Currency.BTC].queue(
        BTC_TXID,
        tx_factory(BTC_TXID, 1, [(BTC_ADDRESS, 1_000)]),
        tx_factory(BTC_TXID, 1, [(BTC_ADDRESS, 1_000)]),
    )
    service = make_service(max_retries=2)

    service.process_batch()
    assert _get(uow_factory, record.id).error_message is None
    summary = service.process_batch()
    stored = _get(uow_factory, record.id)

    assert summary.still_pending == 1
    assert stored.confirmed is False
    assert stored.retry_count == 2
    assert stored.error_message == "retry limit reached (2): awaiting confirmations (1/2)"
    assert service.process_batch().total == 0


def test_operator_retry_reaching_ceiling_stores_terminal_message(make_service, ingest, uow_factory) -> None:
    record = ingest.submit(BTC_TXID, "BTC", user_id=42).record
    service = make_service(max_retries=3)

    service.process_batch()
    service.process_batch()
    assert _get(uow_factory, record.id).error_message == "not found"

    result = service.process_record(record.id)
    stored = _get(uow_factory, record.id)

    assert result.outcome is RecordOutcome.FAILED
    assert result.error == "retry limit reached (3): not found"
    assert stored.error_message == "retry limit reached (3): not found"
