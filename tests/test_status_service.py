from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from depositwatch.domain.errors import RecordNotFoundError
from depositwatch.services.status_service import MAX_PAGE_SIZE, StatusService, build_filter

START = datetime(2026, 5, 1, tzinfo=UTC)


@pytest.fixture
def seeded(uow_factory, ledger):
    """Three BTC records: one pending, one confirmed, one credited."""
    ledger.open_account(1)
    ids = []
    with uow_factory() as uow:
        for i in range(3):
            record, _ = uow.verifications.insert_if_absent(
                txid=f"{i:02d}" * 32, currency="BTC", user_id=1, now=START + timedelta(minutes=i)
            )
            ids.append(record.id)
        for record_id in ids[1:]:
            uow.verifications.mark_confirmed(
                record_id,
                matched_address="bc1qxyz",
                amount_minor=10_000_000,
                amount_major=Decimal("0.1"),
                now=START,
                meta={"confirmations": 2},
            )
        uow.verifications.record_failure(ids[0], error_message="not found", now=START)
    ledger.credit_verification(ids[2], count_attempt=False)
    return ids


def test_status_filters(uow_factory, seeded) -> None:
    service = StatusService(uow_factory, max_retries=10)

    pending = service.query(status="pending")
    confirmed = service.query(status="confirmed")
    credited = service.query(status="credited")

    assert [item.id for item in pending.items] == [seeded[0]]
    assert [item.id for item in confirmed.items] == [seeded[1]]
    assert [item.id for item in credited.items] == [seeded[2]]


def test_explicit_flags_and_txid_lookup(uow_factory, seeded) -> None:
    service = StatusService(uow_factory, max_retries=10)

    assert service.query(confirmed=True).total == 2
    assert service.query(credited=False, user_id=1).total == 2
    assert service.query(txid=" " + "01" * 32 + " ").items[0].id == seeded[1]
    assert service.query(currency="doge").total == 0


def test_pagination_and_public_view_hides_diagnostics(uow_factory, seeded) -> None:
    page = StatusService(uow_factory, max_retries=10).query(limit=2, offset=0)
    payload = page.as_dict(max_retries=10)

    assert payload["pagination"] == {"total": 3, "limit": 2, "offset": 0, "hasMore": True}
    assert [item["id"] for item in payload["verifications"]] == [seeded[2], seeded[1]]
    first = payload["verifications"][0]
    assert first["status"] == "credited"
    assert first["amountMajorUnits"] == "0.1"
    assert "errorMessage" not in first
    assert "retryCount" not in first


def test_operator_view_exposes_diagnostics(uow_factory, seeded) -> None:
    page = StatusService(uow_factory, max_retries=10).query(status="pending")
    item = page.as_dict(max_retries=10, operator=True)["verifications"][0]

    assert item["errorMessage"] == "not found"
    assert item["retryCount"] == 1
    assert page.as_dict(max_retries=10)["pagination"]["hasMore"] is False


def test_limit_is_clamped_and_validated(uow_factory) -> None:
    service = StatusService(uow_factory, max_retries=10)

    assert service.query(limit=1000).limit == MAX_PAGE_SIZE
    with pytest.raises(ValueError):
        service.query(limit=0)
    with pytest.raises(ValueError):
        service.query(offset=-1)


def test_unknown_status_is_rejected() -> None:
    with pytest.raises(ValueError, match="status must be one of"):
        build_filter(status="lost")


def test_status_overrides_explicit_flags() -> None:
    filters = build_filter(confirmed=False, credited=False, status="credited")

    assert filters.confirmed is None
    assert filters.credited is True


def test_get_missing_record(uow_factory) -> None:
    with pytest.raises(RecordNotFoundError):
        StatusService(uow_factory, max_retries=10).get(1)
