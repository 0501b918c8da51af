from __future__ import annotations

from dataclasses import dataclass

from depositwatch.domain.errors import RecordNotFoundError
from depositwatch.domain.models import Currency, VerificationRecord
from depositwatch.persistence.interfaces.verifications_repo import VerificationFilter
from depositwatch.persistence.uow import UnitOfWorkFactory

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

_STATUS_FILTERS: dict[str, tuple[bool | None, bool | None]] = {
    "pending": (False, False),
    "confirmed": (True, False),
    "credited": (None, True),
}


@dataclass(frozen=True)
class StatusPage:
    items: list[VerificationRecord]
    total: int
    limit: int
    offset: int

    def as_dict(self, *, max_retries: int, operator: bool = False) -> dict[str, object]:
        return {
            "verifications": [
                item.to_operator_dict() if operator else item.to_public_dict(max_retries=max_retries)
                for item in self.items
            ],
            "pagination": {
                "total": self.total,
                "limit": self.limit,
                "offset": self.offset,
                "hasMore": self.offset + len(self.items) < self.total,
            },
        }


def build_filter(
    *,
    currency: str | None = None,
    confirmed: bool | None = None,
    credited: bool | None = None,
    user_id: int | None = None,
    txid: str | None = None,
    status: str | None = None,
) -> VerificationFilter:
    if status is not None:
        key = status.strip().lower()
        if key not in _STATUS_FILTERS:
            raise ValueError(f"status must be one of: {', '.join(_STATUS_FILTERS)}")
        confirmed, credited = _STATUS_FILTERS[key]
    return VerificationFilter(
        currency=Currency.parse(currency).value if currency is not None else None,
        confirmed=confirmed,
        credited=credited,
        user_id=user_id,
        txid=txid.strip().lower() if txid else None,
    )


class StatusService:
    """Read-only verification lookups for depositors and operators."""

    def __init__(self, uow_factory: UnitOfWorkFactory, *, max_retries: int) -> None:
        self._uow_factory = uow_factory
        self.max_retries = max_retries

    def query(
        self,
        *,
        currency: str | None = None,
        confirmed: bool | None = None,
        credited: bool | None = None,
        user_id: int | None = None,
        txid: str | None = None,
        status: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> StatusPage:
        resolved_limit = DEFAULT_PAGE_SIZE if limit is None else min(int(limit), MAX_PAGE_SIZE)
        if resolved_limit < 1:
            raise ValueError("limit must be >= 1")
        if offset < 0:
            raise ValueError("offset must be >= 0")
        filters = build_filter(
            currency=currency,
            confirmed=confirmed,
            credited=credited,
            user_id=user_id,
            txid=txid,
            status=status,
        )
        with self._uow_factory(read_only=True) as uow:
            items = uow.verifications.query(filters, limit=resolved_limit, offset=offset)
            total = uow.verifications.count(filters)
        return StatusPage(items=items, total=total, limit=resolved_limit, offset=offset)

    def get(self, record_id: int) -> VerificationRecord:
        with self._uow_factory(read_only=True) as uow:
            record = uow.verifications.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"verification {record_id} does not exist")
        return record
