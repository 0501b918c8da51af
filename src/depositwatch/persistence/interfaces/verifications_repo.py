from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from depositwatch.domain.models import VerificationRecord


@dataclass(frozen=True)
class VerificationFilter:
    currency: str | None = None
    confirmed: bool | None = None
    credited: bool | None = None
    user_id: int | None = None
    txid: str | None = None


class VerificationsRepoProtocol(Protocol):
    def insert_if_absent(
        self,
        *,
        txid: str,
        currency: str,
        user_id: int | None,
        now: datetime,
    ) -> tuple[VerificationRecord, bool]: ...

    def get(self, record_id: int) -> VerificationRecord | None: ...

    def get_by_key(self, txid: str, currency: str) -> VerificationRecord | None: ...

    def list_selectable(self, *, limit: int, max_retries: int) -> list[VerificationRecord]: ...

    def record_failure(
        self,
        record_id: int,
        *,
        error_message: str,
        now: datetime,
        meta: dict[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> None: ...

    def record_progress(
        self,
        record_id: int,
        *,
        matched_address: str,
        amount_minor: int,
        amount_major: Decimal,
        now: datetime,
        meta: dict[str, Any],
        pending_reason: str = "awaiting confirmations",
        max_retries: int | None = None,
    ) -> None: ...

    def mark_confirmed(
        self,
        record_id: int,
        *,
        matched_address: str,
        amount_minor: int,
        amount_major: Decimal,
        now: datetime,
        meta: dict[str, Any],
    ) -> None: ...

    def record_error(
        self,
        record_id: int,
        *,
        error_message: str,
        now: datetime,
        max_retries: int | None = None,
    ) -> None: ...

    def mark_credited(self, record_id: int, *, now: datetime, count_attempt: bool) -> bool: ...

    def assign_user(self, record_id: int, user_id: int, *, now: datetime) -> bool: ...

    def query(
        self,
        filters: VerificationFilter,
        *,
        limit: int,
        offset: int,
    ) -> list[VerificationRecord]: ...

    def count(self, filters: VerificationFilter) -> int: ...
