from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol


class LedgerRepoProtocol(Protocol):
    def open_account(self, user_id: int, *, now: datetime) -> bool: ...

    def get_balance(self, user_id: int) -> Decimal | None: ...

    def credit(
        self,
        user_id: int,
        amount: Decimal,
        *,
        reference: str,
        now: datetime,
    ) -> tuple[Decimal, bool]:
        """Apply a journaled increment; returns (balance, applied)."""
        ...
