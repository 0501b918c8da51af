from __future__ import annotations

from datetime import datetime
from typing import Protocol

from depositwatch.domain.models import WalletAddress


class WalletsRepoProtocol(Protocol):
    def get_active_address(self, currency: str) -> str | None: ...

    def set_address(self, currency: str, address: str, *, active: bool, now: datetime) -> None: ...

    def list_addresses(self) -> list[WalletAddress]: ...
