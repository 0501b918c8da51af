from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from depositwatch.domain.errors import MissingWalletConfig
from depositwatch.domain.models import Currency, WalletAddress
from depositwatch.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)


class WalletRegistry:
    """Active receiving address per currency, backed by the state DB."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    def active_address(self, currency: Currency | str) -> str:
        code = Currency.parse(currency).value
        with self._uow_factory(read_only=True) as uow:
            address = uow.wallets.get_active_address(code)
        if address is None:
            raise MissingWalletConfig(f"no active wallet address configured for {code}")
        return address.strip()

    def set_address(self, currency: Currency | str, address: str, *, active: bool = True) -> None:
        code = Currency.parse(currency).value
        cleaned = str(address or "").strip()
        if not cleaned:
            raise ValueError("wallet address must not be empty")
        with self._uow_factory() as uow:
            uow.wallets.set_address(code, cleaned, active=active, now=self.now_provider())
        logger.info(
            "wallet_address_updated",
            extra={"extra": {"currency": code, "address": cleaned, "active": active}},
        )

    def list_addresses(self) -> list[WalletAddress]:
        with self._uow_factory(read_only=True) as uow:
            return uow.wallets.list_addresses()
