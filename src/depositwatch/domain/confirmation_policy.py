from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from depositwatch.domain.errors import ConfigurationError, UnsupportedCurrencyError
from depositwatch.domain.models import Currency

if TYPE_CHECKING:
    from depositwatch.config import Settings

DEFAULT_REQUIRED_CONFIRMATIONS: Mapping[Currency, int] = MappingProxyType(
    {
        Currency.BTC: 2,
        Currency.ETH: 12,
        Currency.DOGE: 2,
    }
)


@dataclass(frozen=True)
class ConfirmationPolicy:
    required: Mapping[Currency, int] = field(default_factory=lambda: DEFAULT_REQUIRED_CONFIRMATIONS)

    def __post_init__(self) -> None:
        for currency, count in self.required.items():
            if int(count) < 1:
                raise ConfigurationError(
                    f"required confirmations for {currency.value} must be >= 1, got {count}"
                )

    def required_confirmations(self, currency: Currency | str) -> int:
        resolved = Currency.parse(currency)
        count = self.required.get(resolved)
        if count is None:
            raise UnsupportedCurrencyError(
                f"no confirmation policy configured for {resolved.value}"
            )
        return int(count)

    def is_confirmed(self, currency: Currency | str, confirmations: int) -> bool:
        return confirmations >= self.required_confirmations(currency)

    @classmethod
    def from_settings(cls, settings: Settings) -> ConfirmationPolicy:
        return cls(
            required=MappingProxyType(
                {
                    Currency.BTC: int(settings.required_confirmations_btc),
                    Currency.ETH: int(settings.required_confirmations_eth),
                    Currency.DOGE: int(settings.required_confirmations_doge),
                }
            )
        )
