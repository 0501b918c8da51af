from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

import httpx

from depositwatch.adapters.chain_adapter import ChainAdapter
from depositwatch.adapters.etherscan import EtherscanEthereumAdapter
from depositwatch.adapters.explorer_http import ExplorerHttpClient
from depositwatch.adapters.mempool import MempoolBitcoinAdapter
from depositwatch.adapters.sochain import SoChainDogecoinAdapter
from depositwatch.domain.errors import ConfigurationError
from depositwatch.domain.models import Currency
from depositwatch.services.rate_limiter import TokenBucketRateLimiter, default_explorer_rate_limiter

if TYPE_CHECKING:
    from depositwatch.config import Settings

AdapterFactory = Callable[["Settings", TokenBucketRateLimiter, "httpx.BaseTransport | None"], ChainAdapter]


def _build_btc(
    settings: Settings, rate_limiter: TokenBucketRateLimiter, transport: httpx.BaseTransport | None
) -> ChainAdapter:
    http = ExplorerHttpClient(
        settings.mempool_base_url,
        group="mempool",
        timeout=settings.http_timeout_seconds,
        transport=transport,
        rate_limiter=rate_limiter,
    )
    return MempoolBitcoinAdapter(http)


def _build_doge(
    settings: Settings, rate_limiter: TokenBucketRateLimiter, transport: httpx.BaseTransport | None
) -> ChainAdapter:
    http = ExplorerHttpClient(
        settings.sochain_base_url,
        group="sochain",
        timeout=settings.http_timeout_seconds,
        transport=transport,
        rate_limiter=rate_limiter,
    )
    return SoChainDogecoinAdapter(http)


def _build_eth(
    settings: Settings, rate_limiter: TokenBucketRateLimiter, transport: httpx.BaseTransport | None
) -> ChainAdapter:
    api_key = settings.etherscan_key()
    http = ExplorerHttpClient(
        settings.etherscan_base_url,
        group="etherscan",
        timeout=settings.http_timeout_seconds,
        transport=transport,
        rate_limiter=rate_limiter,
        known_secrets=(api_key,) if api_key else (),
    )
    return EtherscanEthereumAdapter(http, api_key=api_key)


ADAPTER_FACTORIES: Mapping[Currency, AdapterFactory] = {
    Currency.BTC: _build_btc,
    Currency.ETH: _build_eth,
    Currency.DOGE: _build_doge,
}


class ChainAdapterRegistry:
    """Exactly one adapter per supported currency, fixed at construction."""

    def __init__(self, adapters: Mapping[Currency, ChainAdapter]) -> None:
        missing = [currency.value for currency in Currency if currency not in adapters]
        if missing:
            raise ConfigurationError(f"no chain adapter registered for: {', '.join(missing)}")
        for currency, adapter in adapters.items():
            if adapter.currency is not currency:
                raise ConfigurationError(
                    f"adapter {type(adapter).__name__} serves {adapter.currency.value}, not {currency.value}"
                )
        self._adapters = dict(adapters)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
    ) -> ChainAdapterRegistry:
        limiter = rate_limiter or default_explorer_rate_limiter()
        return cls(
            {currency: factory(settings, limiter, transport) for currency, factory in ADAPTER_FACTORIES.items()}
        )

    def get(self, currency: Currency | str) -> ChainAdapter:
        return self._adapters[Currency.parse(currency)]

    def currencies(self) -> tuple[Currency, ...]:
        return tuple(self._adapters)

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()
