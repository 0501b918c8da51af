from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from threading import Lock

import pytest

from depositwatch.adapters.chain_adapter import ChainAdapter
from depositwatch.adapters.registry import ChainAdapterRegistry
from depositwatch.config import Settings
from depositwatch.domain.confirmation_policy import ConfirmationPolicy
from depositwatch.domain.errors import NotFoundOnChain
from depositwatch.domain.models import ChainTransaction, Currency, TxOutput
from depositwatch.persistence.uow import UnitOfWorkFactory
from depositwatch.services.batch_status import InMemoryBatchStatusStore
from depositwatch.services.ledger_service import LedgerService
from depositwatch.services.reconciliation_service import ReconciliationService
from depositwatch.services.wallet_registry import WalletRegistry

BTC_TXID = "abc" + "0" * 61
BTC_ADDRESS = "bc1qxyz"
DOGE_ADDRESS = "DQKfGqDvMTYLrSXvJpXb2PmrJbS4bG2Q1e"
ETH_ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys or key in {"HTTPX_LOG_LEVEL", "HTTPCORE_LOG_LEVEL"}:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "state.sqlite"))
    monkeypatch.setenv("DEPOSITWATCH_LOCK_DIR", str(tmp_path / "locks"))


class FakeChainAdapter(ChainAdapter):
    """Replays queued explorer results per txid; the last result repeats."""

    def __init__(self, currency: Currency) -> None:
        self.currency = currency
        self.calls: list[str] = []
        self._results: dict[str, list[object]] = {}
        self._lock = Lock()

    def queue(self, txid: str, *results: object) -> None:
        with self._lock:
            self._results.setdefault(txid, []).extend(results)

    def fetch_transaction(self, txid: str) -> ChainTransaction:
        with self._lock:
            self.calls.append(txid)
            pending = self._results.get(txid)
            if not pending:
                raise NotFoundOnChain()
            result = pending.pop(0) if len(pending) > 1 else pending[0]
        if isinstance(result, Exception):
            raise result
        assert isinstance(result, ChainTransaction)
        return result

    def get_tip_height(self) -> int:
        return 0


def make_tx(
    txid: str,
    confirmations: int,
    outputs: list[tuple[str, int]] | None = None,
) -> ChainTransaction:
    return ChainTransaction(
        txid=txid,
        confirmations=confirmations,
        outputs=tuple(TxOutput(address=address, amount_minor=amount) for address, amount in outputs or []),
    )


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "depositwatch.sqlite")


@pytest.fixture
def uow_factory(db_path: str) -> UnitOfWorkFactory:
    return UnitOfWorkFactory(db_path)


@pytest.fixture
def fake_adapters() -> dict[Currency, FakeChainAdapter]:
    return {currency: FakeChainAdapter(currency) for currency in Currency}


@pytest.fixture
def wallets(uow_factory: UnitOfWorkFactory) -> WalletRegistry:
    registry = WalletRegistry(uow_factory)
    registry.set_address("BTC", BTC_ADDRESS)
    registry.set_address("DOGE", DOGE_ADDRESS)
    registry.set_address("ETH", ETH_ADDRESS)
    return registry


@pytest.fixture
def ledger(uow_factory: UnitOfWorkFactory) -> LedgerService:
    return LedgerService(uow_factory)


@pytest.fixture
def make_service(
    uow_factory: UnitOfWorkFactory,
    fake_adapters: dict[Currency, FakeChainAdapter],
    wallets: WalletRegistry,
    ledger: LedgerService,
) -> Callable[..., ReconciliationService]:
    def _make(**overrides) -> ReconciliationService:
        kwargs = {
            "uow_factory": uow_factory,
            "adapters": ChainAdapterRegistry(fake_adapters),
            "wallets": wallets,
            "ledger": ledger,
            "policy": ConfirmationPolicy(),
            "max_retries": 10,
            "batch_size": 50,
            "request_delay_seconds": 0.0,
            "status_store": InMemoryBatchStatusStore(ttl_seconds=60),
            "sleep_fn": lambda _seconds: None,
        }
        kwargs.update(overrides)
        return ReconciliationService(**kwargs)

    return _make


@pytest.fixture
def tx_factory() -> Callable[..., ChainTransaction]:
    return make_tx
