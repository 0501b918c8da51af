from __future__ import annotations

import argparse
import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from pydantic import ValidationError

from depositwatch.adapters.registry import ChainAdapterRegistry
from depositwatch.config import Settings
from depositwatch.domain.confirmation_policy import ConfirmationPolicy
from depositwatch.domain.errors import ConfigurationError, DepositWatchError
from depositwatch.logging_context import with_logging_context
from depositwatch.logging_utils import setup_logging
from depositwatch.observability import configure_instrumentation, get_instrumentation
from depositwatch.persistence.uow import UnitOfWorkFactory
from depositwatch.security.redaction import redact_data
from depositwatch.services.batch_status import InMemoryBatchStatusStore
from depositwatch.services.ingest_service import IngestService
from depositwatch.services.ledger_service import LedgerService
from depositwatch.services.process_lock import RunLockedError, single_instance_lock
from depositwatch.services.reconciliation_service import ReconciliationService
from depositwatch.services.status_service import StatusService
from depositwatch.services.wallet_registry import WalletRegistry

logger = logging.getLogger(__name__)

_HANDLED_ERRORS = (DepositWatchError, RunLockedError, ValueError, LookupError)


@dataclass
class Runtime:
    settings: Settings
    uow_factory: UnitOfWorkFactory
    wallets: WalletRegistry
    ledger: LedgerService
    ingest: IngestService
    status: StatusService
    adapters: ChainAdapterRegistry | None = None

    def reconciliation(self) -> ReconciliationService:
        if self.adapters is None:
            self.adapters = ChainAdapterRegistry.from_settings(self.settings)
        return ReconciliationService(
            uow_factory=self.uow_factory,
            adapters=self.adapters,
            wallets=self.wallets,
            ledger=self.ledger,
            policy=ConfirmationPolicy.from_settings(self.settings),
            max_retries=self.settings.max_retries,
            batch_size=self.settings.batch_size,
            request_delay_seconds=self.settings.request_delay_seconds,
            parallel_currencies=self.settings.parallel_currencies,
            status_store=InMemoryBatchStatusStore(ttl_seconds=self.settings.batch_status_ttl_seconds),
        )

    def close(self) -> None:
        if self.adapters is not None:
            self.adapters.close()


def build_runtime(settings: Settings) -> Runtime:
    uow_factory = UnitOfWorkFactory(settings.state_db_path)
    return Runtime(
        settings=settings,
        uow_factory=uow_factory,
        wallets=WalletRegistry(uow_factory),
        ledger=LedgerService(uow_factory),
        ingest=IngestService(uow_factory),
        status=StatusService(uow_factory, max_retries=settings.max_retries),
    )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _optional_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes"}:
        return True
    if normalized in {"0", "false", "no"}:
        return False
    raise argparse.ArgumentTypeError(f"expected true/false, got {value!r}")


def _amount(value: str) -> Decimal:
    try:
        amount = Decimal(value.strip())
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise argparse.ArgumentTypeError(f"amount must be a positive number, got {value!r}")
    return amount


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="depositwatch",
        description="Confirm incoming crypto deposits against block explorers and credit users once.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    poll = subparsers.add_parser("poll", help="Process one batch of pending verifications")
    poll.add_argument("--batch-size", type=int, default=None)
    poll.add_argument("--loop", action="store_true", help="Keep polling on an interval")
    poll.add_argument("--interval-seconds", type=int, default=60)
    poll.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Stop after N cycles when looping (-1 for infinite)",
    )

    submit = subparsers.add_parser("submit", help="Register an observed transaction")
    submit.add_argument("--txid", required=True)
    submit.add_argument("--currency", required=True)
    submit.add_argument("--user-id", type=int, default=None)

    retry = subparsers.add_parser("retry", help="Re-process one verification now, ignoring the retry ceiling")
    retry.add_argument("--id", type=int, required=True, dest="record_id")

    assign = subparsers.add_parser("assign-user", help="Attach a user to a verification without one")
    assign.add_argument("--id", type=int, required=True, dest="record_id")
    assign.add_argument("--user-id", type=int, required=True)

    status = subparsers.add_parser("status", help="Query verification records")
    status.add_argument("--currency", default=None)
    status.add_argument("--confirmed", type=_optional_bool, default=None)
    status.add_argument("--credited", type=_optional_bool, default=None)
    status.add_argument("--user-id", type=int, default=None)
    status.add_argument("--txid", default=None)
    status.add_argument("--status", choices=["pending", "confirmed", "credited"], default=None)
    status.add_argument("--limit", type=int, default=None)
    status.add_argument("--offset", type=int, default=0)
    status.add_argument("--operator", action="store_true", help="Include diagnostic fields")

    wallet_set = subparsers.add_parser("wallet-set", help="Set the receiving address for a currency")
    wallet_set.add_argument("--currency", required=True)
    wallet_set.add_argument("--address", required=True)
    wallet_set.add_argument("--inactive", action="store_true")

    subparsers.add_parser("wallet-list", help="List configured receiving addresses")

    account_open = subparsers.add_parser("account-open", help="Open a ledger account")
    account_open.add_argument("--user-id", type=int, required=True)

    balance = subparsers.add_parser("balance", help="Show a ledger balance")
    balance.add_argument("--user-id", type=int, required=True)

    credit = subparsers.add_parser("credit", help="Manually credit a ledger account")
    credit.add_argument("--user-id", type=int, required=True)
    credit.add_argument("--amount", type=_amount, required=True, help="Amount in major units")
    credit.add_argument(
        "--reference",
        default=None,
        help="Idempotency key; reusing it applies the credit once",
    )
    return parser


def run_with_optional_loop(
    *,
    cycle_fn: Callable[[], int],
    loop_enabled: bool,
    interval_seconds: int,
    max_cycles: int | None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> int:
    if interval_seconds < 0:
        print("interval-seconds must be >= 0")
        return 2
    if max_cycles is not None and (max_cycles == 0 or max_cycles < -1):
        print("max-cycles must be >= 1, or -1 for infinite")
        return 2
    if max_cycles == -1:
        max_cycles = None

    if not loop_enabled:
        return cycle_fn()

    cycle = 0
    last_rc = 0
    try:
        while True:
            cycle += 1
            try:
                last_rc = cycle_fn()
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "loop_cycle_failed",
                    extra={"extra": {"cycle": cycle, "error_type": type(exc).__name__}},
                )
                last_rc = 1
            if max_cycles is not None and cycle >= max_cycles:
                logger.info("loop_runner_completed", extra={"extra": {"cycles": cycle, "last_rc": last_rc}})
                return last_rc
            sleep_fn(max(1, interval_seconds))
    except KeyboardInterrupt:
        logger.info(
            "loop_runner_stopped",
            extra={"extra": {"cycles": cycle, "last_rc": last_rc, "reason": "keyboard_interrupt"}},
        )
        print("poll: interrupted, shutting down cleanly")
        return last_rc


def run_poll(runtime: Runtime, *, batch_size: int | None) -> int:
    service = runtime.reconciliation()
    with single_instance_lock(db_path=runtime.settings.state_db_path):
        summary = service.process_batch(batch_size)
    _print_json(summary.as_dict())
    return 0


def _dispatch(args: argparse.Namespace, runtime: Runtime) -> int:
    settings = runtime.settings
    if args.command == "poll":
        return run_with_optional_loop(
            cycle_fn=lambda: run_poll(runtime, batch_size=args.batch_size),
            loop_enabled=args.loop,
            interval_seconds=args.interval_seconds,
            max_cycles=args.max_cycles,
        )

    if args.command == "submit":
        result = runtime.ingest.submit(args.txid, args.currency, user_id=args.user_id)
        _print_json({"created": result.created, "verification": result.record.to_operator_dict()})
        return 0

    if args.command == "retry":
        result = runtime.reconciliation().process_record(args.record_id)
        record = runtime.status.get(args.record_id)
        _print_json(
            {
                "outcome": result.outcome.value,
                "credited": result.credited,
                "error": result.error,
                "verification": record.to_operator_dict(),
            }
        )
        return 0

    if args.command == "assign-user":
        record = runtime.ingest.assign_user(args.record_id, args.user_id)
        _print_json(record.to_operator_dict())
        return 0

    if args.command == "status":
        page = runtime.status.query(
            currency=args.currency,
            confirmed=args.confirmed,
            credited=args.credited,
            user_id=args.user_id,
            txid=args.txid,
            status=args.status,
            limit=args.limit,
            offset=args.offset,
        )
        _print_json(page.as_dict(max_retries=settings.max_retries, operator=args.operator))
        return 0

    if args.command == "wallet-set":
        runtime.wallets.set_address(args.currency, args.address, active=not args.inactive)
        return _dispatch(argparse.Namespace(command="wallet-list"), runtime)

    if args.command == "wallet-list":
        _print_json(
            [
                {
                    "currency": item.currency,
                    "address": item.address,
                    "isActive": item.is_active,
                    "updatedAt": item.updated_at.isoformat(),
                }
                for item in runtime.wallets.list_addresses()
            ]
        )
        return 0

    if args.command == "account-open":
        created = runtime.ledger.open_account(args.user_id)
        _print_json({"userId": args.user_id, "created": created})
        return 0

    if args.command == "balance":
        balance: Decimal = runtime.ledger.get_balance(args.user_id)
        _print_json({"userId": args.user_id, "balance": format(balance, "f")})
        return 0

    if args.command == "credit":
        result = runtime.ledger.credit_user(args.user_id, args.amount, reference=args.reference)
        _print_json(
            {
                "userId": result.user_id,
                "amount": format(result.amount, "f"),
                "reference": result.reference,
                "applied": result.applied,
                "balance": format(result.balance, "f"),
            }
        )
        return 0

    raise ConfigurationError(f"unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"invalid configuration: {redact_data(str(exc))}")
        return 2

    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.metrics_exporter,
        otlp_endpoint=settings.otlp_endpoint,
        prometheus_port=settings.prometheus_port,
    )
    logger.info(
        "runtime_prepared",
        extra={"extra": {"db_path": settings.state_db_path, "pid": os.getpid(), "command": args.command}},
    )

    runtime = build_runtime(settings)
    try:
        with with_logging_context(run_id=uuid4().hex[:12]):
            return _dispatch(args, runtime)
    except ConfigurationError as exc:
        print(f"configuration error: {exc}")
        return 2
    except _HANDLED_ERRORS as exc:
        logger.warning(
            "command_failed",
            extra={"extra": {"command": args.command, "error_type": type(exc).__name__}},
        )
        print(f"error: {exc}")
        return 1
    finally:
        runtime.close()
        get_instrumentation().flush()


if __name__ == "__main__":
    raise SystemExit(main())
