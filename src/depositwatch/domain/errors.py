from __future__ import annotations


class DepositWatchError(RuntimeError):
    """Base class for per-record verification outcomes that are not successes."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundOnChain(DepositWatchError):
    code = "not_found"

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


class TransientNetworkError(DepositWatchError):
    code = "transient"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NoMatchingOutput(DepositWatchError):
    code = "no_matching_output"

    def __init__(self, message: str = "no matching output") -> None:
        super().__init__(message)


class MissingWalletConfig(DepositWatchError):
    code = "missing_wallet"


class LedgerWriteFailure(DepositWatchError):
    code = "ledger_write_failure"


class RetryExhausted(DepositWatchError):
    """Terminal outcome once a record's last allowed attempt has failed."""

    code = "retry_exhausted"

    def __init__(self, max_retries: int, reason: str) -> None:
        super().__init__(f"retry limit reached ({max_retries}): {reason}")
        self.max_retries = max_retries
        self.reason = reason


class UnsupportedCurrencyError(DepositWatchError, ValueError):
    code = "unsupported_currency"


class ConfigurationError(ValueError):
    """Raised when required runtime configuration is missing or invalid."""


class InvalidTxidError(ValueError):
    """Raised when a transaction id does not match the currency's format."""


class AlreadyCreditedError(ValueError):
    """Raised when an operator action targets a record that has already been credited."""


class RecordNotFoundError(LookupError):
    """Raised when a verification record id does not exist."""


class UserAlreadyAssignedError(ValueError):
    """Raised when a user backfill targets a record that already belongs to another user."""
