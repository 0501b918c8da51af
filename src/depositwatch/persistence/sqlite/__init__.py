from depositwatch.persistence.sqlite.ledger_repo import SqliteLedgerRepo
from depositwatch.persistence.sqlite.verifications_repo import SqliteVerificationsRepo
from depositwatch.persistence.sqlite.wallets_repo import SqliteWalletsRepo

__all__ = ["SqliteLedgerRepo", "SqliteVerificationsRepo", "SqliteWalletsRepo"]
