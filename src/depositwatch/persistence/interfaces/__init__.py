from depositwatch.persistence.interfaces.ledger_repo import LedgerRepoProtocol
from depositwatch.persistence.interfaces.verifications_repo import (
    VerificationFilter,
    VerificationsRepoProtocol,
)
from depositwatch.persistence.interfaces.wallets_repo import WalletsRepoProtocol

__all__ = [
    "LedgerRepoProtocol",
    "VerificationFilter",
    "VerificationsRepoProtocol",
    "WalletsRepoProtocol",
]
