from __future__ import annotations

import re

from depositwatch.domain.errors import InvalidTxidError
from depositwatch.domain.models import Currency

_HEX64 = re.compile(r"^[a-fA-F0-9]{64}$")
_ETH_HASH = re.compile(r"^0x[a-fA-F0-9]{64}$")


def normalize_txid(txid: str, currency: Currency) -> str:
    candidate = str(txid or "").strip()
    if not candidate:
        raise InvalidTxidError("transaction id is required")
    if currency is Currency.ETH:
        if not _ETH_HASH.match(candidate):
            raise InvalidTxidError(
                "invalid Ethereum transaction id: expected 0x followed by 64 hex characters"
            )
        return candidate.lower()
    if not _HEX64.match(candidate):
        raise InvalidTxidError("invalid transaction id: expected 64 hexadecimal characters")
    return candidate.lower()
