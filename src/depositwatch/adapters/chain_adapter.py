from __future__ import annotations

from abc import ABC, abstractmethod

from depositwatch.domain.models import ChainTransaction, Currency


def confirmation_depth(tip_height: int, block_height: int) -> int:
    """Blocks on top of the containing block, counting the containing block itself."""
    return max(0, tip_height - block_height + 1)


class ChainAdapter(ABC):
    currency: Currency

    @abstractmethod
    def fetch_transaction(self, txid: str) -> ChainTransaction:
        """Return the normalized transaction.

        Raises NotFoundOnChain when the explorer does not know the txid and
        TransientNetworkError for anything the next batch may resolve.
        """
        raise NotImplementedError

    @abstractmethod
    def get_tip_height(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        return None
