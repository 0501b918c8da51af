from __future__ import annotations

import logging

from depositwatch.adapters.chain_adapter import ChainAdapter, confirmation_depth
from depositwatch.adapters.explorer_http import ExplorerHttpClient
from depositwatch.domain.errors import NotFoundOnChain, TransientNetworkError
from depositwatch.domain.models import ChainTransaction, Currency, TxOutput

logger = logging.getLogger(__name__)


class MempoolBitcoinAdapter(ChainAdapter):
    """Bitcoin via the mempool.space REST API.

    The transaction endpoint only reports the containing block, so depth is
    derived from a second call for the chain tip.
    """

    currency = Currency.BTC

    def __init__(self, http: ExplorerHttpClient) -> None:
        self._http = http

    def close(self) -> None:
        self._http.close()

    def get_tip_height(self) -> int:
        raw = self._http.get_text("/blocks/tip/height")
        try:
            return int(raw)
        except ValueError as exc:
            raise TransientNetworkError(f"mempool returned an invalid tip height: {raw[:32]!r}") from exc

    def fetch_transaction(self, txid: str) -> ChainTransaction:
        payload = self._http.get_json(f"/tx/{txid}")
        if not isinstance(payload, dict):
            raise TransientNetworkError("mempool transaction payload must be a JSON object")
        if not payload.get("txid"):
            raise NotFoundOnChain()

        outputs = tuple(self._parse_outputs(payload.get("vout")))
        status = payload.get("status") or {}
        if not status.get("confirmed"):
            return ChainTransaction(
                txid=txid,
                confirmations=0,
                outputs=outputs,
                raw={"status": status},
            )

        block_height = status.get("block_height")
        if not isinstance(block_height, int) or isinstance(block_height, bool):
            raise TransientNetworkError("mempool reported a confirmed transaction without block height")
        tip_height = self.get_tip_height()
        confirmations = confirmation_depth(tip_height, block_height)
        return ChainTransaction(
            txid=txid,
            confirmations=confirmations,
            outputs=outputs,
            block_height=block_height,
            raw={"status": status, "tip_height": tip_height},
        )

    def _parse_outputs(self, vout: object) -> list[TxOutput]:
        if not isinstance(vout, list):
            return []
        parsed: list[TxOutput] = []
        for item in vout:
            if not isinstance(item, dict):
                continue
            address = item.get("scriptpubkey_address")
            value = item.get("value")
            # OP_RETURN and bare-script outputs carry no address
            if not address or not isinstance(value, int) or isinstance(value, bool):
                continue
            parsed.append(TxOutput(address=str(address), amount_minor=value))
        return parsed
