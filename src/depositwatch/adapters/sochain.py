from __future__ import annotations

from depositwatch.adapters.chain_adapter import ChainAdapter
from depositwatch.adapters.explorer_http import ExplorerHttpClient
from depositwatch.domain.errors import TransientNetworkError
from depositwatch.domain.models import ChainTransaction, Currency, TxOutput
from depositwatch.domain.units import major_to_minor


class SoChainDogecoinAdapter(ChainAdapter):
    """Dogecoin via SoChain v2, which reports confirmation depth directly."""

    currency = Currency.DOGE
    network = "DOGE"

    def __init__(self, http: ExplorerHttpClient) -> None:
        self._http = http

    def close(self) -> None:
        self._http.close()

    def _data(self, path: str) -> dict:
        payload = self._http.get_json(path)
        if not isinstance(payload, dict) or payload.get("status") != "success":
            raise TransientNetworkError("SoChain returned non-success status")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise TransientNetworkError("SoChain payload is missing data")
        return data

    def get_tip_height(self) -> int:
        data = self._data(f"/get_info/{self.network}")
        blocks = data.get("blocks")
        if not isinstance(blocks, int) or isinstance(blocks, bool):
            raise TransientNetworkError("SoChain returned an invalid tip height")
        return blocks

    def fetch_transaction(self, txid: str) -> ChainTransaction:
        data = self._data(f"/tx/{self.network}/{txid}")
        confirmations = data.get("confirmations")
        if not isinstance(confirmations, int) or isinstance(confirmations, bool):
            raise TransientNetworkError("SoChain returned an invalid confirmation count")

        outputs: list[TxOutput] = []
        for item in data.get("outputs") or []:
            if not isinstance(item, dict) or not item.get("address"):
                continue
            try:
                amount_minor = major_to_minor(str(item.get("value")), self.currency)
            except ValueError as exc:
                raise TransientNetworkError(f"SoChain returned an invalid output value: {item.get('value')!r}") from exc
            outputs.append(TxOutput(address=str(item["address"]), amount_minor=amount_minor))

        block_height = data.get("block_no")
        return ChainTransaction(
            txid=txid,
            confirmations=max(0, confirmations),
            outputs=tuple(outputs),
            block_height=block_height if isinstance(block_height, int) else None,
            raw={"confirmations": confirmations, "block_no": block_height},
        )
