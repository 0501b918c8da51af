from __future__ import annotations

from typing import Any

from depositwatch.adapters.chain_adapter import ChainAdapter, confirmation_depth
from depositwatch.adapters.explorer_http import ExplorerHttpClient
from depositwatch.domain.errors import NotFoundOnChain, TransientNetworkError
from depositwatch.domain.models import ChainTransaction, Currency, TxOutput

_API_PATH = "/v2/api"
_MAINNET_CHAIN_ID = "1"


def _parse_hex_int(value: object, *, field: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise TransientNetworkError(f"Etherscan returned an invalid {field}: {value!r}")
    try:
        return int(value, 16)
    except ValueError as exc:
        raise TransientNetworkError(f"Etherscan returned an invalid {field}: {value!r}") from exc


class EtherscanEthereumAdapter(ChainAdapter):
    """Ethereum via the Etherscan proxy module.

    Only plain value transfers are matched: the output is the `to` address
    with the transaction value in wei. Reverted transactions move no value
    and are reported without outputs.
    """

    currency = Currency.ETH

    def __init__(self, http: ExplorerHttpClient, *, api_key: str | None = None) -> None:
        self._http = http
        self._api_key = api_key

    def close(self) -> None:
        self._http.close()

    def _call(self, module: str, action: str, **params: str) -> Any:
        query = {"chainid": _MAINNET_CHAIN_ID, "module": module, "action": action, **params}
        if self._api_key:
            query["apikey"] = self._api_key
        payload = self._http.get_json(_API_PATH, params=query)
        if not isinstance(payload, dict):
            raise TransientNetworkError("Etherscan payload must be a JSON object")
        if "error" in payload:
            error = payload.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else error
            raise TransientNetworkError(f"Etherscan {action} error: {message}")
        if payload.get("status") == "0":
            raise TransientNetworkError(
                f"Etherscan {action} failed: {payload.get('message')} {payload.get('result')}"
            )
        return payload.get("result")

    def get_tip_height(self) -> int:
        return _parse_hex_int(self._call("proxy", "eth_blockNumber"), field="block number")

    def _receipt_succeeded(self, txid: str) -> bool:
        result = self._call("transaction", "gettxreceiptstatus", txhash=txid)
        if not isinstance(result, dict):
            raise TransientNetworkError("Etherscan returned an invalid receipt status")
        # "" is returned for pre-Byzantium transactions, which have no status field
        return result.get("status") != "0"

    def fetch_transaction(self, txid: str) -> ChainTransaction:
        result = self._call("proxy", "eth_getTransactionByHash", txhash=txid)
        if result is None:
            raise NotFoundOnChain()
        if not isinstance(result, dict):
            raise TransientNetworkError(f"Etherscan returned an invalid transaction: {str(result)[:64]}")

        outputs: tuple[TxOutput, ...] = ()
        to_address = result.get("to")
        if to_address:
            outputs = (TxOutput(address=str(to_address), amount_minor=_parse_hex_int(result.get("value"), field="value")),)

        if result.get("blockNumber") is None:
            return ChainTransaction(txid=txid, confirmations=0, outputs=outputs, raw={"pending": True})

        block_height = _parse_hex_int(result.get("blockNumber"), field="block number")
        tip_height = self.get_tip_height()
        reverted = not self._receipt_succeeded(txid)
        return ChainTransaction(
            txid=txid,
            confirmations=confirmation_depth(tip_height, block_height),
            outputs=() if reverted else outputs,
            block_height=block_height,
            raw={"block_number": block_height, "tip_height": tip_height, "reverted": reverted},
        )
