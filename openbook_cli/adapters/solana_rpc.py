from __future__ import annotations

import base64
import json
import socket
import urllib.error
import urllib.request
from typing import Any

_RETRYABLE_HTTP_STATUS = frozenset({408, 429, 500, 502, 503, 504})
_TRANSIENT_RPC_MESSAGES = (
    "block height exceeded",
    "blockhash not found",
)


class SolanaRpcTransportError(RuntimeError):
    """Network, timeout or HTTP level failure talking to the RPC node."""


class SolanaRpcResponseError(RuntimeError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, message: str, *, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


def is_transient_rpc_error(exc: BaseException) -> bool:
    if isinstance(exc, SolanaRpcTransportError):
        return True
    if isinstance(exc, SolanaRpcResponseError):
        lowered = str(exc).lower()
        return any(marker in lowered for marker in _TRANSIENT_RPC_MESSAGES)
    return False


def _response_error(error: Any) -> SolanaRpcResponseError:
    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message", "")).strip()
        return SolanaRpcResponseError(
            f"solana_rpc_error:{code}:{message}",
            code=int(code) if isinstance(code, int) else None,
            data=error.get("data"),
        )
    return SolanaRpcResponseError(f"solana_rpc_error:{error}")


class SolanaRpcAdapter:
    MAINNET_URL = "https://api.mainnet-beta.solana.com"

    def __init__(
        self,
        url: str | None = None,
        *,
        commitment: str = "confirmed",
        timeout_seconds: int = 30,
    ) -> None:
        resolved_url = url.strip() if isinstance(url, str) else ""
        self.url = resolved_url or self.MAINNET_URL
        self.commitment = commitment
        self.timeout_seconds = timeout_seconds
        self._next_id = 0

    def _request_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _post_json(self, body: Any) -> Any:
        data = json.dumps(body).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=data,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "openbook-cli/0.1",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace").strip()
            message = f"solana_rpc_http_error:{exc.code}"
            if raw:
                message = f"{message}:{raw[:160]}"
            if exc.code in _RETRYABLE_HTTP_STATUS:
                raise SolanaRpcTransportError(message) from exc
            raise SolanaRpcResponseError(message, code=exc.code) from exc
        except urllib.error.URLError as exc:
            raise SolanaRpcTransportError(f"solana_rpc_network_error:{exc.reason}") from exc
        except (TimeoutError, socket.timeout) as exc:
            raise SolanaRpcTransportError("solana_rpc_timeout") from exc
        except json.JSONDecodeError as exc:
            raise SolanaRpcTransportError("solana_rpc_invalid_json") from exc
        return payload

    def call(self, method: str, params: list[Any] | None = None) -> Any:
        body = {
            "jsonrpc": "2.0",
            "id": self._request_id(),
            "method": method,
            "params": params or [],
        }
        payload = self._post_json(body)
        if not isinstance(payload, dict):
            raise SolanaRpcTransportError("solana_rpc_invalid_response_payload")
        if payload.get("error") is not None:
            raise _response_error(payload["error"])
        return payload.get("result")

    def call_batch(self, calls: list[tuple[str, list[Any]]]) -> list[Any]:
        """Send several requests in one JSON-RPC batch.

        Results come back in the order of ``calls``. Any error entry fails
        the whole batch so the caller can retry it as a unit.
        """
        if not calls:
            return []
        body = []
        ids: list[int] = []
        for method, params in calls:
            request_id = self._request_id()
            ids.append(request_id)
            body.append({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        payload = self._post_json(body)
        if isinstance(payload, dict) and payload.get("error") is not None:
            raise _response_error(payload["error"])
        if not isinstance(payload, list):
            raise SolanaRpcTransportError("solana_rpc_invalid_batch_payload")
        by_id: dict[Any, dict[str, Any]] = {}
        for entry in payload:
            if isinstance(entry, dict):
                by_id[entry.get("id")] = entry
        results: list[Any] = []
        for request_id in ids:
            entry = by_id.get(request_id)
            if entry is None:
                raise SolanaRpcTransportError(f"solana_rpc_batch_missing_id:{request_id}")
            if entry.get("error") is not None:
                raise _response_error(entry["error"])
            results.append(entry.get("result"))
        return results

    def get_latest_blockhash(self) -> tuple[str, int]:
        result = self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = (result or {}).get("value") or {}
        blockhash = value.get("blockhash")
        last_valid = value.get("lastValidBlockHeight")
        if not isinstance(blockhash, str) or not isinstance(last_valid, int):
            raise SolanaRpcTransportError("solana_rpc_invalid_blockhash_payload")
        return blockhash, last_valid

    def get_block_height(self) -> int:
        result = self.call("getBlockHeight", [{"commitment": self.commitment}])
        if not isinstance(result, int):
            raise SolanaRpcTransportError("solana_rpc_invalid_block_height")
        return result

    def send_raw_transaction(
        self, raw_tx: bytes, *, skip_preflight: bool = True, max_retries: int = 0
    ) -> str:
        encoded = base64.b64encode(raw_tx).decode("ascii")
        options = {
            "encoding": "base64",
            "skipPreflight": skip_preflight,
            "maxRetries": max_retries,
            "preflightCommitment": self.commitment,
        }
        return str(self.call("sendTransaction", [encoded, options]))

    def get_signature_statuses(self, signatures: list[str]) -> list[dict[str, Any] | None]:
        result = self.call(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": True}],
        )
        value = (result or {}).get("value")
        if not isinstance(value, list):
            return [None for _ in signatures]
        return [item if isinstance(item, dict) else None for item in value]

    def get_signatures_for_address(
        self, address: str, *, limit: int, before: str | None = None
    ) -> list[dict[str, Any]]:
        options: dict[str, Any] = {"limit": limit, "commitment": self.commitment}
        if before:
            options["before"] = before
        result = self.call("getSignaturesForAddress", [address, options])
        if not isinstance(result, list):
            return []
        return [item for item in result if isinstance(item, dict)]

    def get_transactions(self, signatures: list[str]) -> list[dict[str, Any] | None]:
        options = {
            "encoding": "json",
            "commitment": self.commitment,
            "maxSupportedTransactionVersion": 0,
        }
        results = self.call_batch([("getTransaction", [sig, options]) for sig in signatures])
        return [item if isinstance(item, dict) else None for item in results]

    def get_token_account_balance(self, address: str) -> dict[str, Any]:
        result = self.call("getTokenAccountBalance", [address, {"commitment": self.commitment}])
        value = (result or {}).get("value")
        if not isinstance(value, dict):
            raise SolanaRpcResponseError(f"solana_rpc_invalid_token_balance:{address}")
        return value

    def get_recent_prioritization_fees(self, addresses: list[str] | None = None) -> list[int]:
        params: list[Any] = [addresses] if addresses else []
        result = self.call("getRecentPrioritizationFees", params)
        if not isinstance(result, list):
            return []
        fees: list[int] = []
        for item in result:
            if isinstance(item, dict) and isinstance(item.get("prioritizationFee"), int):
                fees.append(int(item["prioritizationFee"]))
        return fees

    def get_account_info(self, address: str) -> bytes | None:
        result = self.call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        return _decode_account_data((result or {}).get("value"))

    def get_multiple_accounts(self, addresses: list[str]) -> list[bytes | None]:
        if not addresses:
            return []
        result = self.call(
            "getMultipleAccounts",
            [addresses, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if not isinstance(value, list):
            return [None for _ in addresses]
        return [_decode_account_data(item) for item in value]

    def get_program_accounts(
        self, program_id: str, *, filters: list[dict[str, Any]] | None = None
    ) -> list[tuple[str, bytes]]:
        options: dict[str, Any] = {"encoding": "base64", "commitment": self.commitment}
        if filters:
            options["filters"] = filters
        result = self.call("getProgramAccounts", [program_id, options])
        if not isinstance(result, list):
            return []
        accounts: list[tuple[str, bytes]] = []
        for item in result:
            if not isinstance(item, dict):
                continue
            data = _decode_account_data(item.get("account"))
            pubkey = item.get("pubkey")
            if data is not None and isinstance(pubkey, str):
                accounts.append((pubkey, data))
        return accounts

    def get_version(self) -> dict[str, Any]:
        result = self.call("getVersion")
        return result if isinstance(result, dict) else {}


def _decode_account_data(value: Any) -> bytes | None:
    if not isinstance(value, dict):
        return None
    data = value.get("data")
    if isinstance(data, list) and data and isinstance(data[0], str):
        return base64.b64decode(data[0])
    return None
