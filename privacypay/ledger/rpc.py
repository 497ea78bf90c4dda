# privacypay/ledger/rpc.py
"""
Async JSON-RPC client for Solana and the ZK-compression indexer.

Only methods on the allow-list are ever issued; anything else is refused
before a request leaves the process. Every call is bounded by the client
timeout, and every transport failure or timeout surfaces as NetworkError.
No response is cached.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

import httpx

from privacypay import config
from privacypay.errors import MethodNotAllowed, NetworkError, ProofUnavailable
from privacypay.ledger.models import Blockhash, CompressedAccount, ValidityProof

LOG = logging.getLogger("privacypay.rpc")
LOG.addHandler(logging.NullHandler())

# JSON-RPC "Invalid params": what a node answers for a malformed signature.
INVALID_PARAMS = -32602


class RpcError(NetworkError):
    """The RPC node answered with a JSON-RPC error object."""
    code = "rpc_error"

    def __init__(self, method: str, error: Any):
        self.method = method
        self.error = error
        self.rpc_code = error.get("code") if isinstance(error, dict) else None
        detail = error.get("message") if isinstance(error, dict) else str(error)
        super().__init__(f"RPC {method} failed: {detail}")


class LedgerClient:
    def __init__(
        self,
        rpc_url: str = config.SOLANA_RPC_URL,
        compression_url: Optional[str] = None,
        timeout: float = config.RPC_TIMEOUT_SEC,
        allowed_methods: Iterable[str] = config.ALLOWED_RPC_METHODS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        # Helius and Photon serve both APIs from one URL; split only if needed.
        self.compression_url = compression_url or rpc_url
        self.timeout = timeout
        self.allowed_methods = frozenset(allowed_methods)
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def call(self, method: str, params: Any = None, *, url: Optional[str] = None) -> Any:
        if method not in self.allowed_methods:
            LOG.warning("Blocked RPC method not on allow-list: %s", method)
            raise MethodNotAllowed(f"RPC method not allowed: {method}")

        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params if params is not None else []}
        try:
            r = await self._http().post(url or self.rpc_url, json=body)
            r.raise_for_status()
            payload = r.json()
        except httpx.TimeoutException as e:
            raise NetworkError(f"RPC {method} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"RPC {method} failed: {e}") from e
        except ValueError as e:
            raise NetworkError(f"RPC {method} returned invalid JSON") from e

        if isinstance(payload, dict) and payload.get("error"):
            raise RpcError(method, payload["error"])
        return payload.get("result") if isinstance(payload, dict) else None

    # =========================
    # Plain ledger queries
    # =========================

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """None when the node has no such transaction, including when `signature` is not one at all."""
        try:
            return await self.call(
                "getTransaction",
                [
                    signature,
                    {"encoding": "jsonParsed", "commitment": "confirmed", "maxSupportedTransactionVersion": 0},
                ],
            )
        except RpcError as e:
            if e.rpc_code != INVALID_PARAMS:
                raise
            LOG.info("Node rejected signature %r: %s", signature[:100], e)
            return None

    async def get_latest_blockhash(self) -> Blockhash:
        res = await self.call("getLatestBlockhash", [{"commitment": "confirmed"}])
        value = (res or {}).get("value") or {}
        if not value.get("blockhash"):
            raise NetworkError("getLatestBlockhash returned no blockhash")
        return Blockhash(blockhash=value["blockhash"], last_valid_block_height=int(value.get("lastValidBlockHeight") or 0))

    async def get_signatures_for_address(self, address: str, limit: int = 10) -> List[Dict[str, Any]]:
        return list(await self.call("getSignaturesForAddress", [address, {"limit": limit}]) or [])

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        res = await self.call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        values = (res or {}).get("value") or [None]
        return values[0]

    async def confirm_transaction(self, signature: str, timeout: Optional[float] = None, poll_interval: float = 0.5) -> Optional[Any]:
        """
        Poll until `signature` is confirmed. Returns the on-chain error object,
        or None on success. Raises NetworkError if it never lands in time.
        """
        deadline = time.monotonic() + (timeout if timeout is not None else self.timeout)
        while True:
            status = await self.get_signature_status(signature)
            if status and status.get("confirmationStatus") in ("confirmed", "finalized"):
                return status.get("err")
            if status and status.get("err"):
                return status["err"]
            if time.monotonic() >= deadline:
                raise NetworkError(f"Transaction {signature} was not confirmed in time")
            await asyncio.sleep(poll_interval)

    async def get_health(self) -> str:
        return str(await self.call("getHealth"))

    # =========================
    # ZK compression indexer
    # =========================

    async def get_compressed_accounts_by_owner(self, owner: str) -> List[CompressedAccount]:
        """All unspent compressed accounts of `owner`, in indexer order."""
        out: List[CompressedAccount] = []
        cursor = None
        while True:
            params: Dict[str, Any] = {"owner": owner}
            if cursor:
                params["cursor"] = cursor
            res = await self.call("getCompressedAccountsByOwner", params, url=self.compression_url)
            value = (res or {}).get("value") or {}
            out.extend(CompressedAccount.from_rpc(it) for it in value.get("items") or [])
            cursor = value.get("cursor")
            if not cursor:
                return out

    async def get_compressed_balance_by_owner(self, owner: str) -> int:
        res = await self.call("getCompressedBalanceByOwner", {"owner": owner}, url=self.compression_url)
        return int((res or {}).get("value") or 0)

    async def get_validity_proof(self, hashes: List[str]) -> ValidityProof:
        try:
            res = await self.call(
                "getValidityProof",
                {"hashes": list(hashes), "newAddressesWithTrees": []},
                url=self.compression_url,
            )
        except RpcError as e:
            raise ProofUnavailable(f"Failed to get validity proof: {e}") from e

        value = (res or {}).get("value") or {}
        proof = value.get("compressedProof")
        root_indices = value.get("rootIndices")
        if not proof or root_indices is None:
            raise ProofUnavailable(
                f"Failed to get validity proof or root indices. Proof: {bool(proof)}, Indices: {root_indices is not None}"
            )
        if len(root_indices) == 0:
            raise ProofUnavailable("Root indices are empty. Cannot verify proof.")
        return ValidityProof(proof_blob=proof, root_indices=[int(i) for i in root_indices], account_hashes=list(hashes))

    async def get_state_tree_infos(self) -> List[Dict[str, str]]:
        # Public trees are fixed per cluster; they are configuration, not state.
        return config.state_tree_infos()
