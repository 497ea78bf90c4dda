"""
Ledger RPC Client Tests
"""

import json

import httpx
import pytest

from privacypay.errors import MethodNotAllowed, NetworkError, ProofUnavailable
from privacypay.ledger.rpc import LedgerClient, RpcError


def _client(handler, **kwargs) -> LedgerClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LedgerClient(rpc_url="https://rpc.test", client=http, **kwargs)


def _result(value):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": value})
    return handler


class TestCall:
    """Tests for the JSON-RPC transport."""

    @pytest.mark.asyncio
    async def test_method_not_allowed_never_sent(self):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json={"result": None})

        client = _client(handler)
        with pytest.raises(MethodNotAllowed):
            await client.call("requestAirdrop", ["x", 1])
        assert sent == []

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(NetworkError):
            await _client(handler).get_transaction("sig")

    @pytest.mark.asyncio
    async def test_http_error_is_network_error(self):
        with pytest.raises(NetworkError):
            await _client(lambda r: httpx.Response(503)).get_health()

    @pytest.mark.asyncio
    async def test_rpc_error_object(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "bad"}})

        with pytest.raises(RpcError) as exc:
            await _client(handler).get_transaction("sig")
        assert "bad" in str(exc.value)
        assert isinstance(exc.value, NetworkError)

    @pytest.mark.asyncio
    async def test_get_transaction_params(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": None})

        assert await _client(handler).get_transaction("sigZ") is None
        assert seen["method"] == "getTransaction"
        assert seen["params"][0] == "sigZ"
        assert seen["params"][1]["encoding"] == "jsonParsed"
        assert seen["params"][1]["maxSupportedTransactionVersion"] == 0

    @pytest.mark.asyncio
    async def test_malformed_signature_is_not_found(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "Invalid param: WrongSize"}})

        assert await _client(handler).get_transaction("not-a-signature") is None


class TestConfirm:
    """Tests for confirmation polling."""

    @pytest.mark.asyncio
    async def test_confirmed(self):
        status = {"value": [{"confirmationStatus": "confirmed", "err": None}]}
        assert await _client(_result(status)).confirm_transaction("sig", timeout=1, poll_interval=0) is None

    @pytest.mark.asyncio
    async def test_on_chain_error_returned(self):
        status = {"value": [{"confirmationStatus": "processed", "err": {"InstructionError": [0, "Custom"]}}]}
        err = await _client(_result(status)).confirm_transaction("sig", timeout=1, poll_interval=0)
        assert err == {"InstructionError": [0, "Custom"]}

    @pytest.mark.asyncio
    async def test_deadline_is_network_error(self):
        polls = []

        def handler(request):
            polls.append(request)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"value": [None]}})

        with pytest.raises(NetworkError, match="not confirmed in time"):
            await _client(handler).confirm_transaction("sig", timeout=0.05, poll_interval=0.01)
        assert len(polls) >= 1


class TestCompression:
    """Tests for indexer calls."""

    @pytest.mark.asyncio
    async def test_accounts_paginated(self):
        pages = {
            None: {"value": {"items": [{"hash": "a", "lamports": 5, "owner": "o", "tree": "t", "leafIndex": 1}], "cursor": "c1"}},
            "c1": {"value": {"items": [{"hash": "b", "lamports": 7, "owner": "o", "tree": "t", "leafIndex": 2}], "cursor": None}},
        }

        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": pages[body["params"].get("cursor")]})

        accounts = await _client(handler).get_compressed_accounts_by_owner("o")
        assert [(a.hash, a.amount) for a in accounts] == [("a", 5), ("b", 7)]
        assert accounts[0].tree_context == {"tree": "t", "leafIndex": 1}

    @pytest.mark.asyncio
    async def test_validity_proof(self):
        proof = await _client(_result({"value": {"compressedProof": {"a": "x"}, "rootIndices": [3, 4]}})).get_validity_proof(["h1", "h2"])
        assert proof.root_indices == [3, 4]
        assert proof.account_hashes == ["h1", "h2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "value",
        [
            {"compressedProof": None, "rootIndices": [1]},
            {"compressedProof": {"a": "x"}},
            {"compressedProof": {"a": "x"}, "rootIndices": []},
        ],
    )
    async def test_validity_proof_missing(self, value):
        with pytest.raises(ProofUnavailable):
            await _client(_result({"value": value})).get_validity_proof(["h1"])

    @pytest.mark.asyncio
    async def test_balance(self):
        assert await _client(_result({"value": 1234})).get_compressed_balance_by_owner("o") == 1234
