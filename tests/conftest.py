"""
Privacy Pay Test Fixtures
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

import base58
import pytest
from nacl.signing import SigningKey

from privacypay import config
from privacypay.crypto_core.keys import IdentityKeyPair, KeyVault
from privacypay.ledger.models import Blockhash, CompressedAccount, TransactionPlan, ValidityProof
from privacypay.store import MemoryStore

NOW = 1_700_000_000


def _address(seed: int) -> str:
    return base58.b58encode(SigningKey(bytes([seed]) * 32).verify_key.encode()).decode()


class SendError(Exception):
    """What a wallet adapter raises when the node rejects a transaction."""

    def __init__(self, message: str, logs: Optional[List[str]] = None):
        super().__init__(message)
        self.logs = logs or []


class FakeLedger:
    """In-memory ledger + compression indexer."""

    def __init__(self):
        self.accounts: Dict[str, List[CompressedAccount]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.confirm_errors: Dict[str, Any] = {}
        self.signatures: Dict[str, List[Dict[str, Any]]] = {}
        self.proof_error: Optional[Exception] = None
        self.proof_requests: List[List[str]] = []
        self._blockhashes = itertools.count(1)

    def fund(self, owner: str, *amounts: int) -> List[CompressedAccount]:
        accs = self.accounts.setdefault(owner, [])
        for amount in amounts:
            accs.append(
                CompressedAccount(
                    owner=owner,
                    amount=amount,
                    hash=f"h{len(accs)}-{owner[:6]}-{amount}",
                    tree_context={"tree": "smt1NamzXdq4AMqS2fS2F1i5KTYPZRhoHgWx38d8WsT", "leafIndex": len(accs)},
                )
            )
        return list(accs)

    def unspent_hashes(self) -> set:
        return {a.hash for accs in self.accounts.values() for a in accs}

    def spend(self, hashes: List[str]) -> None:
        for owner, accs in self.accounts.items():
            self.accounts[owner] = [a for a in accs if a.hash not in hashes]

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return self.transactions.get(signature)

    async def get_compressed_accounts_by_owner(self, owner: str) -> List[CompressedAccount]:
        return list(self.accounts.get(owner, []))

    async def get_compressed_balance_by_owner(self, owner: str) -> int:
        return sum(a.amount for a in self.accounts.get(owner, []))

    async def get_validity_proof(self, hashes: List[str]) -> ValidityProof:
        self.proof_requests.append(list(hashes))
        if self.proof_error is not None:
            raise self.proof_error
        return ValidityProof(
            proof_blob={"a": "proof-a", "b": "proof-b", "c": "proof-c"},
            root_indices=[7] * len(hashes),
            account_hashes=list(hashes),
        )

    async def get_state_tree_infos(self) -> List[Dict[str, str]]:
        return config.state_tree_infos()

    async def get_latest_blockhash(self) -> Blockhash:
        n = next(self._blockhashes)
        return Blockhash(blockhash=f"blockhash{n}", last_valid_block_height=1000 + n)

    async def confirm_transaction(self, signature: str) -> Optional[Any]:
        return self.confirm_errors.get(signature)

    async def get_signatures_for_address(self, address: str, limit: int = 10) -> List[Dict[str, Any]]:
        return list(self.signatures.get(address, []))[:limit]


class FakeSubmitter:
    """
    Signs nothing; applies compressed-account spends the way the chain would,
    so a second spend of the same input is rejected.
    """

    def __init__(self, ledger: FakeLedger):
        self.ledger = ledger
        self.submitted: List[TransactionPlan] = []
        self.fail_program: Optional[str] = None
        self.hang_program: Optional[str] = None
        self._sigs = itertools.count(1)

    async def sign_and_submit(self, tx: TransactionPlan) -> str:
        if self.hang_program and self.hang_program in tx.program_ids:
            # a wallet prompt nobody answers
            await asyncio.Event().wait()
        if self.fail_program and self.fail_program in tx.program_ids:
            raise SendError("node unreachable")
        for ix in tx.instructions:
            inputs = [i["hash"] for i in ix.args.get("inputCompressedAccounts", [])]
            if inputs:
                if not set(inputs) <= self.ledger.unspent_hashes():
                    raise SendError(
                        "Transaction simulation failed",
                        logs=[
                            f"Program {config.LIGHT_SYSTEM_PROGRAM_ID} invoke [1]",
                            "Program log: ElementAlreadyExists",
                        ],
                    )
                self.ledger.spend(inputs)
        self.submitted.append(tx)
        return f"sig{next(self._sigs)}"


@pytest.fixture
def payer() -> str:
    return _address(1)


@pytest.fixture
def payee() -> str:
    return _address(2)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def submitter(ledger) -> FakeSubmitter:
    return FakeSubmitter(ledger)


@pytest.fixture
def vault() -> KeyVault:
    return KeyVault(MemoryStore())


@pytest.fixture
def recipient_keys() -> IdentityKeyPair:
    return IdentityKeyPair.from_secret(bytes(range(32)))


@pytest.fixture
def plain_tx():
    """Factory for a jsonParsed system-transfer transaction."""

    def build(
        source: str,
        destination: str,
        lamports: int,
        block_time: Optional[int] = NOW - 60,
        memo: Optional[str] = None,
        err: Any = None,
    ) -> Dict[str, Any]:
        instructions: List[Dict[str, Any]] = [
            {
                "program": "system",
                "programId": config.SYSTEM_PROGRAM_ID,
                "parsed": {
                    "type": "transfer",
                    "info": {"source": source, "destination": destination, "lamports": lamports},
                },
            }
        ]
        if memo is not None:
            instructions.append({"program": "spl-memo", "programId": config.MEMO_PROGRAM_ID, "parsed": memo})
        return {
            "blockTime": block_time,
            "meta": {"err": err, "logMessages": []},
            "transaction": {
                "message": {
                    "accountKeys": [
                        {"pubkey": source, "signer": True, "writable": True},
                        {"pubkey": destination, "signer": False, "writable": True},
                    ],
                    "instructions": instructions,
                }
            },
        }

    return build


@pytest.fixture
def shielded_tx():
    """Factory for a compressed transfer as jsonParsed shows it: opaque, with program logs."""

    def build(fee_payer: str, block_time: Optional[int] = NOW - 60, err: Any = None) -> Dict[str, Any]:
        return {
            "blockTime": block_time,
            "meta": {
                "err": err,
                "logMessages": [
                    f"Program {config.LIGHT_SYSTEM_PROGRAM_ID} invoke [1]",
                    "Program log: Instruction: Transfer",
                    f"Program {config.LIGHT_SYSTEM_PROGRAM_ID} success",
                ],
            },
            "transaction": {
                "message": {
                    "accountKeys": [{"pubkey": fee_payer, "signer": True, "writable": True}],
                    "instructions": [
                        {
                            "programId": config.LIGHT_SYSTEM_PROGRAM_ID,
                            "accounts": [fee_payer],
                            "data": "3Bxs4h24hBtQy9rw",
                        }
                    ],
                }
            },
        }

    return build
