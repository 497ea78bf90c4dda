# privacypay/ledger/models.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class CompressedAccount:
    """Unspent compressed SOL record. Consumed exactly once; never edited locally."""
    owner: str
    amount: int
    hash: str
    tree_context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_rpc(cls, item: Dict[str, Any]) -> "CompressedAccount":
        ctx = dict(item.get("merkleContext") or {})
        if item.get("tree") and "tree" not in ctx:
            ctx["tree"] = item["tree"]
        for k in ("leafIndex", "seq", "address"):
            if item.get(k) is not None:
                ctx[k] = item[k]
        return cls(
            owner=str(item.get("owner") or ""),
            amount=int(item.get("lamports") or 0),
            hash=str(item["hash"]),
            tree_context=ctx,
        )


@dataclass(frozen=True)
class ValidityProof:
    proof_blob: Dict[str, Any]
    root_indices: List[int]
    # ordered hashes the proof was computed for
    account_hashes: List[str] = field(default_factory=list)

    def covers(self, accounts: List[CompressedAccount]) -> bool:
        return self.account_hashes == [a.hash for a in accounts]


@dataclass(frozen=True)
class Blockhash:
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class AccountMeta:
    pubkey: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass
class Instruction:
    """
    Structured instruction. Byte-level serialisation belongs to the signing
    capability (wallet / SDK), which receives these plans.
    """
    program_id: str
    name: str
    accounts: List[AccountMeta] = field(default_factory=list)
    args: Dict[str, Any] = field(default_factory=dict)
    data: Optional[bytes] = None


@dataclass
class TransactionPlan:
    fee_payer: str
    instructions: List[Instruction]
    recent_blockhash: Optional[str] = None
    last_valid_block_height: Optional[int] = None
    skip_preflight: bool = True

    @property
    def program_ids(self) -> List[str]:
        return [ix.program_id for ix in self.instructions]


class ShieldedOperation(str, enum.Enum):
    SHIELD = "shield"
    UNSHIELD = "unshield"
    TRANSFER = "transfer"


@dataclass
class InstructionPlan:
    operation: ShieldedOperation
    payer: str
    amount: int
    value_tx: TransactionPlan
    memo_tx: Optional[TransactionPlan] = None
    inputs: List[CompressedAccount] = field(default_factory=list)
    proof: Optional[ValidityProof] = None
    destination: Optional[str] = None

    @property
    def input_total(self) -> int:
        return sum(a.amount for a in self.inputs)

    @property
    def change(self) -> int:
        return max(self.input_total - self.amount, 0) if self.inputs else 0


@dataclass
class ExecutionOutcome:
    signature: str
    memo_signature: Optional[str] = None
    memo_error: Optional[str] = None


class TransactionSubmitter(Protocol):
    """Signs a plan with the payer's wallet and submits it. Returns the signature."""

    async def sign_and_submit(self, tx: TransactionPlan) -> str: ...
