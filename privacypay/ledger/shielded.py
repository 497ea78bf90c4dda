# privacypay/ledger/shielded.py
"""
Shielded (ZK-compressed) transfers: input selection, proof acquisition and
instruction assembly for shield, unshield and private transfer.

Inputs and proofs are fetched fresh for every plan. A proof is only valid for
the exact ordered input set it was computed over and only until one of those
inputs is spent; if another transfer lands first the submission fails and
the caller restarts from planning. Nothing here retries on its own.

A memo never rides in the value transaction: the privacy program rejects
transactions that mix in unrelated instructions. It goes out first as its own
noop-program transaction, best-effort. The value transaction is the unit of
correctness; memo delivery failures are recorded, never raised.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

from privacypay import config
from privacypay.errors import (
    InsufficientBalance,
    NetworkError,
    PrivacyPayError,
    StaleProof,
    SubmissionRejected,
)
from privacypay.ledger.models import (
    AccountMeta,
    Blockhash,
    CompressedAccount,
    ExecutionOutcome,
    Instruction,
    InstructionPlan,
    ShieldedOperation,
    TransactionPlan,
    TransactionSubmitter,
    ValidityProof,
)

LOG = logging.getLogger("privacypay.shielded")
LOG.addHandler(logging.NullHandler())

# Log fragments that mean the proof or one of its inputs went stale.
STALE_PROOF_LOG_MARKERS = (
    "ProofVerificationFailed",
    "InvalidProof",
    "ElementAlreadyExists",
    "already spent",
)


class CompressionLedger(Protocol):
    async def get_compressed_accounts_by_owner(self, owner: str) -> List[CompressedAccount]: ...
    async def get_validity_proof(self, hashes: List[str]) -> ValidityProof: ...
    async def get_state_tree_infos(self) -> List[Dict[str, str]]: ...
    async def get_latest_blockhash(self) -> Blockhash: ...
    async def confirm_transaction(self, signature: str) -> Optional[Any]: ...
    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]: ...
    async def get_compressed_balance_by_owner(self, owner: str) -> int: ...
    async def get_signatures_for_address(self, address: str, limit: int = 10) -> List[Dict[str, Any]]: ...


@dataclass(frozen=True)
class Selection:
    selected: List[CompressedAccount]
    total: int


@dataclass(frozen=True)
class ShieldedActivity:
    signature: str
    type: str
    timestamp: int
    status: str


# =========================
# Input selection
# =========================

def select_inputs(available: Sequence[CompressedAccount], target: int) -> Selection:
    """
    First-fit over ledger order: accumulate until the target is covered and
    stop there. Keeps instruction count and proof size down; not a
    minimum-count (knapsack) solve.
    """
    target = int(target)
    candidates = [a for a in available if a.amount > 0]
    selected: List[CompressedAccount] = []
    total = 0
    for acc in candidates:
        selected.append(acc)
        total += acc.amount
        if total >= target:
            return Selection(selected=selected, total=total)
    raise InsufficientBalance(available=total, required=target)


# Oldest first. Anything else (address trees, unknown types) is never an output target.
STATE_TREE_TYPES = ("state", "stateV2")


def select_state_tree_info(infos: Sequence[Dict[str, str]], rng: Optional[random.Random] = None) -> Dict[str, str]:
    """
    Spread outputs over the active public state trees of the newest tree type
    on offer, as the compression SDK does.
    """
    state_trees = [
        t for t in infos
        if t.get("tree") and t.get("treeType", "state") in STATE_TREE_TYPES and not t.get("nextTreeInfo")
    ]
    if not state_trees:
        raise ValueError("No active state trees available")
    newest = max(STATE_TREE_TYPES.index(t.get("treeType", "state")) for t in state_trees)
    candidates = [t for t in state_trees if STATE_TREE_TYPES.index(t.get("treeType", "state")) == newest]
    return (rng or random).choice(candidates)


def _require_positive(amount: int) -> int:
    if isinstance(amount, bool) or int(amount) != amount or amount <= 0:
        raise ValueError(f"Amount must be a positive integer number of lamports, got {amount!r}")
    return int(amount)


# =========================
# Instruction assembly
# =========================

def compute_budget_instructions(units: int, micro_lamports: int = config.COMPUTE_UNIT_PRICE_MICROLAMPORTS) -> List[Instruction]:
    return [
        Instruction(program_id=config.COMPUTE_BUDGET_PROGRAM_ID, name="setComputeUnitLimit", args={"units": units}),
        Instruction(program_id=config.COMPUTE_BUDGET_PROGRAM_ID, name="setComputeUnitPrice", args={"microLamports": micro_lamports}),
    ]


def memo_instruction(encrypted_memo: str) -> Instruction:
    return Instruction(
        program_id=config.NOOP_PROGRAM_ID,
        name="memo",
        accounts=[],
        data=encrypted_memo.encode("utf-8"),
    )


def _input_args(inputs: List[CompressedAccount], proof: ValidityProof) -> Dict[str, Any]:
    return {
        "inputCompressedAccounts": [
            {"hash": a.hash, "owner": a.owner, "lamports": a.amount, "merkleContext": dict(a.tree_context)}
            for a in inputs
        ],
        "recentInputStateRootIndices": list(proof.root_indices),
        "recentValidityProof": proof.proof_blob,
    }


def _input_tree(inputs: List[CompressedAccount]) -> Optional[str]:
    for a in inputs:
        if a.tree_context.get("tree"):
            return str(a.tree_context["tree"])
    return None


def _tree_accounts(inputs: List[CompressedAccount]) -> List[AccountMeta]:
    seen: List[str] = []
    for a in inputs:
        for k in ("tree", "queue"):
            v = a.tree_context.get(k)
            if v and v not in seen:
                seen.append(str(v))
    return [AccountMeta(pubkey=p, is_writable=True) for p in seen]


def compress_instruction(payer: str, to_address: str, lamports: int, output_tree: Dict[str, str]) -> Instruction:
    return Instruction(
        program_id=config.LIGHT_SYSTEM_PROGRAM_ID,
        name="compress",
        accounts=[
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=output_tree["tree"], is_writable=True),
        ],
        args={
            "toAddress": to_address,
            "lamports": lamports,
            "outputCompressedAccounts": [{"owner": to_address, "lamports": lamports, "tree": output_tree["tree"]}],
            "outputStateTreeInfo": dict(output_tree),
            "compressOrDecompressLamports": lamports,
            "isCompress": True,
        },
    )


def decompress_instruction(
    payer: str, to_address: str, lamports: int, inputs: List[CompressedAccount], proof: ValidityProof
) -> Instruction:
    total = sum(a.amount for a in inputs)
    tree = _input_tree(inputs)
    outputs = []
    if total > lamports:
        outputs.append({"owner": payer, "lamports": total - lamports, "tree": tree})
    return Instruction(
        program_id=config.LIGHT_SYSTEM_PROGRAM_ID,
        name="decompress",
        accounts=[
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=to_address, is_writable=True),
            *_tree_accounts(inputs),
        ],
        args={
            "toAddress": to_address,
            "lamports": lamports,
            **_input_args(inputs, proof),
            "outputCompressedAccounts": outputs,
            "compressOrDecompressLamports": lamports,
            "isCompress": False,
        },
    )


def transfer_instruction(
    payer: str, to_address: str, lamports: int, inputs: List[CompressedAccount], proof: ValidityProof
) -> Instruction:
    """Recipient output first, then change back to the payer when inputs exceed the amount."""
    total = sum(a.amount for a in inputs)
    tree = _input_tree(inputs)
    outputs = [{"owner": to_address, "lamports": lamports, "tree": tree}]
    if total > lamports:
        outputs.append({"owner": payer, "lamports": total - lamports, "tree": tree})
    return Instruction(
        program_id=config.LIGHT_SYSTEM_PROGRAM_ID,
        name="transfer",
        accounts=[AccountMeta(pubkey=payer, is_signer=True, is_writable=True), *_tree_accounts(inputs)],
        args={
            "toAddress": to_address,
            "lamports": lamports,
            **_input_args(inputs, proof),
            "outputCompressedAccounts": outputs,
        },
    )


# =========================
# Planner
# =========================

class ShieldedTransferPlanner:
    def __init__(self, ledger: CompressionLedger, rng: Optional[random.Random] = None):
        self.ledger = ledger
        self.rng = rng

    async def _tx(self, payer: str, instructions: List[Instruction]) -> TransactionPlan:
        bh = await self.ledger.get_latest_blockhash()
        return TransactionPlan(
            fee_payer=payer,
            instructions=instructions,
            recent_blockhash=bh.blockhash,
            last_valid_block_height=bh.last_valid_block_height,
        )

    async def _inputs_and_proof(self, payer: str, amount: int) -> tuple[Selection, ValidityProof]:
        accounts = await self.ledger.get_compressed_accounts_by_owner(payer)
        selection = select_inputs(accounts, amount)
        LOG.info("Selected %d compressed accounts (total %d) for %d lamports", len(selection.selected), selection.total, amount)
        proof = await self.ledger.get_validity_proof([a.hash for a in selection.selected])
        return selection, proof

    async def plan_shield(self, payer: str, amount: int) -> InstructionPlan:
        amount = _require_positive(amount)
        tree = select_state_tree_info(await self.ledger.get_state_tree_infos(), self.rng)
        ix = compress_instruction(payer, payer, amount, tree)
        value_tx = await self._tx(payer, compute_budget_instructions(config.SHIELD_COMPUTE_UNITS) + [ix])
        return InstructionPlan(operation=ShieldedOperation.SHIELD, payer=payer, amount=amount, value_tx=value_tx, destination=payer)

    async def plan_unshield(self, payer: str, destination: str, amount: int) -> InstructionPlan:
        amount = _require_positive(amount)
        selection, proof = await self._inputs_and_proof(payer, amount)
        ix = decompress_instruction(payer, destination, amount, selection.selected, proof)
        value_tx = await self._tx(payer, compute_budget_instructions(config.SHIELD_COMPUTE_UNITS) + [ix])
        return InstructionPlan(
            operation=ShieldedOperation.UNSHIELD,
            payer=payer,
            amount=amount,
            value_tx=value_tx,
            inputs=selection.selected,
            proof=proof,
            destination=destination,
        )

    async def plan_transfer(
        self, payer: str, recipient: str, amount: int, encrypted_memo: Optional[str] = None
    ) -> InstructionPlan:
        amount = _require_positive(amount)
        selection, proof = await self._inputs_and_proof(payer, amount)
        ix = transfer_instruction(payer, recipient, amount, selection.selected, proof)
        value_tx = await self._tx(payer, compute_budget_instructions(config.TRANSFER_COMPUTE_UNITS) + [ix])
        memo_tx = await self._tx(payer, [memo_instruction(encrypted_memo)]) if encrypted_memo else None
        return InstructionPlan(
            operation=ShieldedOperation.TRANSFER,
            payer=payer,
            amount=amount,
            value_tx=value_tx,
            memo_tx=memo_tx,
            inputs=selection.selected,
            proof=proof,
            destination=recipient,
        )

    # ---------- submission ----------

    async def execute(
        self,
        plan: InstructionPlan,
        submitter: TransactionSubmitter,
        timeout: float = config.SUBMIT_TIMEOUT_SEC,
    ) -> ExecutionOutcome:
        """
        Memo first (best-effort), then the value transaction (authoritative).
        There is no atomicity between the two: a delivered memo with a failed
        transfer is possible and is reported through the raised error.

        `timeout` bounds each wallet submission; a value submission that
        outlives it raises NetworkError.
        """
        if plan.inputs and (plan.proof is None or not plan.proof.covers(plan.inputs)):
            raise StaleProof("Validity proof does not match the planned inputs; plan again.")

        memo_signature, memo_error = None, None
        if plan.memo_tx is not None:
            memo_signature, memo_error = await self._submit_memo(plan.memo_tx, submitter, timeout)

        signature = await self._submit_value(plan.value_tx, submitter, timeout)
        LOG.info("%s of %d lamports confirmed: %s", plan.operation.value, plan.amount, signature)
        return ExecutionOutcome(signature=signature, memo_signature=memo_signature, memo_error=memo_error)

    async def _submit_memo(
        self, tx: TransactionPlan, submitter: TransactionSubmitter, timeout: float
    ) -> tuple[Optional[str], Optional[str]]:
        try:
            sig = await submit_with_timeout(submitter, tx, timeout)
            err = await self.ledger.confirm_transaction(sig)
        except Exception as e:  # memo delivery never blocks the value transfer
            LOG.warning("Failed to send memo (non-fatal): %s", e)
            return None, str(e)
        if err:
            LOG.warning("Memo transaction %s failed on-chain (non-fatal): %r", sig, err)
            return sig, f"Memo transaction failed on-chain: {err!r}"
        return sig, None

    async def _submit_value(self, tx: TransactionPlan, submitter: TransactionSubmitter, timeout: float) -> str:
        try:
            signature = await submit_with_timeout(submitter, tx, timeout)
        except PrivacyPayError:
            raise
        except Exception as e:
            logs = [str(x) for x in (getattr(e, "logs", None) or [])]
            raise rejection(f"Transaction failed preflight: {e}", logs) from e

        err = await self.ledger.confirm_transaction(signature)
        if not err:
            return signature

        logs: List[str] = []
        try:
            fetched = await self.ledger.get_transaction(signature)
            logs = list(((fetched or {}).get("meta") or {}).get("logMessages") or [])
        except NetworkError as fetch_err:
            LOG.error("Failed to fetch logs for %s: %s", signature, fetch_err)
        LOG.error("Transaction %s failed on-chain: %r", signature, err)
        raise rejection(f"Transaction failed on-chain: {err!r}", logs, signature)

    # ---------- read side ----------

    async def shielded_balance(self, owner: str) -> int:
        return await self.ledger.get_compressed_balance_by_owner(owner)

    async def shielded_history(self, owner: str, limit: int = 10) -> List[ShieldedActivity]:
        sigs = await self.ledger.get_signatures_for_address(owner, limit=limit)
        if not sigs:
            return []
        txs = await asyncio.gather(*(self.ledger.get_transaction(s["signature"]) for s in sigs))
        out: List[ShieldedActivity] = []
        for info, tx in zip(sigs, txs):
            if not tx or not tx.get("meta"):
                continue
            logs = tx["meta"].get("logMessages") or []
            if not any("LightSystemProgram" in line for line in logs):
                continue
            out.append(
                ShieldedActivity(
                    signature=info["signature"],
                    type=classify_activity(logs),
                    timestamp=int(info.get("blockTime") or tx.get("blockTime") or 0),
                    status="failed" if info.get("err") else "success",
                )
            )
        return out


def classify_activity(logs: Sequence[str]) -> str:
    if any("Instruction: Compress" in line for line in logs):
        return "shield"
    if any("Instruction: Decompress" in line for line in logs):
        return "unshield"
    if any("Instruction: Transfer" in line for line in logs):
        return "transfer"
    return "unknown"


async def submit_with_timeout(submitter: TransactionSubmitter, tx: TransactionPlan, timeout: float) -> str:
    try:
        return await asyncio.wait_for(submitter.sign_and_submit(tx), timeout)
    except asyncio.TimeoutError as e:
        raise NetworkError(f"Wallet did not submit the transaction within {timeout}s") from e


def rejection(message: str, logs: List[str], signature: Optional[str] = None) -> SubmissionRejected:
    if any(marker in line for line in logs for marker in STALE_PROOF_LOG_MARKERS):
        return StaleProof(message, logs=logs, signature=signature)
    return SubmissionRejected(message, logs=logs, signature=signature)
