# privacypay/ledger/verify.py
"""
Receipt verification against confirmed ledger data.

This is a trust boundary: anyone can write a receipt. Every checked fact is
re-derived from the transaction the ledger returns; the receipt's own fields
are only the hypothesis being tested.

Plain receipts are checked in full (payer, payee, exact amount, memo).
Shielded receipts are materially weaker: amount and destination live inside
opaque compressed-state updates, so only "touches the privacy program" and
"paid for by `from`" can be confirmed. Results carry `guarantee="weak"` for
them so callers never present the two as equally trustworthy.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import base58

from privacypay import config
from privacypay.errors import (
    ContentMismatch,
    MemoMismatch,
    NetworkError,
    NotFound,
    OnChainError,
    PrivacyPayError,
    Stale,
)
from privacypay.ledger.receipts import Receipt, ReceiptKind

LOG = logging.getLogger("privacypay.verify")
LOG.addHandler(logging.NullHandler())

GUARANTEE_FULL = "full"
GUARANTEE_WEAK = "weak"

SHIELDED_LIMITATION = (
    "Shielded receipt: payer and privacy-program use confirmed; amount, "
    "destination and memo cannot be confirmed from public ledger data."
)


class TransactionSource(Protocol):
    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]: ...


@dataclass
class VerificationResult:
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    guarantee: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def failure(cls, err: PrivacyPayError) -> "VerificationResult":
        return cls(valid=False, reason=err.code, message=err.message)

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"valid": self.valid}
        if self.reason:
            out["reason"] = self.reason
            out["message"] = self.message
        if self.guarantee:
            out["guarantee"] = self.guarantee
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out


# ---------- transaction accessors ----------

def _message(tx: Dict[str, Any]) -> Dict[str, Any]:
    return ((tx.get("transaction") or {}).get("message")) or {}


def _instructions(tx: Dict[str, Any]) -> List[Dict[str, Any]]:
    return list(_message(tx).get("instructions") or [])


def _logs(tx: Dict[str, Any]) -> List[str]:
    return list(((tx.get("meta") or {}).get("logMessages")) or [])


def _account_key(entry: Any) -> tuple[str, bool]:
    if isinstance(entry, dict):
        return str(entry.get("pubkey") or ""), bool(entry.get("signer"))
    return str(entry), False


def _primary_signer(tx: Dict[str, Any]) -> Optional[str]:
    keys = _message(tx).get("accountKeys") or []
    if not keys:
        return None
    pubkey, signer = _account_key(keys[0])
    header = _message(tx).get("header") or {}
    # legacy (non-parsed) messages carry signer info in the header instead
    if not isinstance(keys[0], dict):
        signer = int(header.get("numRequiredSignatures") or 0) > 0
    return pubkey if signer else None


def looks_like_privacy_program_tx(tx: Dict[str, Any]) -> bool:
    """
    Heuristic classification of a transaction as a ZK-compression one.

    Matches the Light system program id among top-level instructions, or its
    name / id in the execution logs. Log text is not a structural guarantee;
    swap this for inner-instruction parsing without touching the verifier.
    """
    if any(ix.get("programId") == config.LIGHT_SYSTEM_PROGRAM_ID for ix in _instructions(tx)):
        return True
    return any(
        "LightSystemProgram" in line or config.LIGHT_SYSTEM_PROGRAM_ID in line
        for line in _logs(tx)
    )


def _instruction_memo_text(ix: Dict[str, Any]) -> Optional[str]:
    prog_id = ix.get("programId") or ""
    if ix.get("program") == "spl-memo" or prog_id in (config.MEMO_PROGRAM_ID, config.MEMO_V1_PROGRAM_ID):
        if isinstance(ix.get("parsed"), str):
            return ix["parsed"]
    if prog_id in config.MEMO_PROGRAM_IDS and isinstance(ix.get("data"), str):
        try:
            return base58.b58decode(ix["data"]).decode("utf-8")
        except ValueError:
            return None
    return None


def find_memo(instructions: Iterable[Dict[str, Any]], expected: str) -> bool:
    return any(_instruction_memo_text(ix) == expected for ix in instructions)


def find_system_transfer(instructions: Iterable[Dict[str, Any]], source: str, destination: str, lamports: int) -> bool:
    for ix in instructions:
        if ix.get("program") != "system":
            continue
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info") or {}
        if (
            info.get("source") == source
            and info.get("destination") == destination
            and isinstance(info.get("lamports"), int)
            and info["lamports"] == lamports
        ):
            return True
    return False


class ReceiptVerifier:
    def __init__(
        self,
        ledger: TransactionSource,
        clock: Callable[[], float] = time.time,
        max_age_sec: int = config.RECEIPT_MAX_AGE_SEC,
    ):
        self.ledger = ledger
        self.clock = clock
        self.max_age_sec = max_age_sec

    async def verify(self, receipt: Receipt) -> VerificationResult:
        """
        Returns a result for every expected mismatch. Raises NetworkError only
        when the ledger could not be asked.
        """
        tx = await self.ledger.get_transaction(receipt.signature)
        try:
            return self._check(receipt, tx)
        except NetworkError:
            raise
        except PrivacyPayError as e:
            LOG.info("Receipt %s rejected: %s", receipt.ref, e.code)
            return VerificationResult.failure(e)

    def _check(self, receipt: Receipt, tx: Optional[Dict[str, Any]]) -> VerificationResult:
        if not tx:
            raise NotFound(f"Transaction not found on {config.SOLANA_CLUSTER}.")

        err = (tx.get("meta") or {}).get("err")
        if err:
            LOG.info("On-chain transaction error for %s: %r", receipt.signature, err)
            raise OnChainError(f"Transaction failed on-chain: {err!r}")

        result = VerificationResult(valid=True)
        if receipt.kind == ReceiptKind.SHIELDED:
            self._check_shielded(receipt, tx)
            result.guarantee = GUARANTEE_WEAK
            result.warnings.append(SHIELDED_LIMITATION)
        else:
            self._check_plain(receipt, tx)
            result.guarantee = GUARANTEE_FULL

        result.warnings.extend(self._check_freshness(tx))

        if receipt.kind == ReceiptKind.PLAIN and receipt.encrypted_memo:
            if not find_memo(_instructions(tx), receipt.encrypted_memo):
                raise MemoMismatch()
        return result

    def _check_plain(self, receipt: Receipt, tx: Dict[str, Any]) -> None:
        if not find_system_transfer(_instructions(tx), receipt.from_, receipt.to, receipt.amount):
            raise ContentMismatch(
                f"Transaction content mismatch. Expected transfer of {receipt.amount} lamports "
                f"from {receipt.from_} to {receipt.to}."
            )

    def _check_shielded(self, receipt: Receipt, tx: Dict[str, Any]) -> None:
        if not looks_like_privacy_program_tx(tx):
            raise ContentMismatch("Not a valid ZK transaction (Light Protocol missing).")
        payer = _primary_signer(tx)
        if payer != receipt.from_:
            raise ContentMismatch(f"Sender mismatch. Expected {receipt.from_}, got {payer}.")

    def _check_freshness(self, tx: Dict[str, Any]) -> List[str]:
        block_time = tx.get("blockTime")
        if block_time is None:
            LOG.warning("Transaction missing blockTime, skipping freshness check.")
            return ["Ledger reported no block time; freshness not checked."]
        if self.clock() - int(block_time) > self.max_age_sec:
            raise Stale()
        return []
