# privacypay/ledger/payments.py
from __future__ import annotations

import logging
from typing import Optional

import base58
from nacl.bindings import crypto_core_ed25519_is_valid_point

from privacypay import config
from privacypay.errors import PrivacyPayError, SubmissionRejected
from privacypay.ledger.models import AccountMeta, Instruction, TransactionPlan, TransactionSubmitter
from privacypay.ledger.receipts import Receipt, ReceiptKind, new_receipt
from privacypay.ledger.rpc import LedgerClient
from privacypay.ledger.shielded import ShieldedTransferPlanner, rejection, submit_with_timeout

LOG = logging.getLogger("privacypay.payments")
LOG.addHandler(logging.NullHandler())


def validate_address(address: str, require_on_curve: bool = False) -> str:
    """Base58 32-byte public key; wallet (payee) addresses must also be on the ed25519 curve."""
    address = (address or "").strip()
    try:
        raw = base58.b58decode(address)
    except ValueError:
        raise ValueError("Receiver address is not a valid Solana public key.")
    if len(raw) != 32:
        raise ValueError("Receiver address is not a valid Solana public key.")
    if require_on_curve and not crypto_core_ed25519_is_valid_point(raw):
        raise ValueError("Receiver address is not a valid Solana public key.")
    return address


def system_transfer_instruction(from_pubkey: str, to_pubkey: str, lamports: int) -> Instruction:
    return Instruction(
        program_id=config.SYSTEM_PROGRAM_ID,
        name="transfer",
        accounts=[
            AccountMeta(pubkey=from_pubkey, is_signer=True, is_writable=True),
            AccountMeta(pubkey=to_pubkey, is_writable=True),
        ],
        args={"lamports": int(lamports)},
    )


def spl_memo_instruction(signer: str, memo: str) -> Instruction:
    return Instruction(
        program_id=config.MEMO_PROGRAM_ID,
        name="memo",
        accounts=[AccountMeta(pubkey=signer, is_signer=True)],
        data=memo.encode("utf-8"),
    )


class PaymentEngine:
    """
    Sends a payment through the selected path and returns the receipt the
    payer hands to the payee.

    plain: one system transfer, memo (if any) in the same transaction so the
           verifier can require it.
    shielded: compressed transfer via ShieldedTransferPlanner, memo in a
           separate best-effort transaction.
    """

    def __init__(self, ledger: LedgerClient, planner: Optional[ShieldedTransferPlanner] = None):
        self.ledger = ledger
        self.planner = planner or ShieldedTransferPlanner(ledger)

    async def plan_plain_payment(self, payer: str, to: str, amount: int, encrypted_memo: str = "") -> TransactionPlan:
        if amount <= 0:
            raise ValueError("Enter an amount greater than 0.")
        to = validate_address(to, require_on_curve=True)
        bh = await self.ledger.get_latest_blockhash()
        instructions = [system_transfer_instruction(payer, to, amount)]
        if encrypted_memo:
            instructions.append(spl_memo_instruction(payer, encrypted_memo))
        return TransactionPlan(
            fee_payer=payer,
            instructions=instructions,
            recent_blockhash=bh.blockhash,
            last_valid_block_height=bh.last_valid_block_height,
            skip_preflight=False,
        )

    async def send_payment(
        self,
        submitter: TransactionSubmitter,
        payer: str,
        to: str,
        amount: int,
        encrypted_memo: str = "",
        kind: ReceiptKind = ReceiptKind.PLAIN,
        ref: Optional[str] = None,
        timeout: float = config.SUBMIT_TIMEOUT_SEC,
    ) -> Receipt:
        if kind == ReceiptKind.SHIELDED:
            plan = await self.planner.plan_transfer(payer, validate_address(to), amount, encrypted_memo or None)
            outcome = await self.planner.execute(plan, submitter, timeout)
            if outcome.memo_error:
                LOG.warning("Payment %s landed without its memo: %s", outcome.signature, outcome.memo_error)
            signature = outcome.signature
        else:
            tx = await self.plan_plain_payment(payer, to, amount, encrypted_memo)
            signature = await self._submit_plain(tx, submitter, timeout)

        return new_receipt(
            signature=signature,
            from_=payer,
            to=to,
            amount=amount,
            encrypted_memo=encrypted_memo,
            kind=kind,
            ref=ref,
        )

    async def _submit_plain(self, tx: TransactionPlan, submitter: TransactionSubmitter, timeout: float) -> str:
        try:
            signature = await submit_with_timeout(submitter, tx, timeout)
        except PrivacyPayError:
            raise
        except Exception as e:
            logs = [str(x) for x in (getattr(e, "logs", None) or [])]
            raise rejection(f"Transaction failed: {e}", logs) from e
        err = await self.ledger.confirm_transaction(signature)
        if err:
            raise SubmissionRejected(f"Transaction failed on-chain: {err!r}", signature=signature)
        return signature
