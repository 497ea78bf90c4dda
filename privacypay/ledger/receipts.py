# privacypay/ledger/receipts.py
"""
Receipt wire format.

A receipt is what the payer hands the payee out-of-band (pasted JSON or a
link). It is a claim only: nothing in it is trusted until
ReceiptVerifier has re-derived it from a confirmed transaction.
"""
from __future__ import annotations

import enum
import json
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, unquote, urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, conint, model_validator

from privacypay.errors import InvalidReceipt


class ReceiptKind(str, enum.Enum):
    PLAIN = "plain"
    SHIELDED = "shielded"


# older links say type=public|private
_LEGACY_KIND = {"public": ReceiptKind.PLAIN, "private": ReceiptKind.SHIELDED}

_MISSING_MESSAGES = {
    "ref": "Receipt is missing ref.",
    "signature": "Receipt is missing signature.",
    "from": "Receipt is missing from address.",
    "to": "Receipt is missing to address.",
    "amount": "Receipt amount must be an integer number of lamports greater than 0.",
    "encryptedMemo": "Receipt must include encryptedMemo and createdAt.",
    "createdAt": "Receipt must include encryptedMemo and createdAt.",
    "kind": "Receipt kind must be 'plain' or 'shielded'.",
}


class Receipt(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore", frozen=True)

    ref: str = Field(..., min_length=1, description="Caller-chosen idempotency token.")
    signature: str = Field(..., min_length=1, description="Ledger transaction signature (base58).")
    from_: str = Field(..., alias="from", min_length=1, description="Payer address (base58).")
    to: str = Field(..., min_length=1, description="Payee address (base58).")
    amount: conint(gt=0, strict=True) = Field(..., description="Amount in lamports.")
    encrypted_memo: str = Field("", alias="encryptedMemo", description="Memo envelope JSON, or empty.")
    created_at: conint(ge=0, strict=True) = Field(..., alias="createdAt", description="Unix time in milliseconds.")
    kind: ReceiptKind = Field(ReceiptKind.PLAIN, description="plain (system transfer) or shielded (compressed).")

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "amount" not in data and "amountLamports" in data:
            data["amount"] = data.pop("amountLamports")
        if "kind" not in data and "type" in data:
            legacy = data.pop("type")
            data["kind"] = _LEGACY_KIND.get(legacy, legacy)
        if not data.get("ref") and data.get("signature"):
            data["ref"] = data["signature"]
        return data

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_wire(), indent=indent)


def new_receipt(
    signature: str,
    from_: str,
    to: str,
    amount: int,
    encrypted_memo: str = "",
    kind: ReceiptKind = ReceiptKind.PLAIN,
    ref: Optional[str] = None,
) -> Receipt:
    """Build the receipt the payer shares after a successful send."""
    return Receipt(
        ref=ref or str(uuid.uuid4()),
        signature=signature,
        from_=from_,
        to=to,
        amount=int(amount),
        encrypted_memo=encrypted_memo or "",
        created_at=int(time.time() * 1000),
        kind=kind,
    )


def receipt_from_dict(data: Dict[str, Any]) -> Receipt:
    try:
        return Receipt.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else ""
        raise InvalidReceipt(_MISSING_MESSAGES.get(field, f"Invalid receipt: {first.get('msg')}")) from e


def _extract_from_link(text: str) -> str:
    url = text if text.startswith("http") else f"http://dummy.invalid/{text}"
    parsed = urlparse(url)
    for source in (parsed.query, parsed.fragment):
        values = parse_qs(source).get("receipt")
        if values:
            return unquote(values[0])
    if "/pay#" in text or "/pay?" in text:
        raise InvalidReceipt(
            "This is a Payment Request link, not a Receipt. "
            "Please use the 'Receipt Link' generated after the payment is completed."
        )
    return text


def parse_receipt(text: str) -> Receipt:
    """Accept receipt JSON, or a link carrying it as `receipt=` in query or fragment."""
    raw = (text or "").strip()
    if not raw:
        raise InvalidReceipt("Paste a receipt JSON first.")
    if raw.startswith("http") or "receipt=" in raw:
        raw = _extract_from_link(raw)
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise InvalidReceipt("Failed to parse receipt: not valid JSON.") from e
    if not isinstance(data, dict):
        raise InvalidReceipt("Failed to parse receipt: expected a JSON object.")
    return receipt_from_dict(data)
