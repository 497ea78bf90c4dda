from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, conint

from privacypay.ledger.receipts import Receipt, ReceiptKind


class _Base(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, from_attributes=True, extra="ignore")


class Ok(_Base):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


class RpcReq(BaseModel):
    """JSON-RPC 2.0 request body; forwarded upstream untouched once the method is allowed."""
    model_config = ConfigDict(extra="allow")

    jsonrpc: str = Field("2.0", description="JSON-RPC version.")
    id: Optional[Union[int, str]] = Field(None, description="Request id, echoed by the upstream node.")
    method: str = Field(..., description="RPC method name; must be on the allow-list.")
    params: Optional[Any] = Field(None, description="Method parameters.")


class VerifyReq(Receipt):
    """Receipt exactly as exchanged between payer and payee."""


class VerifyRes(_Base):
    ref: str = Field(..., description="Receipt ref the verdict applies to.")
    signature: str = Field(..., description="Transaction signature that was checked.")
    kind: ReceiptKind
    valid: bool
    reason: Optional[str] = Field(None, description="Stable failure code, e.g. content_mismatch, stale.")
    message: Optional[str] = Field(None, description="User-displayable failure message.")
    guarantee: Optional[str] = Field(None, description="'full' for plain receipts, 'weak' for shielded ones.")
    warnings: List[str] = Field(default_factory=list)


class ShieldedBalanceRes(Ok):
    owner: str
    lamports: conint(ge=0) = Field(..., description="Sum of unspent compressed lamports.")


class ShieldedActivityItem(_Base):
    signature: str
    type: str = Field(..., description="shield | unshield | transfer | unknown")
    timestamp: int
    status: str = Field(..., description="success | failed")


class ShieldedHistoryRes(Ok):
    owner: str
    items: List[ShieldedActivityItem]
