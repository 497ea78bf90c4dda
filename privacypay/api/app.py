# privacypay/api/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

import requests
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from privacypay import config
from privacypay.api import health_checks as hc
from privacypay.api.logging_config import configure_logging, get_logger
from privacypay.api.schemas_api import (
    RpcReq,
    ShieldedActivityItem,
    ShieldedBalanceRes,
    ShieldedHistoryRes,
    VerifyReq,
    VerifyRes,
)
from privacypay.errors import NetworkError
from privacypay.ledger.payments import validate_address
from privacypay.ledger.rpc import LedgerClient
from privacypay.ledger.shielded import ShieldedTransferPlanner
from privacypay.ledger.verify import ReceiptVerifier

configure_logging()
logger = get_logger("api")

# =========================
# Dependencies
# =========================

_ledger: LedgerClient | None = None


def get_ledger() -> LedgerClient:
    global _ledger
    if _ledger is None:
        _ledger = LedgerClient(rpc_url=config.UPSTREAM_RPC_URL or config.SOLANA_RPC_URL)
    return _ledger


def get_upstream_url() -> str | None:
    return config.UPSTREAM_RPC_URL


def get_keystore_path() -> str | None:
    # the device key store the CLI writes on this host
    return str(config.KEYSTORE_PATH) if config.KEYSTORE_PATH else None


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    yield
    if _ledger is not None:
        await _ledger.aclose()


app = FastAPI(title="Privacy Pay API", version="0.1.0", lifespan=_lifespan)


def _valid_owner(owner: str) -> str:
    try:
        return validate_address(owner)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# =========================
# RPC proxy (allow-listed)
# =========================

@app.post("/api/rpc")
def rpc_proxy(req: RpcReq, upstream: str | None = Depends(get_upstream_url)):
    """
    Forward a JSON-RPC call to the configured upstream node. Only allow-listed
    methods pass, so the upstream API key cannot be spent on arbitrary calls.
    """
    if not upstream:
        logger.error("RPC URL not configured")
        raise HTTPException(status_code=500, detail="RPC configuration error")

    if req.method not in config.ALLOWED_RPC_METHODS:
        logger.warning("Blocked unauthorized RPC method: %r", req.method[:64])
        raise HTTPException(status_code=403, detail="Method not allowed")

    body: Dict[str, Any] = req.model_dump(exclude_none=True)
    try:
        r = requests.post(upstream, json=body, timeout=config.RPC_TIMEOUT_SEC)
    except requests.RequestException as e:
        logger.error(f"RPC proxy error: {e.__class__.__name__}")
        raise HTTPException(status_code=502, detail="RPC provider unreachable")

    if not r.ok:
        raise HTTPException(status_code=r.status_code, detail=f"RPC provider error: {r.reason}")
    try:
        return JSONResponse(content=r.json())
    except ValueError:
        raise HTTPException(status_code=502, detail="RPC provider returned invalid JSON")


# =========================
# Receipts
# =========================

@app.post("/receipts/verify", response_model=VerifyRes)
async def verify_receipt(req: VerifyReq, ledger: LedgerClient = Depends(get_ledger)):
    verifier = ReceiptVerifier(ledger)
    try:
        result = await verifier.verify(req)
    except NetworkError as e:
        logger.error(f"Verification error for {req.signature}: {e}")
        raise HTTPException(status_code=502, detail="Failed to verify transaction: network error.")
    return VerifyRes(
        ref=req.ref,
        signature=req.signature,
        kind=req.kind,
        valid=result.valid,
        reason=result.reason,
        message=result.message,
        guarantee=result.guarantee,
        warnings=result.warnings,
    )


# =========================
# Shielded read side
# =========================

@app.get("/shielded/{owner}/balance", response_model=ShieldedBalanceRes)
async def shielded_balance(owner: str, ledger: LedgerClient = Depends(get_ledger)):
    owner = _valid_owner(owner)
    try:
        lamports = await ShieldedTransferPlanner(ledger).shielded_balance(owner)
    except NetworkError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ShieldedBalanceRes(owner=owner, lamports=lamports)


@app.get("/shielded/{owner}/history", response_model=ShieldedHistoryRes)
async def shielded_history(owner: str, limit: int = 10, ledger: LedgerClient = Depends(get_ledger)):
    owner = _valid_owner(owner)
    if not 1 <= limit <= 50:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 50")
    try:
        items = await ShieldedTransferPlanner(ledger).shielded_history(owner, limit=limit)
    except NetworkError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ShieldedHistoryRes(
        owner=owner,
        items=[ShieldedActivityItem(**a.__dict__) for a in items],
    )


# =========================
# Health
# =========================

@app.get("/health")
async def health(
    upstream: str | None = Depends(get_upstream_url),
    keystore_path: str | None = Depends(get_keystore_path),
):
    return await hc.comprehensive_health_check(rpc_url=upstream, keystore_path=keystore_path)


@app.get("/health/live")
async def health_live():
    return {"status": "alive"}


@app.get("/health/ready")
async def health_ready(upstream: str | None = Depends(get_upstream_url)):
    if not await hc.readiness_check(upstream):
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "ready"}
