# privacypay/config.py
from __future__ import annotations

import json
import os
import pathlib
from typing import Dict, List

# =========================
# Paths & endpoints
# =========================

REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[1])
DATA_DIR = os.getenv("PRIVACYPAY_DATA_DIR", os.path.join(REPO_ROOT, "data"))
KEYSTORE_PATH = os.getenv("PRIVACYPAY_KEYSTORE", os.path.join(DATA_DIR, "inbox_keys.json"))

SOLANA_CLUSTER = os.getenv("SOLANA_CLUSTER", "devnet")
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com")
# The proxy refuses to start forwarding without this one (it usually carries an API key).
UPSTREAM_RPC_URL = os.getenv("UPSTREAM_RPC_URL") or os.getenv("HELIUS_RPC_URL")

RPC_TIMEOUT_SEC = float(os.getenv("RPC_TIMEOUT_SEC", "30"))
# Wallet signing and submission, per transaction
SUBMIT_TIMEOUT_SEC = float(os.getenv("SUBMIT_TIMEOUT_SEC", "60"))
RECEIPT_MAX_AGE_SEC = int(os.getenv("RECEIPT_MAX_AGE_SEC", "86400"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "0") == "1"

# =========================
# Program ids
# =========================

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"
LIGHT_SYSTEM_PROGRAM_ID = "SySTEM1eSU2p4BGQfQpimFEWWSC1XDFeun3Nqzz3rT7"
MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcQb"
MEMO_V1_PROGRAM_ID = "Memo1UhkJRfHyvLelZZ1i0yZNqOzVR5yq9QTYX3uad4"
NOOP_PROGRAM_ID = "noopb9bkMVfRPU8AsbpTUg8AQkHtKwMYZiFUjNRtMmV"

MEMO_PROGRAM_IDS = (MEMO_PROGRAM_ID, MEMO_V1_PROGRAM_ID, NOOP_PROGRAM_ID)

# Compute budget for compressed-account instructions
SHIELD_COMPUTE_UNITS = int(os.getenv("SHIELD_COMPUTE_UNITS", "500000"))
TRANSFER_COMPUTE_UNITS = int(os.getenv("TRANSFER_COMPUTE_UNITS", "1000000"))
COMPUTE_UNIT_PRICE_MICROLAMPORTS = int(os.getenv("COMPUTE_UNIT_PRICE_MICROLAMPORTS", "1000"))

# Light Protocol v1 public state trees. Override with LIGHT_STATE_TREES (JSON list).
_DEFAULT_STATE_TREES: List[Dict[str, str]] = [
    {
        "tree": "smt1NamzXdq4AMqS2fS2F1i5KTYPZRhoHgWx38d8WsT",
        "queue": "nfq1NvQDJ2GEgnS8zt9prAe8rjjpAW1zFkrvZoBR148",
        "cpiContext": "cpi1uHzrEhBG733DoEJNgHCyRS3XmmyVNZx5fonubE4",
        "treeType": "state",
    },
    {
        "tree": "smt2rJAFdyJJupwMKAqTNAJwvjhmiZ4JYGZmbVRw1Ho",
        "queue": "nfq2hgS7NYemXsFaFUCe3EMXSDSfnZnAe27jC6aPP1X",
        "cpiContext": "cpi2cdhkH5roePvcudTgUL8ppEBfTay1desGh8G8QxK",
        "treeType": "state",
    },
]


def state_tree_infos() -> List[Dict[str, str]]:
    raw = os.getenv("LIGHT_STATE_TREES")
    if not raw:
        return [dict(t) for t in _DEFAULT_STATE_TREES]
    return list(json.loads(raw))


# =========================
# RPC allow-list
# =========================

# Every JSON-RPC method the core issues, plus what the wallet adapter and the
# compression SDK need when they go through the proxy.
ALLOWED_RPC_METHODS = frozenset(
    {
        "getLatestBlockhash",
        "getBalance",
        "getAccountInfo",
        "sendTransaction",
        "getMultipleAccounts",
        "getRecentPrioritizationFees",
        "getFeeForMessage",
        "simulateTransaction",
        "getSlot",
        "getHealth",
        "getTransaction",
        "getSignatureStatuses",
        "getSignaturesForAddress",
        # Light Protocol / ZK Compression
        "getProgramAccounts",
        "getValidityProof",
        "getCompressedAccount",
        "getCompressedAccountsByOwner",
        "getCompressedBalanceByOwner",
        "getCompressedTokenAccountsByOwner",
        "getCompressedTransaction",
        "getCompressedTransactionsByOwner",
        "getAsset",
        "getAssetProof",
        "getAssetsByOwner",
    }
)

INBOX_UNLOCK_MESSAGE = b"Unlock Privacy Pay Inbox"
