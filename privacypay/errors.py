# privacypay/errors.py
from __future__ import annotations

from typing import List, Optional


class PrivacyPayError(Exception):
    """Base class. `code` is stable and safe to show to a user or return over HTTP."""

    code: str = "error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


# ===== keys / memo =====

class InvalidEnvelopeFormat(PrivacyPayError):
    """Invalid encrypted memo format."""
    code = "invalid_envelope_format"


class DecryptionFailed(PrivacyPayError):
    """Unable to decrypt memo (wrong key or corrupted data)."""
    code = "decryption_failed"


class InvalidKeyFormat(PrivacyPayError):
    """Invalid key export format."""
    code = "invalid_key_format"


class StorageUnavailable(PrivacyPayError):
    """No persistent key storage is available."""
    code = "storage_unavailable"


class NoDecryptionKey(PrivacyPayError):
    """Inbox is locked and no device key found."""
    code = "no_decryption_key"


class RecipientKeyUnknown(PrivacyPayError):
    """Recipient inbox key unknown and no fallback was allowed."""
    code = "recipient_key_unknown"


# ===== ledger / verification =====

class NotFound(PrivacyPayError):
    """Transaction not found on the ledger."""
    code = "not_found"


class OnChainError(PrivacyPayError):
    """Transaction failed on-chain."""
    code = "on_chain_error"


class ContentMismatch(PrivacyPayError):
    """Transaction content does not match the receipt."""
    code = "content_mismatch"


class Stale(PrivacyPayError):
    """Transaction is too old (>24h). Potential replay attack."""
    code = "stale"


class MemoMismatch(PrivacyPayError):
    """Transaction is missing the expected on-chain memo."""
    code = "memo_mismatch"


class NetworkError(PrivacyPayError):
    """Failed to reach the ledger RPC."""
    code = "network_error"


class MethodNotAllowed(PrivacyPayError):
    """RPC method is not on the allow-list."""
    code = "method_not_allowed"


class InvalidReceipt(PrivacyPayError):
    """Receipt could not be parsed."""
    code = "invalid_receipt"


# ===== shielded transfers =====

class InsufficientBalance(PrivacyPayError):
    code = "insufficient_balance"

    def __init__(self, available: int, required: int):
        self.available = int(available)
        self.required = int(required)
        super().__init__(
            f"Insufficient compressed balance. Have: {self.available} lamports, "
            f"Need: {self.required} lamports"
        )


class ProofUnavailable(PrivacyPayError):
    """Failed to get validity proof or root indices."""
    code = "proof_unavailable"


class SubmissionRejected(PrivacyPayError):
    code = "submission_rejected"

    def __init__(self, message: str, logs: Optional[List[str]] = None, signature: Optional[str] = None):
        self.logs: List[str] = list(logs or [])
        self.signature = signature
        if self.logs:
            message = f"{message} Logs:\n" + "\n".join(self.logs)
        super().__init__(message)


class StaleProof(SubmissionRejected):
    """The validity proof no longer matches ledger state; restart from input selection."""
    code = "stale_proof"


RETRYABLE_ERRORS = (ProofUnavailable, StaleProof, NetworkError)

__all__ = [
    "PrivacyPayError",
    "InvalidEnvelopeFormat",
    "DecryptionFailed",
    "InvalidKeyFormat",
    "StorageUnavailable",
    "NoDecryptionKey",
    "RecipientKeyUnknown",
    "NotFound",
    "OnChainError",
    "ContentMismatch",
    "Stale",
    "MemoMismatch",
    "NetworkError",
    "MethodNotAllowed",
    "InvalidReceipt",
    "InsufficientBalance",
    "ProofUnavailable",
    "SubmissionRejected",
    "StaleProof",
    "RETRYABLE_ERRORS",
]
