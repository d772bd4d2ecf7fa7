"""Credential holder and transfer signing."""

from .signer import AccountSigner, TransferReceipt, require_signer

__all__ = [
    "AccountSigner",
    "TransferReceipt",
    "require_signer",
]
