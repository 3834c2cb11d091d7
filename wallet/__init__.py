from .actions import PaymentProofResult, PayoutResult, RetrySummary, WalletActions

__all__ = [
    "PaymentProofResult",
    "PayoutResult",
    "RetrySummary",
    "WalletActions",
]
