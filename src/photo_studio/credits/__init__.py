"""Credit debit/refund bookkeeping used by the orchestrator."""

from photo_studio.credits.ledger import CreditLedger, CreditRecordView, InsufficientCreditsError

__all__ = ["CreditLedger", "CreditRecordView", "InsufficientCreditsError"]
