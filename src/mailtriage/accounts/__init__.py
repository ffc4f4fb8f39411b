"""Per-account credential, label, and rule persistence."""

from mailtriage.accounts.store import DEFAULT_LABELS, AccountStore, generate_account_id

__all__ = ["DEFAULT_LABELS", "AccountStore", "generate_account_id"]
