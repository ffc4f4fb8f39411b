"""Layout of the on-disk data directory."""

from __future__ import annotations

from pathlib import Path

from mailtriage.domain.types import FetchMode


class DataPaths:
    """Resolve every file mailtriage reads or writes under one root.

    Layout::

        <root>/secret.key
        <root>/settings/<kind>.json
        <root>/cache/ai_judgments.json
        <root>/accounts/<id>/{profile,tokens,imap,labels,rules}.json
        <root>/accounts/<id>/cache/sampling_<mode>.json
        <root>/accounts/<id>/cache/sampling_<mode>_meta.json
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def key_file(self) -> Path:
        return self.root / "secret.key"

    @property
    def settings_dir(self) -> Path:
        return self.root / "settings"

    @property
    def accounts_dir(self) -> Path:
        return self.root / "accounts"

    @property
    def ai_cache_file(self) -> Path:
        return self.root / "cache" / "ai_judgments.json"

    def settings_file(self, kind: str) -> Path:
        return self.settings_dir / f"{kind}.json"

    def account_dir(self, account_id: str) -> Path:
        return self.accounts_dir / account_id

    def profile_file(self, account_id: str) -> Path:
        return self.account_dir(account_id) / "profile.json"

    def tokens_file(self, account_id: str) -> Path:
        return self.account_dir(account_id) / "tokens.json"

    def imap_file(self, account_id: str) -> Path:
        return self.account_dir(account_id) / "imap.json"

    def labels_file(self, account_id: str) -> Path:
        return self.account_dir(account_id) / "labels.json"

    def rules_file(self, account_id: str) -> Path:
        return self.account_dir(account_id) / "rules.json"

    def account_cache_dir(self, account_id: str) -> Path:
        return self.account_dir(account_id) / "cache"

    def sampling_result_file(self, account_id: str, mode: FetchMode) -> Path:
        return self.account_cache_dir(account_id) / f"sampling_{mode}.json"

    def sampling_meta_file(self, account_id: str, mode: FetchMode) -> Path:
        return self.account_cache_dir(account_id) / f"sampling_{mode}_meta.json"
