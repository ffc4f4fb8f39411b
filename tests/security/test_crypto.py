"""Tests for the AES-GCM crypto gateway."""

from __future__ import annotations

from pathlib import Path

import pytest

from mailtriage.domain.errors import CryptoError
from mailtriage.security.crypto import CryptoGateway


@pytest.fixture
def gateway(tmp_path: Path) -> CryptoGateway:
    return CryptoGateway(tmp_path / "secret.key")


class TestEncryptDecrypt:
    def test_round_trip(self, gateway: CryptoGateway) -> None:
        token = gateway.encrypt("app-password")

        assert token.count(":") == 2
        assert "app-password" not in token
        assert gateway.decrypt(token) == "app-password"

    def test_fresh_nonce_per_call(self, gateway: CryptoGateway) -> None:
        assert gateway.encrypt("same") != gateway.encrypt("same")

    def test_key_created_once_and_reused(self, tmp_path: Path) -> None:
        first = CryptoGateway(tmp_path / "secret.key")
        token = first.encrypt("x")

        second = CryptoGateway(tmp_path / "secret.key")

        assert second.decrypt(token) == "x"
        assert (tmp_path / "secret.key").stat().st_mode & 0o777 == 0o600

    def test_tampered_body_rejected(self, gateway: CryptoGateway) -> None:
        nonce, tag, body = gateway.encrypt("secret").split(":")
        flipped = format(int(body[:2], 16) ^ 0xFF, "02x") + body[2:]

        with pytest.raises(CryptoError):
            gateway.decrypt(f"{nonce}:{tag}:{flipped}")

    @pytest.mark.parametrize("token", ["", "abc", "zz:zz:zz", "00:00:00"])
    def test_malformed_token_rejected(self, gateway: CryptoGateway, token: str) -> None:
        with pytest.raises(CryptoError):
            gateway.decrypt(token)


class TestKeyExport:
    def test_import_lets_other_store_decrypt(self, tmp_path: Path) -> None:
        source = CryptoGateway(tmp_path / "a.key")
        token = source.encrypt("moved")
        target = CryptoGateway(tmp_path / "b.key")

        target.import_key(source.export_key())

        assert target.decrypt(token) == "moved"

    def test_import_rejects_short_key(self, gateway: CryptoGateway) -> None:
        with pytest.raises(CryptoError):
            gateway.import_key("c2hvcnQ=")

    def test_import_rejects_non_base64(self, gateway: CryptoGateway) -> None:
        with pytest.raises(CryptoError):
            gateway.import_key("not base64!!")
