"""Encryption of credentials at rest."""

from mailtriage.security.crypto import CryptoGateway

__all__ = ["CryptoGateway"]
