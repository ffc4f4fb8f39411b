"""Retry helpers for transport-level failures."""

from mailtriage.resilience.retry import resilient_api_call

__all__ = ["resilient_api_call"]
