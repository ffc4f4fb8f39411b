"""Bulk deletion coordinator."""

from mailtriage.deletion.coordinator import DeletionCoordinator

__all__ = ["DeletionCoordinator"]
