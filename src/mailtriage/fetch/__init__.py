"""Fetch windows and the dual-mode sampling cache.

The orchestrator lives in :mod:`mailtriage.fetch.orchestrator`; it depends
on the provider adapters, which in turn depend on the window types here.
"""

from mailtriage.fetch.cache import SamplingCache
from mailtriage.fetch.window import FetchRequest, FetchWindow, resolve_window

__all__ = ["FetchRequest", "FetchWindow", "SamplingCache", "resolve_window"]
