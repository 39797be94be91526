"""
swap.errors — Inbox Error Taxonomy
==================================

Store and change-feed failures are raised with these types by the service
layer and the change feed.  The inbox subsystems catch them at the point of
use and fall back to an empty / zero state.
"""

from __future__ import annotations


class SwapError(Exception):
    """Base class for all inbox errors."""


class StoreReadError(SwapError):
    """A fetch or count query against the store failed."""


class StoreWriteError(SwapError):
    """A mutation against the store failed."""


class SubscriptionError(SwapError):
    """The push channel could not be established or was dropped."""
