"""
swap.constants — Shared Constants & Helpers
===========================================

Single source of truth for the unread watermark default, notification deep
links and badge labels.  Import from here instead of duplicating in callers.
"""

from __future__ import annotations

from datetime import UTC, datetime

# A participant with no last_read_at has read nothing.
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

DEFAULT_BADGE_CAP = 99


# ---------------------------------------------------------------------------
# Deep links per notification type
# ---------------------------------------------------------------------------
def notification_link(notification_type: str, related_id: str | None = None) -> str:
    """Return the in-app route a notification should open.

    ``message`` always opens the inbox; ``quest`` and ``listing`` open the
    related item when one is attached.  Everything else lands on ``/``.
    """
    if notification_type == "message":
        return "/messages"
    if notification_type == "quest" and related_id:
        return f"/quest/{related_id}"
    if notification_type == "listing" and related_id:
        return f"/listing/{related_id}"
    return "/"


def badge_label(count: int, cap: int = DEFAULT_BADGE_CAP) -> str:
    """Text for an unread badge: empty at zero, ``"99+"`` above *cap*."""
    if count <= 0:
        return ""
    if count > cap:
        return f"{cap}+"
    return str(count)
