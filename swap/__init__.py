"""
SWAP Inbox — Notification Feed & Unread Counters for the SWAP platform
======================================================================
Keeps a user's notification bell and message badge current by reconciling
a full resync from the database, a realtime change feed and local
read-acknowledgements.

Package layout::

    swap/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Deep links + badge labels
    ├── errors.py          # Store / subscription error taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # notifications, conversations, participants, messages
    ├── engine/
    │   ├── events.py      # Typed change-feed events + NotificationItem
    │   ├── feed.py        # PG LISTEN/NOTIFY change feed + subscriptions
    │   ├── identity.py    # Current-user holder with change callbacks
    │   ├── notification_feed.py  # Bell icon cache
    │   ├── unread_counter.py     # Messages badge aggregate
    │   └── session.py     # Scope owning both subsystems
    └── services/
        ├── notification_service.py  # Notification store operations
        └── message_service.py       # Bookmark / message store operations
"""

__version__ = "0.1.0"
