"""
swap.config — YAML Configuration Loader
=======================================

Reads ``config.yaml`` for inbox tuning values.  Secrets (``DATABASE_URL``)
stay in the environment / ``.env`` and are never read here.

Usage::

    from swap.config import load_config

    cfg = load_config()                  # reads ./config.yaml by default
    print(cfg.unread_poll_seconds)       # 30
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SwapConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every key is optional; omitted keys fall back to the defaults below.
    """

    # Notification bell
    notification_fetch_limit: int = 50
    badge_cap: int = 99

    # Messages badge
    unread_poll_seconds: float = 30.0

    # Change feed listener (circuit breaker)
    listener_max_reconnects: int = 10


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> SwapConfig:
    """Read *path* and return a :class:`SwapConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a value cannot be converted to its expected type.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = SwapConfig()
    return SwapConfig(
        notification_fetch_limit=int(
            raw.get("notification_fetch_limit", defaults.notification_fetch_limit)
        ),
        badge_cap=int(raw.get("badge_cap", defaults.badge_cap)),
        unread_poll_seconds=float(
            raw.get("unread_poll_seconds", defaults.unread_poll_seconds)
        ),
        listener_max_reconnects=int(
            raw.get("listener_max_reconnects", defaults.listener_max_reconnects)
        ),
    )
