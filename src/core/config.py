"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class MessagingConfig:
    """Tunables for history loading and reconciliation."""

    history_timeout_seconds: float = 15.0
    history_limit: int = 100
    # Max distance between a placeholder's local timestamp and the server's
    # createdAt for the two to be treated as the same message.
    reconcile_window_seconds: float = 10.0
    pending_update_ttl_seconds: float = 10.0
