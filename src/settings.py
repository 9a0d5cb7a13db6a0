"""Static configuration for registry-chat.

All user-editable, non-secret settings (history limits, reconciliation
windows, logging) live in a single JSON file for quick edits without
touching Python. Secrets come from the environment, see client.py.
"""

import json
import os

from core.config import MessagingConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# The config path can be pointed elsewhere per deployment.
CONFIG_PATH = os.getenv("REGISTRY_CHAT_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def build_messaging_config(raw: dict) -> MessagingConfig:
    """Turn the ``messaging`` section into the dataclass the core expects."""

    defaults = MessagingConfig()
    return MessagingConfig(
        history_timeout_seconds=float(raw.get("history_timeout_seconds", defaults.history_timeout_seconds)),
        history_limit=int(raw.get("history_limit", defaults.history_limit)),
        reconcile_window_seconds=float(raw.get("reconcile_window_seconds", defaults.reconcile_window_seconds)),
        pending_update_ttl_seconds=float(
            raw.get("pending_update_ttl_seconds", defaults.pending_update_ttl_seconds)
        ),
    )


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# History and reconciliation tunables handed to the core.
MESSAGING = build_messaging_config(_CONFIG.get("messaging", {}))

# Request timeout for non-history calls (send, edit, delete, channel list).
REQUEST_TIMEOUT_SECONDS = float(_CONFIG.get("api", {}).get("request_timeout_seconds", 30))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
