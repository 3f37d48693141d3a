# config.py – Order Sync Engine configuration
# ============================================
# - SYNC SETTINGS (sections 1-4): timing knobs for channel, reconciliation and overlays
# - SYSTEM DEFAULTS (section 5+): paths, logging, retry budgets
# Environment variables override the defaults where noted.

import os
import threading
import uuid

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Identifies this client process in logs and intents
CLIENT_ID = os.getenv("ORDER_SYNC_CLIENT_ID") or f"client_{uuid.uuid4().hex[:8]}"

_config_overrides = {}
_config_lock = threading.RLock()


def set_config_override(key: str, value) -> None:
    """
    Runtime config override.

    Use this instead of assigning to config.* variables directly.

    Args:
        key: Config variable name (e.g., 'PULL_INTERVAL_S')
        value: New value
    """
    with _config_lock:
        _config_overrides[key] = value


def get_config(key: str, default=None):
    """
    Config getter: runtime overrides first, then module-level default.

    Args:
        key: Config variable name
        default: Default if key not found
    """
    with _config_lock:
        if key in _config_overrides:
            return _config_overrides[key]

    return globals().get(key, default)


def clear_config_overrides() -> None:
    """Clear all runtime config overrides (useful for testing)."""
    with _config_lock:
        _config_overrides.clear()


def _env_flag(name: str, default: bool = False) -> bool:
    """
    Parse a boolean environment flag.

    Accepted truthy values: 1, true, yes, on (case-insensitive).
    """
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


CONFIG_VERSION = 1

# =============================================================================
# 1. RECONCILIATION
# =============================================================================

PULL_INTERVAL_S = _env_float("ORDER_SYNC_PULL_INTERVAL_S", 30.0)  # Periodic authoritative pull
UNCONFIRMED_TIMEOUT_S = _env_float("ORDER_SYNC_UNCONFIRMED_TIMEOUT_S", 60.0)  # Local state may disagree this long
DEDUP_WINDOW_S = 10.0  # Replayed (order, state) pairs inside this window are dropped
DEDUP_MAX_ENTRIES = 5000

# =============================================================================
# 2. OPTIMISTIC OVERLAYS
# =============================================================================

OVERLAY_TIMEOUT_S = _env_float("ORDER_SYNC_OVERLAY_TIMEOUT_S", 5.0)  # Unconfirmed overlays revert after this

# =============================================================================
# 3. RETRY (transient network failures)
# =============================================================================

RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_S = 0.2
RETRY_MAX_DELAY_S = 2.0
RETRY_TOTAL_TIME_CAP_S = 6.0

# =============================================================================
# 4. METRICS
# =============================================================================

FALLBACK_DELIVERY_TIME_MIN = 25.0  # Shown when no delivered order has both timestamps

# =============================================================================
# 5. PATHS & PERSISTENCE
# =============================================================================

STATE_DIR = os.getenv("ORDER_SYNC_STATE_DIR", os.path.join(BASE_DIR, "state"))
SNAPSHOT_FILE = os.path.join(STATE_DIR, "order_snapshot.json")
SNAPSHOT_SCHEMA_VERSION = 1
PERSIST_SNAPSHOTS = _env_flag("ORDER_SYNC_PERSIST", True)

# =============================================================================
# 6. LOGGING
# =============================================================================

LOG_DIR = os.getenv("ORDER_SYNC_LOG_DIR", os.path.join(BASE_DIR, "logs"))
LOG_LEVEL = os.getenv("ORDER_SYNC_LOG_LEVEL", "INFO")
LOG_BACKUP_DAYS = 14
