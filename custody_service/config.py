"""
Configuration module for the custody service.

Centralizes all configuration with environment variable support and
validation. Gateway and store selection live here so the app module only
wires things together.
"""

import os
from pathlib import Path
from typing import Dict, Optional

from custodychain import (
    NETWORKS,
    AnchorDispatcher,
    AnchorGateway,
    DisabledAnchorGateway,
    JsonRpcAnchorGateway,
    SimulatedAnchorGateway,
)

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("CUSTODY_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = os.getenv("CUSTODY_DB_PATH", "data/custody.db")

# Anchoring
ANCHOR_GATEWAY = os.getenv("ANCHOR_GATEWAY", "simulated")  # simulated|jsonrpc|disabled
ANCHOR_NETWORK = os.getenv("ANCHOR_NETWORK", "zkevm-testnet")
ANCHOR_RPC_URL = os.getenv("ANCHOR_RPC_URL", "")
ANCHOR_RELAY_URL = os.getenv("ANCHOR_RELAY_URL", "")
ANCHOR_TIMEOUT_SECONDS = float(os.getenv("ANCHOR_TIMEOUT_SECONDS", "10"))
ANCHOR_MAX_ATTEMPTS = int(os.getenv("ANCHOR_MAX_ATTEMPTS", "3"))
ANCHOR_BACKOFF_SECONDS = float(os.getenv("ANCHOR_BACKOFF_SECONDS", "0.5"))
ANCHOR_WORKERS = int(os.getenv("ANCHOR_WORKERS", "4"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")


# ============================================================
# Collaborator Factories
# ============================================================

def get_anchor_gateway(kind: Optional[str] = None) -> AnchorGateway:
    """Select the anchor gateway variant from ANCHOR_GATEWAY."""
    kind = kind or ANCHOR_GATEWAY
    if kind == "jsonrpc":
        return JsonRpcAnchorGateway(
            network=ANCHOR_NETWORK,
            rpc_url=ANCHOR_RPC_URL or None,
            relay_url=ANCHOR_RELAY_URL or None,
            timeout=ANCHOR_TIMEOUT_SECONDS,
        )
    if kind == "disabled":
        return DisabledAnchorGateway()
    if kind != "simulated":
        raise ValueError(f"Unknown ANCHOR_GATEWAY {kind!r}")
    if is_production():
        raise ValueError("Simulated anchoring is not allowed in production")
    return SimulatedAnchorGateway()


def get_anchor_dispatcher(gateway: Optional[AnchorGateway] = None) -> AnchorDispatcher:
    return AnchorDispatcher(
        gateway or get_anchor_gateway(),
        max_attempts=ANCHOR_MAX_ATTEMPTS,
        backoff_seconds=ANCHOR_BACKOFF_SECONDS,
        call_timeout=ANCHOR_TIMEOUT_SECONDS,
        workers=ANCHOR_WORKERS,
    )


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Check the configuration for obvious mistakes.
    Returns dict of check -> passed.
    """
    checks = {
        "db_dir": Path(DB_PATH).parent.exists(),
        "anchor_gateway": ANCHOR_GATEWAY in ("simulated", "jsonrpc", "disabled"),
        "anchor_network": ANCHOR_NETWORK in NETWORKS,
        "anchor_attempts": ANCHOR_MAX_ATTEMPTS >= 1,
    }
    if ANCHOR_GATEWAY == "jsonrpc":
        checks["anchor_relay"] = bool(ANCHOR_RELAY_URL)
    if is_production():
        checks["real_anchoring"] = ANCHOR_GATEWAY != "simulated"
    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("CUSTODY_DEBUG", "").lower() in ("1", "true", "yes")
