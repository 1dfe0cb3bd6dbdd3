"""
Configuration module for EmergencyCash.

Centralizes all configuration with environment variable support.
Values are read once at import; loaders validate what a command needs.
"""

import os
from pathlib import Path
from typing import Dict, Optional

from .errors import ConfigError

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("EMERGENCYCASH_ENV", "dev")  # dev|stage|prod

# Card identity
MASTER_SECRET = os.getenv("MASTER_SECRET", "")
MASTER_SECRET_ENCODING = os.getenv("MASTER_SECRET_ENCODING", "auto")  # auto|hex|utf8

# Chain access
RPC_URL = os.getenv("RPC_URL", "")
CHAIN_ID = os.getenv("CHAIN_ID", "")
GAS_LIMIT = int(os.getenv("GAS_LIMIT", "100000"))
RECEIPT_TIMEOUT_SECONDS = int(os.getenv("RECEIPT_TIMEOUT_SECONDS", "120"))

# Token defaults
TOKEN_ADDR = os.getenv("TOKEN_ADDR", "")
MERCHANT_ADDR = os.getenv("MERCHANT_ADDR", "")
PRICE = os.getenv("PRICE", "1.0")
DECIMALS = int(os.getenv("DECIMALS", "6"))

# Storage
DB_PATH = os.getenv("DB_PATH", "data/emergencycash.db")
CLAIM_LEASE_SECONDS = int(os.getenv("CLAIM_LEASE_SECONDS", "600"))
MARK_USED_RETRIES = int(os.getenv("MARK_USED_RETRIES", "5"))
MARK_USED_RETRY_DELAY = float(os.getenv("MARK_USED_RETRY_DELAY", "0.5"))

# Point of sale
SCAN_COOLDOWN_SECONDS = float(os.getenv("SCAN_COOLDOWN_SECONDS", "1.2"))
POS_INTENT_TTL_SECONDS = int(os.getenv("POS_INTENT_TTL_SECONDS", "300"))

# Discovery only; never used for authorization
ENS_PARENT_NAME = os.getenv("ENS_PARENT_NAME", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")


# ============================================================
# Loaders
# ============================================================

def require(name: str, value: str) -> str:
    """Return a non-empty setting or raise ConfigError naming it."""
    if not value:
        raise ConfigError(f"Missing required setting: {name}")
    return value


def load_master_secret() -> str:
    return require("MASTER_SECRET", MASTER_SECRET)


def load_rpc_url() -> str:
    return require("RPC_URL", RPC_URL)


def load_chain_id() -> Optional[int]:
    """Chain id override, or None to ask the RPC endpoint."""
    if not CHAIN_ID:
        return None
    try:
        return int(CHAIN_ID)
    except ValueError:
        raise ConfigError(f"CHAIN_ID must be an integer, got {CHAIN_ID!r}")


def db_path() -> Path:
    return Path(DB_PATH)


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Report which settings are present.
    Returns dict of setting -> configured.
    """
    return {
        "master_secret": bool(MASTER_SECRET),
        "rpc_url": bool(RPC_URL),
        "token_addr": bool(TOKEN_ADDR),
        "merchant_addr": bool(MERCHANT_ADDR),
        "db_dir": db_path().parent.exists(),
    }


def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("EMERGENCYCASH_DEBUG", "").lower() in ("1", "true", "yes")
