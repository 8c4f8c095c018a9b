"""
Centralized configuration module for the catalog site backend.
Reads configuration from env.properties file.
"""

import os
from pathlib import Path
from typing import Optional

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent.absolute()

CONFIG_FILE = PROJECT_ROOT / "env.properties"

_config_cache: dict = {}


def _load_config() -> dict:
    """Load configuration from env.properties file."""
    global _config_cache
    if _config_cache:
        return _config_cache

    config = {}
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    config[key.strip()] = value.strip()

    _config_cache = config
    return config


def get(key: str, default: Optional[str] = None) -> str:
    """Get a configuration value by key."""
    config = _load_config()
    # Environment variables take precedence
    env_value = os.environ.get(key)
    if env_value is not None:
        return env_value
    return config.get(key, default or "")


def get_int(key: str, default: int = 0) -> int:
    """Get a configuration value as integer."""
    value = get(key, str(default))
    try:
        return int(value)
    except ValueError:
        return default


def get_float(key: str, default: float = 0.0) -> float:
    """Get a configuration value as float."""
    value = get(key, str(default))
    try:
        return float(value)
    except ValueError:
        return default


def get_bool(key: str, default: bool = False) -> bool:
    """Get a configuration value as boolean."""
    value = get(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def reload():
    """Reload configuration from file."""
    global _config_cache
    _config_cache = {}
    _load_config()


# Server Configuration
BACKEND_HOST = get("BACKEND_HOST", "0.0.0.0")
BACKEND_PORT = get_int("BACKEND_PORT", 8080)

# Database Configuration
DATABASE_NAME = get("DATABASE_NAME", "catalog.db")
DATA_DIR = PROJECT_ROOT / get("DATA_DIR", "data")
DATABASE_PATH = DATA_DIR / DATABASE_NAME

# Logging Configuration
LOGS_DIR = PROJECT_ROOT / get("LOGS_DIR", "logs")

# Application Settings
APP_NAME = get("APP_NAME", "Catalog Site")
APP_VERSION = get("APP_VERSION", "1.0.0")
ENVIRONMENT = get("ENVIRONMENT", "development")  # development, staging, production

# Security Settings
FORCE_HTTPS = get_bool("FORCE_HTTPS", False)  # Treat every request as HTTPS for cookie flags
ALLOWED_ORIGINS = get(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://127.0.0.1:5173",
)  # Comma-separated CORS origins

# Session cookie
SESSION_COOKIE_NAME = get("SESSION_COOKIE_NAME", "catalog_session")
SESSION_SAMESITE = get("SESSION_SAMESITE", "Lax")  # Strict, Lax or None
SESSION_COOKIE_DOMAIN = get("SESSION_COOKIE_DOMAIN", "")

# Session lifetime (seconds)
SESSION_IDLE_MAX = get_int("SESSION_IDLE_MAX", 3600)  # 1 hour of inactivity
SESSION_ABSOLUTE_MAX = get_int("SESSION_ABSOLUTE_MAX", 14400)  # 4 hours total
SESSION_REGEN_INTERVAL = get_int("SESSION_REGEN_INTERVAL", 1200)  # 20 minutes
ENFORCE_UA_HASH = get_bool("ENFORCE_UA_HASH", True)

# Login throttling
LOGIN_WINDOW_MINUTES = get_int("LOGIN_WINDOW_MINUTES", 15)
LOGIN_SOFT_THRESHOLD = get_int("LOGIN_SOFT_THRESHOLD", 3)  # Require reCAPTCHA from here
LOGIN_HARD_THRESHOLD = get_int("LOGIN_HARD_THRESHOLD", 5)  # Block (HTTP 429) from here
LOGIN_BLOCK_SECONDS = get_int("LOGIN_BLOCK_SECONDS", LOGIN_WINDOW_MINUTES * 60)
LOGIN_ADAPTIVE_DELAY = get_bool("LOGIN_ADAPTIVE_DELAY", True)
ATTEMPT_RETENTION_HOURS = get_int("ATTEMPT_RETENTION_HOURS", 24)
RATE_LIMIT_RETENTION_SECONDS = get_int("RATE_LIMIT_RETENTION_SECONDS", 3600)
ATTEMPT_PURGE_PROBABILITY = get_int("ATTEMPT_PURGE_PROBABILITY", 75)  # 1 in N successful logins

# reCAPTCHA (challenge is only enabled when both keys are present)
RECAPTCHA_SECRET = get("RECAPTCHA_SECRET", "")
RECAPTCHA_SITE_KEY = get("RECAPTCHA_SITE_KEY", "")
RECAPTCHA_MIN_SCORE = get_float("RECAPTCHA_MIN_SCORE", 0.3)
RECAPTCHA_TIMEOUT_SECONDS = get_float("RECAPTCHA_TIMEOUT_SECONDS", 5.0)
RECAPTCHA_VERIFY_URL = get(
    "RECAPTCHA_VERIFY_URL", "https://www.google.com/recaptcha/api/siteverify"
)

# Audit log retention
AUDIT_RETENTION_MONTHS = get_int("AUDIT_RETENTION_MONTHS", 6)

# Bootstrap admin (optional)
BOOTSTRAP_ADMIN_USERNAME = get("CATALOG_BOOTSTRAP_ADMIN_USERNAME", "")
BOOTSTRAP_ADMIN_PASSWORD = get("CATALOG_BOOTSTRAP_ADMIN_PASSWORD", "")

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)
