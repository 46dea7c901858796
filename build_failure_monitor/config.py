"""
Configuration Module

This module contains configuration settings for the application.
"""
import os
from pathlib import Path
from datetime import datetime, timezone

# Load environment variables from .env file
from dotenv import load_dotenv

# Base directory - one level up from this file
BASE_DIR = Path(__file__).resolve().parent.parent
PACKAGE_DIR = Path(__file__).resolve().parent

# Load .env file from BASE_DIR (adjust path if your .env is elsewhere)
load_dotenv(BASE_DIR / ".env")


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Data storage paths for Medallion Architecture
DATA_DIR = Path(os.getenv("DATA_DIR", BASE_DIR / "data"))
BRONZE_DIR = DATA_DIR / "bronze"
SILVER_DIR = DATA_DIR / "silver"

# Ensure directories exist
for directory in [DATA_DIR, BRONZE_DIR, SILVER_DIR]:
    directory.mkdir(exist_ok=True, parents=True)

# Database settings - local SQLite database unless DATABASE_URL says otherwise
SILVER_DB_PATH = SILVER_DIR / "build_failures.db"
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{SILVER_DB_PATH}")

# GitHub App settings
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
GITHUB_API_VERSION = "2022-11-28"
GITHUB_WEBHOOK_SECRET = os.getenv("GITHUB_WEBHOOK_SECRET", "")
GITHUB_APP_ID = os.getenv("GITHUB_APP_ID", "")
GITHUB_APP_PRIVATE_KEY = os.getenv("GITHUB_APP_PRIVATE_KEY", "")
GITHUB_APP_PRIVATE_KEY_PATH = os.getenv("GITHUB_APP_PRIVATE_KEY_PATH", "")
GITHUB_APP_SLUG = os.getenv("GITHUB_APP_SLUG", "build-failure-monitor")
GITHUB_APP_INSTALL_BASE_URL = os.getenv(
    "GITHUB_APP_INSTALL_BASE_URL", "https://github.com/apps"
)
GITHUB_REQUEST_TIMEOUT_SECONDS = int(os.getenv("GITHUB_REQUEST_TIMEOUT_SECONDS", "15"))
FETCH_JOB_DETAILS = _env_bool("FETCH_JOB_DETAILS", True)

# Webhook handling
WEBHOOK_ENDPOINT = os.getenv("WEBHOOK_ENDPOINT", "/api/github/webhook")
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "8"))
ARCHIVE_DELIVERIES = _env_bool("ARCHIVE_DELIVERIES", True)

# Store retry settings (bounded exponential backoff)
STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
STORE_RETRY_BASE_DELAY = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.2"))

# Classification settings
FAILURE_RULES_PATH = Path(
    os.getenv("FAILURE_RULES_PATH", PACKAGE_DIR / "data" / "failure_rules.json")
)
MAX_FAILURES_PER_BUILD = int(os.getenv("MAX_FAILURES_PER_BUILD", "5"))
FLAKY_LOOKBACK_RUNS = int(os.getenv("FLAKY_LOOKBACK_RUNS", "5"))

# Query settings
QUERY_TIMEOUT_SECONDS = float(os.getenv("QUERY_TIMEOUT_SECONDS", "5"))
BUILDS_WINDOW_DAYS = int(os.getenv("BUILDS_WINDOW_DAYS", "7"))
METRICS_WINDOW_DAYS = int(os.getenv("METRICS_WINDOW_DAYS", "0"))  # 0 = current month
METRICS_CACHE_TTL_SECONDS = float(os.getenv("METRICS_CACHE_TTL_SECONDS", "30"))

# Background installation sync
SYNC_INTERVAL_SECONDS = int(os.getenv("SYNC_INTERVAL_SECONDS", "300"))

# API settings
API_PREFIX = "/api"
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]


# Function to generate bronze layer file path
def get_bronze_file_path(event_type, delivery_id):
    """Generate a file path for storing a raw webhook delivery in the bronze layer."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    safe_delivery = "".join(
        ch for ch in (delivery_id or "unknown") if ch.isalnum() or ch in "-_"
    )
    return BRONZE_DIR / f"{timestamp}_{event_type}_{safe_delivery}.json"
