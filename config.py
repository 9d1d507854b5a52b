import logging
import os
from pathlib import Path

# Load .env early so os.getenv picks up local dev secrets.
try:  # pragma: no cover - environment bootstrap
    from dotenv import load_dotenv

    _DOTENV_PATHS = [Path.cwd() / ".env", Path(__file__).resolve().parent / ".env"]
    for _env_path in _DOTENV_PATHS:
        if _env_path.exists():
            load_dotenv(dotenv_path=_env_path, override=False)
except Exception as exc:
    logging.getLogger(__name__).warning("Failed to load .env: %s", exc)

APP_NAME = "Seller Orders Review Manager"
APP_VERSION = "1.0.0"
ROOT = Path(__file__).resolve().parent

# ----------------------------
# Helpers
# ----------------------------
def _csv_list(name: str, default: str = "") -> list[str]:
    raw = (os.getenv(name) or default).strip()
    if not raw:
        return []
    return [x.strip() for x in raw.split(",") if x.strip()]

def _int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        logging.getLogger(__name__).warning("Invalid integer for %s=%r; using %s", name, raw, default)
        return default

def _float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        logging.getLogger(__name__).warning("Invalid number for %s=%r; using %s", name, raw, default)
        return default

def _bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}

# ----------------------------
# Credentials (validated on first token request)
# ----------------------------
LWA_CLIENT_ID = os.getenv("LWA_CLIENT_ID", "")
LWA_CLIENT_SECRET = os.getenv("LWA_CLIENT_SECRET", "")
LWA_REFRESH_TOKEN = os.getenv("LWA_REFRESH_TOKEN", "")

# ----------------------------
# Marketplace / region
# ----------------------------
MARKETPLACE_IDS = _csv_list("MARKETPLACE_IDS")

if not MARKETPLACE_IDS:
    single = (os.getenv("MARKETPLACE_ID") or "").strip()
    if single:
        MARKETPLACE_IDS = [single]

# Hard default (Amazon.co.jp)
if not MARKETPLACE_IDS:
    MARKETPLACE_IDS = ["A1VC38T7YXB528"]

MARKETPLACE_ID = MARKETPLACE_IDS[0]

SPAPI_REGION = os.getenv("SPAPI_REGION", "us-west-2")
# Empty means "derive from MARKETPLACE_ID"
SPAPI_BASE_URL = (os.getenv("SPAPI_BASE_URL") or "").strip()
SPAPI_TIMEOUT_SECONDS = _float("SPAPI_TIMEOUT_SECONDS", 300.0)
USE_MOCK_DATA = _bool("USE_MOCK_DATA", False)

# ----------------------------
# Local storage
# ----------------------------
ORDERS_CACHE_DIR = Path(os.getenv("ORDERS_CACHE_DIR") or (ROOT / ".orders-cache"))
ORDERS_DB_PATH = Path(os.getenv("ORDERS_DB_PATH") or (ROOT / "orders.db"))
ORDERS_CACHE_TTL_MINUTES = _int("ORDERS_CACHE_TTL_MINUTES", 30)
ORDERS_SNAPSHOT_TTL_HOURS = _int("ORDERS_SNAPSHOT_TTL_HOURS", 24)
ORDERS_CACHE_CLEANUP_MINUTES = _int("ORDERS_CACHE_CLEANUP_MINUTES", 10)

# ----------------------------
# Fetch / enrichment tuning
# ----------------------------
ORDERS_DEFAULT_MAX_RESULTS = _int("ORDERS_DEFAULT_MAX_RESULTS", 500)
ORDERS_DEFAULT_LOOKBACK_DAYS = _int("ORDERS_DEFAULT_LOOKBACK_DAYS", 30)
ORDERS_SYNC_LOOKBACK_DAYS = _int("ORDERS_SYNC_LOOKBACK_DAYS", 7)
ENRICH_GROUP_SIZE = min(5, max(2, _int("ENRICH_GROUP_SIZE", 3)))
ENRICH_GROUP_PAUSE_SECONDS = _float("ENRICH_GROUP_PAUSE_SECONDS", 2.0)
JOB_CANCEL_GRACE_SECONDS = _float("JOB_CANCEL_GRACE_SECONDS", 2.0)

LOG_LEVEL = os.getenv("ORDERS_LOG_LEVEL", "INFO").upper()
