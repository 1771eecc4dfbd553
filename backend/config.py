import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("CHAINROLL_DB_PATH", BASE_DIR / "database" / "chainroll.db"))

# Process-wide secrets. Broadcast codes are sealed with TOKEN_SECRET; API
# bearer tokens are signed with SIGNING_KEY. Unset secrets are generated per
# process, so codes and bearer tokens do not survive a restart.
DEFAULT_DEVICE_SECRET = "chainroll-device-secret-change-me"
_TOKEN_SECRET_ENV = os.getenv("CHAINROLL_TOKEN_SECRET", "").strip()
_SIGNING_KEY_ENV = os.getenv("CHAINROLL_SIGNING_KEY", "").strip() or _TOKEN_SECRET_ENV
TOKEN_SECRET = _TOKEN_SECRET_ENV or secrets.token_urlsafe(32)
SIGNING_KEY = _SIGNING_KEY_ENV or secrets.token_urlsafe(32)
TOKEN_SECRET_GENERATED = not _TOKEN_SECRET_ENV
SIGNING_KEY_GENERATED = not _SIGNING_KEY_ENV
# Shared with the identity gateway that exchanges its own login for a bearer token.
DEVICE_SECRET = os.getenv("CHAINROLL_DEVICE_SECRET", DEFAULT_DEVICE_SECRET).strip()
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("CHAINROLL_AUTH_TOKEN_TTL_SECONDS", "43200"))

CHAIN_KINDS = ("ENTRY", "EXIT", "LATE", "EARLY", "SNAPSHOT")
BROADCAST_KINDS = ("ENTRY", "EXIT", "LATE", "EARLY")


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_positive_int(value: str | None, fallback: int) -> int:
    if not value:
        return fallback
    try:
        parsed = int(value.strip())
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def _ttl_table(prefix: str, kinds: tuple[str, ...], default: int) -> dict[str, int]:
    base = _parse_positive_int(os.getenv(f"CHAINROLL_{prefix}_TTL_SECONDS"), default)
    return {
        kind: _parse_positive_int(os.getenv(f"CHAINROLL_{kind}_{prefix}_TTL_SECONDS"), base)
        for kind in kinds
    }


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("CHAINROLL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("CHAINROLL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("CHAINROLL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Device-Fingerprint"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("CHAINROLL_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("CHAINROLL_ENABLE_DEBUG_ENDPOINTS"), False)

# Scan throttling, in limits notation ("10/minute"). Devices identify themselves
# with the X-Device-Fingerprint header.
RATE_LIMIT_ENABLED = _parse_bool(os.getenv("CHAINROLL_RATE_LIMIT_ENABLED"), True)
SCAN_DEVICE_RATE_LIMIT = os.getenv("CHAINROLL_SCAN_DEVICE_RATE_LIMIT", "10/minute").strip() or "10/minute"
SCAN_IP_RATE_LIMIT = os.getenv("CHAINROLL_SCAN_IP_RATE_LIMIT", "50/minute").strip() or "50/minute"

# Token lifetimes, per chain kind (persisted hop tokens) and per broadcast kind
# (stateless teacher codes).
CHAIN_TOKEN_TTL_SECONDS = _ttl_table("CHAIN", CHAIN_KINDS, 10)
BROADCAST_TOKEN_TTL_SECONDS = _ttl_table("BROADCAST", BROADCAST_KINDS, 20)
CHALLENGE_TTL_SECONDS = _parse_positive_int(os.getenv("CHAINROLL_CHALLENGE_TTL_SECONDS"), 30)

CHAIN_MAX_SEED_COUNT = _parse_positive_int(os.getenv("CHAINROLL_CHAIN_MAX_SEED_COUNT"), 20)
# A chain whose custody has not moved for this long is reported as stalled.
STALL_IDLE_SECONDS = _parse_positive_int(os.getenv("CHAINROLL_STALL_IDLE_SECONDS"), 90)

NOTIFY_WEBHOOK_URL = os.getenv("CHAINROLL_NOTIFY_WEBHOOK_URL", "").strip() or None
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("CHAINROLL_NOTIFY_TIMEOUT_SECONDS", "2"))

LOG_LEVEL = os.getenv("CHAINROLL_LOG_LEVEL", "INFO").strip().upper() or "INFO"
LOG_FILE = os.getenv("CHAINROLL_LOG_FILE", "").strip() or None


def insecure_secret_warnings() -> list[str]:
    """Startup warnings for secrets left at a published or per-process value."""
    warnings = []
    if DEVICE_SECRET == DEFAULT_DEVICE_SECRET:
        warnings.append(
            "CHAINROLL_DEVICE_SECRET is the published default; anyone can exchange it for a teacher bearer token."
        )
    if TOKEN_SECRET_GENERATED:
        warnings.append(
            "CHAINROLL_TOKEN_SECRET is unset; broadcast codes use a per-process key and fail across workers or restarts."
        )
    if SIGNING_KEY_GENERATED:
        warnings.append(
            "CHAINROLL_SIGNING_KEY is unset; bearer tokens use a per-process key and are invalidated on restart."
        )
    return warnings
