import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _list_env(name: str) -> list[str]:
    raw = os.getenv(name) or ""
    return [h.strip().lower() for h in raw.split(",") if h.strip()]


SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

# Outbound feed fetches
FETCH_TIMEOUT_S = _int_env("SCHEDULE_FETCH_TIMEOUT_S", 15)
FETCH_MAX_BYTES = _int_env("SCHEDULE_FETCH_MAX_BYTES", 5 * 1024 * 1024)
FETCH_MAX_REDIRECTS = _int_env("SCHEDULE_FETCH_MAX_REDIRECTS", 3)
USER_AGENT = os.getenv("SCHEDULE_USER_AGENT", "ScheduleSync/1.0")

# Host lists for the URL gate (comma-separated hostnames)
ALLOWED_HOSTS = _list_env("SCHEDULE_ALLOWED_HOSTS")
BLOCKED_HOSTS = _list_env("SCHEDULE_BLOCKED_HOSTS")

# Default reconciliation window, relative to "now"
SYNC_PAST_DAYS = _int_env("SCHEDULE_SYNC_PAST_DAYS", 30)
SYNC_FUTURE_DAYS = _int_env("SCHEDULE_SYNC_FUTURE_DAYS", 366)
# Sources synced more recently than this are skipped by a scheduled run
SYNC_STALE_HOURS = _int_env("SCHEDULE_SYNC_STALE_HOURS", 24)


def require_supabase_env() -> tuple[str, str]:
    # Fail fast if required env vars are missing
    _missing = []
    if not SUPABASE_URL:
        _missing.append("SUPABASE_URL")
    if not SUPABASE_SERVICE_ROLE_KEY:
        _missing.append("SUPABASE_SERVICE_ROLE_KEY")
    if _missing:
        raise RuntimeError(
            f"Missing required environment variables: {', '.join(_missing)}. "
            "Copy .env.example to .env and fill in your Supabase credentials."
        )
    return SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY
