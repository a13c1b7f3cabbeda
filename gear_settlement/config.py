import os
from decimal import Decimal


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_decimal_env(name: str, default: str) -> Decimal:
    raw = (os.environ.get(name) or "").strip() or default
    try:
        return Decimal(raw)
    except ArithmeticError as exc:
        raise RuntimeError(f"Environment variable {name} must be numeric, got {raw!r}") from exc


GEAR_SETTLEMENT_DB_URL = _require_env("GEAR_SETTLEMENT_DB_URL")

SETTLEMENT_ADMIN_IDS = frozenset(_parse_csv_env("SETTLEMENT_ADMIN_IDS"))
PLATFORM_FEE_RATE = _parse_decimal_env("PLATFORM_FEE_RATE", "0.10")
PAYOUT_THRESHOLD = _parse_decimal_env("PAYOUT_THRESHOLD", "25")

CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    CORS_ALLOW_CREDENTIALS = False


def is_administrator(actor_id: str | None) -> bool:
    return bool(actor_id) and str(actor_id) in SETTLEMENT_ADMIN_IDS
