import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [p.strip() for p in raw.split(",") if p.strip()]


# ----------------------------
# Runtime
# ----------------------------
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./superfans.db")

BASE_URL = (
    os.environ.get("BASE_URL")
    or os.environ.get("PUBLIC_BASE_URL")
    or "http://localhost:3000"
).rstrip("/")

# ----------------------------
# Stripe
# ----------------------------
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
STRIPE_API_VERSION = os.environ.get("STRIPE_API_VERSION", "2024-06-20")
STRIPE_MIN_UNIT_CENTS = 50

# ----------------------------
# USDC on Base
# ----------------------------
CHAIN_RPC_URL = os.environ.get("CHAIN_RPC_URL", "https://mainnet.base.org")
CHAIN_RPC_TIMEOUT = float(os.environ.get("CHAIN_RPC_TIMEOUT", "10"))
USDC_CONTRACT_ADDRESS = os.environ.get(
    "USDC_CONTRACT_ADDRESS", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
).lower()
USDC_DECIMALS = int(os.environ.get("USDC_DECIMALS", "6"))

# ----------------------------
# Metal presale provider
# ----------------------------
METAL_API_URL = os.environ.get(
    "METAL_API_URL", "https://api.metal.build"
).rstrip("/")
METAL_SECRET_KEY = os.environ.get("METAL_SECRET_KEY", "")
METAL_PUBLIC_KEY = os.environ.get("METAL_PUBLIC_KEY", "")
METAL_TIMEOUT = float(os.environ.get("METAL_TIMEOUT", "10"))
METAL_AMOUNT_TOLERANCE = float(os.environ.get("METAL_AMOUNT_TOLERANCE", "0.01"))

# ----------------------------
# Auth
# ----------------------------
PRIVY_APP_ID = os.environ.get("PRIVY_APP_ID", "")
PRIVY_VERIFICATION_KEY = os.environ.get("PRIVY_VERIFICATION_KEY", "")
ADMIN_USER_IDS = _env_list("ADMIN_USER_IDS")
# never honoured in production
ADMIN_CHECK_BYPASS = _env_bool("ADMIN_CHECK_BYPASS")

# ----------------------------
# Business constants
# ----------------------------
CENTS_PER_CREDIT = 100
MAX_CREDITS_PER_PURCHASE = 10_000
TIER_ROLLING_WINDOW_DAYS = 60
DEFAULT_TICKET_PRICE_CENTS = 1800
CURRENCY = "usd"

# success/cancel redirects must land on one of these origins
ALLOWED_REDIRECT_ORIGINS = list(dict.fromkeys([
    BASE_URL,
    "http://localhost:3000",
    "http://localhost:3001",
    "https://superfan.one",
    "https://app.superfan.one",
    *_env_list("ALLOWED_REDIRECT_ORIGINS"),
]))
