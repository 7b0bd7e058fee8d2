import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()  # Load .env file if present

BASE_DIR = Path(__file__).resolve().parents[2]
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-key")
DEBUG = os.getenv("DJANGO_DEBUG", "false").lower() in {"1", "true", "yes"}
raw_hosts = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1")
ALLOWED_HOSTS = [h.strip() for h in raw_hosts.split(",") if h.strip()]

SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

INSTALLED_APPS = [
    "stakeview.apps.staking.apps.StakingConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "stakeview.urls"
WSGI_APPLICATION = "stakeview.wsgi.application"

# Ledger state is never persisted locally; every view is re-derived from the chain.
DATABASES = {}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Celery configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_DEFAULT_QUEUE = os.getenv("CELERY_TASK_DEFAULT_QUEUE", "staking")
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_TIME_LIMIT = int(os.getenv("CELERY_TASK_TIME_LIMIT", "300"))

CELERY_BROKER_CONNECTION_RETRY_ON_STARTUP = True

# ==============================================================================
# Logging
# ==============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "loggers": {
        "stakeview": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}

# ==============================================================================
# Web3 / Blockchain Configuration
# ==============================================================================

# Per-network defaults, selected with CHAIN_NETWORK
CHAIN_PRESETS = {
    "bsc": {
        "chain_id": 56,
        "rpc_url": "https://bsc-dataseed.binance.org",
        "staking_platform": "0x3F5e5dCdC737f751881ef60Ed3bcDF82f3de5466",
        "token": "0xE1a2EC79D7b56D13DE7b6dDcfc97004b23A33ff0",
    },
    "bsc-testnet": {
        "chain_id": 97,
        "rpc_url": "https://data-seed-prebsc-1-s1.binance.org:8545",
        "staking_platform": "0x841e74733375F72d8E5Bf81D3f8D9bb27e4600e6",
        "token": "0x3e88cff91778BAC662C3d912bF575493828Ac9Cf",
    },
}

CHAIN_NETWORK = os.getenv("CHAIN_NETWORK", "bsc").strip().lower()
if CHAIN_NETWORK not in CHAIN_PRESETS:
    raise ValueError(f"Unknown CHAIN_NETWORK {CHAIN_NETWORK!r}; expected one of {sorted(CHAIN_PRESETS)}")
_chain = CHAIN_PRESETS[CHAIN_NETWORK]

CHAIN_ID = _chain["chain_id"]
WEB3_PROVIDER_URL = os.getenv("WEB3_PROVIDER_URL", _chain["rpc_url"])

# Contract Addresses
STAKING_PLATFORM_ADDRESS = os.getenv("STAKING_PLATFORM_ADDRESS", _chain["staking_platform"])
STAKING_TOKEN_ADDRESS = os.getenv("STAKING_TOKEN_ADDRESS", _chain["token"])

# ABI Paths
STAKING_PLATFORM_ABI_PATH = BASE_DIR / "stakeview" / "onchain" / "abi" / "StakingPlatform.json"
ERC20_ABI_PATH = BASE_DIR / "stakeview" / "onchain" / "abi" / "ERC20.json"
PAIR_ABI_PATH = BASE_DIR / "stakeview" / "onchain" / "abi" / "PancakePair.json"

# Referrer used when no candidate referrer is acceptable
DEFAULT_REFERRER = os.getenv("DEFAULT_REFERRER", "0xc607CD122fF8d21fbaECc4305aFE1E357d624137")

# Fallback daily accrual rate (1e18 fixed point, 1e16 == 1% per day)
DEFAULT_DAILY_RATE = int(os.getenv("DEFAULT_DAILY_RATE", str(10**16)))

# Event log scanning
LOG_SCAN_LOOKBACK_BLOCKS = int(os.getenv("LOG_SCAN_LOOKBACK_BLOCKS", "500000"))
LOG_SCAN_PRUNED_RETRY_BLOCKS = int(os.getenv("LOG_SCAN_PRUNED_RETRY_BLOCKS", "50000"))
LOG_SCAN_MAX_ATTEMPTS = int(os.getenv("LOG_SCAN_MAX_ATTEMPTS", "3"))
LOG_SCAN_CONCURRENCY = int(os.getenv("LOG_SCAN_CONCURRENCY", "8"))

# Downline tree and batch export
DOWNLINE_MAX_DEPTH = int(os.getenv("DOWNLINE_MAX_DEPTH", "15"))
DOWNLINE_CONCURRENCY = int(os.getenv("DOWNLINE_CONCURRENCY", "8"))
EXPORT_PAGE_SIZE = int(os.getenv("EXPORT_PAGE_SIZE", "25"))

# Seconds a cached read stays valid inside one ReadCache
READ_CACHE_TTL = int(os.getenv("READ_CACHE_TTL", "15"))

# Transaction submission
TX_RECEIPT_TIMEOUT = int(os.getenv("TX_RECEIPT_TIMEOUT", "120"))
