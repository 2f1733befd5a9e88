import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "fastkart")
MONGO_TRANSACTIONS = _flag("MONGO_TRANSACTIONS")

# =====================================================
# JWT (tokens are issued by the auth service)
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_DAYS = int(os.getenv("ACCESS_TOKEN_DAYS", 30))

# =====================================================
# SETTLEMENT RATES
# =====================================================
PLATFORM_FEE_PERCENT = float(os.getenv("PLATFORM_FEE_PERCENT", 10))
PLATFORM_FEE_GST_RATE = float(os.getenv("PLATFORM_FEE_GST_RATE", 18))
TDS_RATE = float(os.getenv("TDS_RATE", 1))
PLATFORM_STATE = os.getenv("PLATFORM_STATE", "Karnataka")

# =====================================================
# DRIVERS
# =====================================================
DRIVER_DELIVERY_EARNING = float(os.getenv("DRIVER_DELIVERY_EARNING", 18))
MINIMUM_WITHDRAWAL = float(os.getenv("MINIMUM_WITHDRAWAL", 100))

# =====================================================
# ORDERS
# =====================================================
ORDER_ID_PREFIX = os.getenv("ORDER_ID_PREFIX", "FST")

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")

# --------------------------------------------------
# DATA ENCRYPTION
# --------------------------------------------------
BANK_DATA_ENCRYPTION_KEY = os.getenv("BANK_DATA_ENCRYPTION_KEY")


def _rate_problems() -> list[str]:
    problems = []
    for key, value in {
        "PLATFORM_FEE_PERCENT": PLATFORM_FEE_PERCENT,
        "PLATFORM_FEE_GST_RATE": PLATFORM_FEE_GST_RATE,
        "TDS_RATE": TDS_RATE,
    }.items():
        if not 0 <= value <= 100:
            problems.append(f"{key} must be between 0 and 100")
    if DRIVER_DELIVERY_EARNING < 0:
        problems.append("DRIVER_DELIVERY_EARNING cannot be negative")
    if MINIMUM_WITHDRAWAL <= 0:
        problems.append("MINIMUM_WITHDRAWAL must be positive")
    return problems


def validate_production_env() -> None:
    """
    Rate sanity applies everywhere; secrets and transactions are only
    enforced when ENV=production.
    """
    problems = _rate_problems()

    if (ENV or "").lower() == "production":
        for key, value in {
            "JWT_SECRET": JWT_SECRET,
            "MONGODB_URI": MONGO_URI,
            "BANK_DATA_ENCRYPTION_KEY": BANK_DATA_ENCRYPTION_KEY,
        }.items():
            val = (value or "").strip()
            if not val or val.startswith("CHANGE_THIS"):
                problems.append(f"{key} is missing")
        if not MONGO_TRANSACTIONS:
            problems.append("MONGO_TRANSACTIONS must be enabled (replica set required)")

    if problems:
        raise RuntimeError(f"Settlement service misconfigured: {'; '.join(problems)}")
