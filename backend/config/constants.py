# backend/config/constants.py

import re

from config.env import (
    PLATFORM_FEE_PERCENT,
    PLATFORM_FEE_GST_RATE,
    TDS_RATE,
    DRIVER_DELIVERY_EARNING,
    MINIMUM_WITHDRAWAL,
)

# -----------------------------
# SETTLEMENT DEFAULTS
# -----------------------------

DEFAULT_PLATFORM_FEE_PERCENT = PLATFORM_FEE_PERCENT
DEFAULT_PLATFORM_FEE_GST_RATE = PLATFORM_FEE_GST_RATE
DEFAULT_TDS_RATE = TDS_RATE

# -----------------------------
# DRIVER WALLET
# -----------------------------

DELIVERY_EARNING_AMOUNT = DRIVER_DELIVERY_EARNING
MINIMUM_WITHDRAWAL_AMOUNT = MINIMUM_WITHDRAWAL

# -----------------------------
# PAYMENT DETAILS
# -----------------------------

BANK_ACCOUNT_REGEX = re.compile(r"^\d{9,18}$")
IFSC_REGEX = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")

PAYOUT_METHODS = {"bank_transfer", "upi", "cash", "cheque", "wallet", "other"}

# -----------------------------
# REPORTING
# -----------------------------

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
