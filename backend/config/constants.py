# backend/config/constants.py

# -----------------------------
# CURRENCY
# -----------------------------
# All amounts are integers in minor units (kobo).

DEFAULT_CURRENCY = "NGN"

# -----------------------------
# PLATFORM COMMISSION
# -----------------------------

COMMISSION_PERCENT = 5
COMMISSION_LOWER_THRESHOLD = 2500     # below this: percentage + low flat fee
COMMISSION_UPPER_THRESHOLD = 5000     # at or above this: percentage + high flat fee
COMMISSION_FLAT_FEE_LOW = 100
COMMISSION_FLAT_FEE_HIGH = 200

# -----------------------------
# WITHDRAWALS
# -----------------------------

WITHDRAWAL_FEE_PERCENT = 1.5
WITHDRAWAL_FEE_FIXED = 5000
MIN_WITHDRAWAL_AMOUNT = 100000
WITHDRAWAL_REQUEST_PREFIX = "WDR-"

# -----------------------------
# ORDERS
# -----------------------------

IDEMPOTENCY_KEY_MIN_LENGTH = 8
IDEMPOTENCY_KEY_MAX_LENGTH = 128

# Delivered but unconfirmed for this many full days -> admin confirmation queue
STALE_CONFIRMATION_DAYS = 2

# -----------------------------
# PAGINATION
# -----------------------------

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
