"""
Domain constants used across services/routers.
"""

# Paystack webhook events
EVENT_CHARGE_SUCCESS = "charge.success"
EVENT_TRANSFER_SUCCESS = "transfer.success"
EVENT_TRANSFER_FAILED = "transfer.failed"

PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"
CRON_SECRET_HEADER = "X-Cron-Secret"

# Paystack amounts are expressed in the currency's minor unit (kobo, cents)
MINOR_UNITS_PER_MAJOR = 100

# Solana commitment levels, weakest first
COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")

DEFAULT_LICENSE_TYPE = "basic"

# Notification copy
PURCHASE_NOTIFICATION_TITLE = "Purchase Complete"
SALE_NOTIFICATION_TITLE = "New Sale"
PAYOUT_SUCCESS_TITLE = "Payout Sent"
PAYOUT_FAILED_TITLE = "Payout Failed"
