"""
Application-wide constants.
Centralizes magic numbers and table names.
"""

# Backing store tables
SLOTS_TABLE = "appointments"
SERVICES_TABLE = "services"
CLIENTS_TABLE = "clients"
PRACTITIONERS_TABLE = "practitioners"
TRANSACTIONS_TABLE = "transactions"

# Transaction states that do not count as a linked transaction
INACTIVE_TRANSACTION_STATUSES = ("failed", "cancelled")

# Annotation stamped on slots cancelled by the suspension coordinator
SUSPENSION_REASON = "suspended"

# Alternative action offered when a cancellation is blocked
MOVE_ACTION = "move"

# Validation limits
MAX_NOTES_LENGTH = 1000
MIN_SERVICE_DURATION_MINUTES = 1
MAX_SERVICE_DURATION_MINUTES = 24 * 60
MAX_GAP_MINUTES = 24 * 60
MAX_GENERATION_DAYS = 366

# Display formatting
SLOT_ID_DISPLAY_LENGTH = 8
