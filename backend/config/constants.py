# backend/config/constants.py

# -----------------------------
# COLLECTIONS
# -----------------------------

ORDERS = "orders"
REFUND_DETAILS = "refund_details"
REFUND_RECONCILIATIONS = "refund_reconciliations"
RETURN_INDEX = "return_index"
AUDIT_LOGS = "audit_logs"

# -----------------------------
# ACTORS
# -----------------------------

SYSTEM_ACTOR = "system:order-ingestion"
DEFAULT_ACTOR = "system"

# -----------------------------
# REFUND FIELDS
# -----------------------------

# Fields a split entry never inherits from the original
SPLIT_REGENERATED_FIELDS = {"_id", "id", "created_at", "updated_at"}
