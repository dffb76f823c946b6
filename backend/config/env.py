import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# Max write operations committed together; larger batches are chunked
MAX_BATCH_OPERATIONS = int(os.getenv("MAX_BATCH_OPERATIONS", 500))

# Max ids per "$in" query
QUERY_IN_CHUNK_SIZE = int(os.getenv("QUERY_IN_CHUNK_SIZE", 10))

# =====================================================
# REFUND ACCOUNTING
# =====================================================
REFUND_EPSILON = float(os.getenv("REFUND_EPSILON", 0.01))

# 0 disables the snapshot cache
SNAPSHOT_CACHE_TTL_SECONDS = int(os.getenv("SNAPSHOT_CACHE_TTL_SECONDS", 300))

SNAPSHOT_FANOUT_CONCURRENCY = int(os.getenv("SNAPSHOT_FANOUT_CONCURRENCY", 8))

BULK_UPDATE_TOLERANCE_SECONDS = float(os.getenv("BULK_UPDATE_TOLERANCE_SECONDS", 2))

# =====================================================
# WORKERS
# =====================================================
RETURN_INDEX_REPAIR_INTERVAL_SECONDS = int(
    os.getenv("RETURN_INDEX_REPAIR_INTERVAL_SECONDS", 60 * 60)
)

# =====================================================
# SECRETS
# =====================================================
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "ADMIN_API_KEY": ADMIN_API_KEY,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
