from datetime import datetime

from config.constants import AUDIT_LOGS, DEFAULT_ACTOR


async def log_audit(
    store,
    action: str,
    actor_id: str | None = None,
    actor_role: str = "staff",
    metadata: dict | None = None,
    session=None,
):
    await store.add(
        AUDIT_LOGS,
        {
            "actor_id": actor_id or DEFAULT_ACTOR,
            "actor_role": actor_role,
            "action": action,
            "metadata": metadata or {},
            "created_at": datetime.utcnow(),
        },
        session=session,
    )
