from datetime import datetime


async def log_audit(
    store,
    actor,
    action: str,
    metadata: dict | None = None,
    session=None,
):
    await store.audit_logs.insert_one(
        {
            "actorId": actor.id,
            "actorRole": actor.role.value,
            "action": action,
            "metadata": metadata or {},
            "createdAt": datetime.utcnow(),
        },
        session=session,
    )
