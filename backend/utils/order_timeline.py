from datetime import datetime, timedelta


def status_entry(
    status: str,
    *,
    actor=None,
    notes: str | None = None,
    event: str | None = None,
    timestamp: datetime | None = None,
) -> dict:
    """
    Single source of truth for statusHistory entries.

    Entries are appended, never edited. `status` is always the aggregate's
    status at the time of the entry; `event` tags non-status milestones such
    as escrow resolution.
    """
    entry = {
        "status": status,
        "timestamp": timestamp or datetime.utcnow(),
        "notes": notes,
        "actor": actor.ref() if actor else {"id": "system", "role": "system"},
    }
    if event:
        entry["event"] = event
    return entry


def status_entered_at(history: list[dict], status: str) -> datetime | None:
    """When the aggregate last entered `status`, or None if it never did."""
    entered = None
    previous = None
    for entry in history or []:
        if entry.get("status") == status and previous != status:
            entered = entry.get("timestamp")
        previous = entry.get("status")
    return entered


def time_in_status(history: list[dict], current_status: str, now: datetime) -> timedelta | None:
    entered = status_entered_at(history, current_status)
    if entered is None:
        return None
    return now - entered
