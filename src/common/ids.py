from datetime import datetime, timedelta, timezone

_last_chat_ts: datetime | None = None


def new_chat_id() -> str:
    global _last_chat_ts
    now = datetime.now(timezone.utc)
    if _last_chat_ts is not None and now <= _last_chat_ts:
        now = _last_chat_ts + timedelta(microseconds=1)
    _last_chat_ts = now
    return now.isoformat()
