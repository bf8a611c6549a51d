from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from imgoptim.db.models import TransientNotice


class NoticeStore:
    """Short-lived key/value notices that are read at most once."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def put(self, key: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        now = self._now()
        with self._session_factory() as session:
            notice = session.get(TransientNotice, key)
            if notice is None:
                notice = TransientNotice(key=key)
                session.add(notice)
            notice.payload = dict(payload)
            notice.expires_at = now + timedelta(seconds=ttl_seconds)
            notice.created_at = now
            session.commit()

    def pop(self, key: str) -> dict[str, Any] | None:
        now = self._now()
        with self._session_factory() as session:
            notice = session.get(TransientNotice, key)
            if notice is None:
                return None
            payload = dict(notice.payload)
            expired = self._coerce_utc(notice.expires_at) <= now
            session.execute(delete(TransientNotice).where(TransientNotice.key == key))
            session.commit()
            return None if expired else payload
