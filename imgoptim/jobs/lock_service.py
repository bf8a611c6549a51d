from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from imgoptim.core.config import Settings
from imgoptim.db.models import JobLock


@dataclass(frozen=True)
class Lease:
    lock_key: str
    owner_token: str
    expires_at: datetime


class JobLockService:
    """Short TTL leases over a lock key, one holder at a time.

    A lease lives in ``job_locks`` and is committed as soon as it is taken, so
    a concurrent request sees it immediately. Leases past their expiry are
    cleared by the next caller that asks for the same key.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._ttl = timedelta(seconds=settings.job_lock_ttl_seconds)
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def try_acquire(self, lock_key: str) -> Lease | None:
        now = self._now()
        lease = Lease(lock_key=lock_key, owner_token=str(uuid4()), expires_at=now + self._ttl)

        with self._session_factory() as session:
            session.execute(delete(JobLock).where(JobLock.lock_key == lock_key, JobLock.expires_at <= now))
            session.add(
                JobLock(
                    lock_key=lease.lock_key,
                    owner_token=lease.owner_token,
                    acquired_at=now,
                    expires_at=lease.expires_at,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
        return lease

    def release(self, lease: Lease) -> None:
        with self._session_factory() as session:
            session.execute(
                delete(JobLock).where(
                    JobLock.lock_key == lease.lock_key,
                    JobLock.owner_token == lease.owner_token,
                )
            )
            session.commit()

    def is_alive(self, lease: Lease) -> bool:
        if lease.expires_at <= self._now():
            return False
        with self._session_factory() as session:
            owner = session.scalar(select(JobLock.owner_token).where(JobLock.lock_key == lease.lock_key))
        return owner == lease.owner_token
