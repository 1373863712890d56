"""TTL lease stored in ``worker_locks``.

A lease that is past ``expires_at`` belongs to nobody and is taken over by the
next caller; a live lease held by someone else counts as contention.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from isp_billing.core.config import settings
from isp_billing.models.payment import WorkerLock


@dataclass(frozen=True)
class LeaseResult:
    acquired: bool
    lock_name: str
    holder: str
    expires_at: datetime
    contended_ticks: int = 0


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _record_contention(db: Session, lock: WorkerLock) -> LeaseResult:
    db.execute(
        update(WorkerLock)
        .where(WorkerLock.lock_name == lock.lock_name)
        .values(contended_ticks=WorkerLock.contended_ticks + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(lock)
    return LeaseResult(
        acquired=False,
        lock_name=lock.lock_name,
        holder=lock.locked_by,
        expires_at=as_utc(lock.expires_at),
        contended_ticks=lock.contended_ticks,
    )


def acquire_lease(
    db: Session,
    *,
    lock_name: str,
    holder: str,
    now: datetime,
    ttl_seconds: int | None = None,
) -> LeaseResult:
    expires_at = now + timedelta(seconds=ttl_seconds or settings.worker_lock_ttl_seconds)
    lock = db.get(WorkerLock, lock_name)

    if lock is None:
        db.add(
            WorkerLock(
                lock_name=lock_name,
                locked_by=holder,
                locked_at=now,
                expires_at=expires_at,
                contended_ticks=0,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            lock = db.get(WorkerLock, lock_name)
            if lock is None:
                raise
            return _record_contention(db, lock)
        return LeaseResult(acquired=True, lock_name=lock_name, holder=holder, expires_at=expires_at)

    if as_utc(lock.expires_at) > as_utc(now) and lock.locked_by != holder:
        return _record_contention(db, lock)

    previous_holder = lock.locked_by
    previous_expiry = lock.expires_at
    result = db.execute(
        update(WorkerLock)
        .where(
            WorkerLock.lock_name == lock_name,
            WorkerLock.locked_by == previous_holder,
            WorkerLock.expires_at == previous_expiry,
        )
        .values(locked_by=holder, locked_at=now, expires_at=expires_at, contended_ticks=0)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return _record_contention(db, db.get(WorkerLock, lock_name))
    db.commit()
    return LeaseResult(acquired=True, lock_name=lock_name, holder=holder, expires_at=expires_at)


def release_lease(db: Session, *, lock_name: str, holder: str, now: datetime) -> bool:
    result = db.execute(
        update(WorkerLock)
        .where(WorkerLock.lock_name == lock_name, WorkerLock.locked_by == holder)
        .values(expires_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1
