"""
Session service — storage primitives for the device session registry.

Handles:
- Looking up active sessions (for admission checks and listings)
- Finding the latest row for a device (revoked-device detection)
- Atomic insert-or-update of a device's active session
- Count-and-insert admission for strict device limits
- Idempotent status transitions ACTIVE → REVOKED (one / device / all)
- Inactivity sweep

Every mutation is a single SQL statement whose atomicity the database
guarantees; nothing here reads a row and then writes it back.  All
database connectivity failures surface as `StorageError` so callers
can never mistake an outage for "no session".
"""

import functools
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import ParamSpec, TypeVar

from sqlalchemy import func, literal, select, text, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from devicegate.core.database import dialect_insert, dialect_name
from devicegate.core.exceptions import StorageError
from devicegate.models.base import utcnow
from devicegate.models.session import (
    ACTIVE_ROW_PREDICATE,
    DeviceAttributes,
    RevocationReason,
    Revoked,
    SessionStatus,
    UserSession,
)
from devicegate.models.user import User

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def storage_errors(fn: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    """Re-raise connectivity failures from the database as StorageError."""

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await fn(*args, **kwargs)
        except (OperationalError, InterfaceError) as exc:
            logger.error("Storage failure in %s: %s", fn.__name__, exc)
            raise StorageError("Session storage is unavailable") from exc

    return wrapper


def _active(user_id: uuid.UUID):
    return (
        UserSession.user_id == user_id,
        UserSession.status == SessionStatus.ACTIVE,
    )


# ── Reads ────────────────────────────────────────────────────────────

@storage_errors
async def find_active_by_user_and_device(
    user_id: uuid.UUID,
    device_id: str,
    db: AsyncSession,
) -> UserSession | None:
    """At most one result; the partial unique index guarantees it."""
    stmt = select(UserSession).where(*_active(user_id), UserSession.device_id == device_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


@storage_errors
async def find_latest_for_device(
    user_id: uuid.UUID,
    device_id: str,
    db: AsyncSession,
) -> UserSession | None:
    """The device's most recently created row, active or revoked."""
    stmt = (
        select(UserSession)
        .where(UserSession.user_id == user_id, UserSession.device_id == device_id)
        .order_by(UserSession.created_at.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


@storage_errors
async def get_session_by_id(
    session_id: uuid.UUID,
    db: AsyncSession,
) -> UserSession | None:
    """Return a session by primary key regardless of status."""
    result = await db.execute(select(UserSession).where(UserSession.id == session_id))
    return result.scalar_one_or_none()


@storage_errors
async def list_active(user_id: uuid.UUID, db: AsyncSession) -> list[UserSession]:
    """Active sessions for a user, most recently seen first."""
    stmt = (
        select(UserSession)
        .where(*_active(user_id))
        .order_by(UserSession.last_seen.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


@storage_errors
async def list_all(user_id: uuid.UUID, db: AsyncSession) -> list[UserSession]:
    """Every session (active and revoked) for a user, most recently seen first."""
    stmt = (
        select(UserSession)
        .where(UserSession.user_id == user_id)
        .order_by(UserSession.last_seen.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


@storage_errors
async def count_active(user_id: uuid.UUID, db: AsyncSession) -> int:
    stmt = select(func.count()).select_from(UserSession).where(*_active(user_id))
    return (await db.execute(stmt)).scalar_one()


# ── Upsert ───────────────────────────────────────────────────────────

@storage_errors
async def upsert_active_session(
    user_id: uuid.UUID,
    device_id: str,
    attributes: DeviceAttributes,
    db: AsyncSession,
    external_session_id: str | None = None,
) -> UserSession:
    """
    Insert the device's ACTIVE session, or refresh it if one exists.

    Expressed as a single INSERT … ON CONFLICT DO UPDATE against the
    partial unique index, so N concurrent calls for the same pair all
    succeed and leave exactly one active row (last writer wins on the
    attributes).  A known `external_session_id` is never replaced by
    NULL.
    """
    now = utcnow()
    insert = dialect_insert(db)
    stmt = insert(UserSession).values(
        id=uuid.uuid4(),
        user_id=user_id,
        device_id=device_id,
        external_session_id=external_session_id,
        status=SessionStatus.ACTIVE,
        last_seen=now,
        created_at=now,
        **attributes.as_columns(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserSession.user_id, UserSession.device_id],
        index_where=text(ACTIVE_ROW_PREDICATE),
        set_={
            **attributes.as_columns(),
            "last_seen": now,
            "external_session_id": func.coalesce(
                stmt.excluded.external_session_id,
                UserSession.external_session_id,
            ),
        },
    ).returning(UserSession)

    result = await db.execute(stmt, execution_options={"populate_existing": True})
    session = result.scalar_one()
    await db.flush()
    return session


@storage_errors
async def admit_within_limit(
    user_id: uuid.UUID,
    device_id: str,
    attributes: DeviceAttributes,
    max_devices: int,
    db: AsyncSession,
    external_session_id: str | None = None,
) -> UserSession | None:
    """
    Strict admission: renew the device's session, or insert a new one
    only while the user holds fewer than `max_devices` active rows.

    Returns None when the limit is reached.  The count and the insert
    are one statement; on PostgreSQL the user row is additionally
    locked so concurrent admissions for the same user serialise inside
    the database.
    """
    now = utcnow()

    if dialect_name(db) == "postgresql":
        await db.execute(select(User.id).where(User.id == user_id).with_for_update())

    renew = (
        update(UserSession)
        .where(*_active(user_id), UserSession.device_id == device_id)
        .values(
            **attributes.as_columns(),
            last_seen=now,
            external_session_id=func.coalesce(
                external_session_id, UserSession.external_session_id
            ),
        )
        .execution_options(synchronize_session="fetch")
    )
    if (await db.execute(renew)).rowcount:
        await db.flush()
        return await _reload_active(user_id, device_id, db)

    return await _insert_within_limit(
        user_id, device_id, attributes, max_devices, db, external_session_id, now
    )


async def _insert_within_limit(
    user_id: uuid.UUID,
    device_id: str,
    attributes: DeviceAttributes,
    max_devices: int,
    db: AsyncSession,
    external_session_id: str | None,
    now: datetime,
) -> UserSession | None:
    """
    INSERT … SELECT guarded by the active count.  A row that became
    active for the device after the renew step is refreshed instead.
    """
    table = UserSession.__table__
    row = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "device_id": device_id,
        "external_session_id": external_session_id,
        "status": SessionStatus.ACTIVE,
        "last_seen": now,
        "created_at": now,
        **attributes.as_columns(),
    }
    active_count = (
        select(func.count())
        .select_from(table)
        .where(
            table.c.user_id == user_id,
            table.c.status == SessionStatus.ACTIVE,
        )
        .scalar_subquery()
    )
    candidate = select(
        *(literal(value, type_=table.c[name].type) for name, value in row.items())
    ).where(active_count < max_devices)

    insert = dialect_insert(db)
    stmt = insert(table).from_select(list(row), candidate)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.user_id, table.c.device_id],
        index_where=text(ACTIVE_ROW_PREDICATE),
        set_={
            **attributes.as_columns(),
            "last_seen": now,
            "external_session_id": func.coalesce(
                stmt.excluded.external_session_id,
                table.c.external_session_id,
            ),
        },
    ).returning(table.c.id)

    inserted_id = (await db.execute(stmt)).scalar_one_or_none()
    if inserted_id is None:
        return None
    return await _reload_active(user_id, device_id, db)


async def _reload_active(user_id: uuid.UUID, device_id: str, db: AsyncSession) -> UserSession:
    stmt = (
        select(UserSession)
        .where(*_active(user_id), UserSession.device_id == device_id)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one()


# ── Status transitions ───────────────────────────────────────────────

@storage_errors
async def mark_revoked(
    session_id: uuid.UUID,
    reason: str,
    db: AsyncSession,
    revoked_by_device_id: str | None = None,
) -> bool:
    """
    Revoke a single session.  Idempotent: an already revoked row is
    left untouched.  Returns True when a row changed state.
    """
    stmt = (
        update(UserSession)
        .where(
            UserSession.id == session_id,
            UserSession.status == SessionStatus.ACTIVE,
        )
        .values(**Revoked(reason=reason, by_device_id=revoked_by_device_id).as_columns())
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount > 0


@storage_errors
async def mark_revoked_for_device(
    user_id: uuid.UUID,
    device_id: str,
    reason: str,
    db: AsyncSession,
    revoked_by_device_id: str | None = None,
) -> bool:
    """Revoke the device's ACTIVE session, if it has one."""
    stmt = (
        update(UserSession)
        .where(*_active(user_id), UserSession.device_id == device_id)
        .values(**Revoked(reason=reason, by_device_id=revoked_by_device_id).as_columns())
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount > 0


@storage_errors
async def mark_all_revoked(
    user_id: uuid.UUID,
    reason: str,
    db: AsyncSession,
) -> int:
    """
    Revoke every active session for a user.

    Returns the number of sessions affected (0 is not an error).
    Used by "sign out everywhere" and admin force-logout.
    """
    stmt = (
        update(UserSession)
        .where(*_active(user_id))
        .values(**Revoked(reason=reason).as_columns())
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount


@storage_errors
async def expire_inactive(cutoff: datetime, db: AsyncSession) -> int:
    """Revoke every active session not seen since `cutoff`."""
    stmt = (
        update(UserSession)
        .where(
            UserSession.status == SessionStatus.ACTIVE,
            UserSession.last_seen < cutoff,
        )
        .values(**Revoked(reason=RevocationReason.INACTIVITY_EXPIRED.value).as_columns())
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount
