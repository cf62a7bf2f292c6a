"""
User service — local mirror of IdP subjects.

`sync_user` is called on every authenticated request that needs a local
user id; it inserts the subject the first time it is seen and refreshes
the profile columns afterwards, in one INSERT … ON CONFLICT statement.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from devicegate.core.database import dialect_insert
from devicegate.core.exceptions import NotFoundError
from devicegate.core.identifiers import validate_external_id
from devicegate.core.security import Principal
from devicegate.models.base import utcnow
from devicegate.models.user import User
from devicegate.services.session_service import storage_errors

logger = logging.getLogger(__name__)


@storage_errors
async def sync_user(principal: Principal, db: AsyncSession) -> User:
    external_id = validate_external_id(principal.subject, "sub")
    now = utcnow()
    profile = {
        "display_name": principal.name,
        "email": principal.email,
        "email_verified": principal.email_verified,
        "picture_url": principal.picture,
        "phone": principal.phone_number,
    }

    insert = dialect_insert(db)
    stmt = insert(User).values(
        id=uuid.uuid4(),
        external_id=external_id,
        created_at=now,
        updated_at=now,
        **profile,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[User.external_id],
        set_={**profile, "updated_at": now},
    ).returning(User)

    result = await db.execute(stmt, execution_options={"populate_existing": True})
    user = result.scalar_one()
    await db.flush()
    logger.debug("Synced user %s (%s)", user.id, external_id)
    return user


@storage_errors
async def get_user_by_id(user_id: uuid.UUID, db: AsyncSession) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User", str(user_id))
    return user


@storage_errors
async def get_user_by_external_id(external_id: str, db: AsyncSession) -> User | None:
    result = await db.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()
