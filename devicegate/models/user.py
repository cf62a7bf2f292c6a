"""
User model.

A user is the local mirror of one IdP subject (`external_id`, e.g.
``auth0|65f0…``).  The row is created the first time a subject is seen
and refreshed from token claims on every authenticated request; this
subsystem never deletes it.  Profile columns are display-only.
"""

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from devicegate.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "users"

    external_id: Mapped[str] = mapped_column(String(256), unique=True, index=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    picture_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    def __repr__(self) -> str:
        return f"<User {self.external_id}>"
