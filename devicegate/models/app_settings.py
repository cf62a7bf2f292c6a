"""
Runtime-tunable device policy.

Single-row table.  When no row exists the service falls back to the
defaults in `core.config`, so a fresh database behaves like
`max_devices=3, inactivity_days=7`.
"""

from sqlalchemy import CheckConstraint, Integer
from sqlalchemy.orm import Mapped, mapped_column

from devicegate.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class AppSettings(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "app_settings"

    max_devices: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    inactivity_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)

    __table_args__ = (
        CheckConstraint("max_devices >= 0", name="ck_app_settings_max_devices"),
        CheckConstraint("inactivity_days >= 1", name="ck_app_settings_inactivity_days"),
    )

    def __repr__(self) -> str:
        return f"<AppSettings max_devices={self.max_devices} inactivity_days={self.inactivity_days}>"
