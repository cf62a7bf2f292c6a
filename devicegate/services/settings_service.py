"""
Settings service — runtime device policy.

Reads the single `app_settings` row on every call; administrators can
change the limit while the service is running, so nothing is cached.
Falls back to the configured defaults when the row does not exist.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from devicegate.core.config import settings
from devicegate.core.exceptions import InputValidationError
from devicegate.models.app_settings import AppSettings
from devicegate.services.session_service import storage_errors

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DevicePolicy:
    max_devices: int
    inactivity_days: int
    is_default: bool = False

    @property
    def inactivity_window(self) -> timedelta:
        return timedelta(days=self.inactivity_days)


def default_policy() -> DevicePolicy:
    return DevicePolicy(
        max_devices=settings.DEFAULT_MAX_DEVICES,
        inactivity_days=settings.DEFAULT_INACTIVITY_DAYS,
        is_default=True,
    )


@storage_errors
async def _load_row(db: AsyncSession) -> AppSettings | None:
    stmt = select(AppSettings).order_by(AppSettings.created_at).limit(1)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_device_policy(db: AsyncSession) -> DevicePolicy:
    row = await _load_row(db)
    if row is None:
        logger.debug("No app settings row, using defaults")
        return default_policy()
    return DevicePolicy(max_devices=row.max_devices, inactivity_days=row.inactivity_days)


async def get_max_devices(db: AsyncSession) -> int:
    return (await get_device_policy(db)).max_devices


async def get_inactivity_window(db: AsyncSession) -> timedelta:
    return (await get_device_policy(db)).inactivity_window


async def update_device_policy(
    db: AsyncSession,
    max_devices: int | None = None,
    inactivity_days: int | None = None,
) -> DevicePolicy:
    """Admin action: create or update the settings row."""
    if max_devices is not None and max_devices < 0:
        raise InputValidationError("max_devices must be >= 0")
    if inactivity_days is not None and inactivity_days < 1:
        raise InputValidationError("inactivity_days must be >= 1")

    row = await _load_row(db)
    if row is None:
        defaults = default_policy()
        row = AppSettings(
            max_devices=defaults.max_devices,
            inactivity_days=defaults.inactivity_days,
        )
        db.add(row)

    if max_devices is not None:
        row.max_devices = max_devices
    if inactivity_days is not None:
        row.inactivity_days = inactivity_days
    await db.flush()

    logger.info(
        "Device policy updated: max_devices=%s inactivity_days=%s",
        row.max_devices,
        row.inactivity_days,
    )
    return DevicePolicy(max_devices=row.max_devices, inactivity_days=row.inactivity_days)
