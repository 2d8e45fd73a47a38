"""Read-side CRM tables the reminder scheduler consumes.

The CRM owns these tables; the engine only reads them (local runs and tests
create them through `init_db`).
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from salonping.common.db import Base


class ReminderSetting(Base):
    """One enabled/disabled reminder kind per tenant."""

    __tablename__ = "reminder_settings"
    __table_args__ = (UniqueConstraint("tenant_id", "reminder_kind", name="uq_reminder_setting_kind"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    reminder_kind: Mapped[str] = mapped_column(String)
    offset_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    message_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=2)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantProfile(Base):
    __tablename__ = "tenant_profiles"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    salon_name: Mapped[str] = mapped_column(String, default="")
    timezone: Mapped[str] = mapped_column(String, default="UTC")


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    client_name: Mapped[str] = mapped_column(String)
    client_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    service: Mapped[str] = mapped_column(String, default="")
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    status: Mapped[str] = mapped_column(String, default="Scheduled")
