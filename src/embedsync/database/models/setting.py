"""Queue setting model for embedsync.

Key/value rows holding the runtime tunables read by the settings provider.
Values are stored as text and validated on load.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from embedsync.database.models.base import Base, utcnow


class QueueSetting(Base):
    """A single runtime tunable.

    Attributes:
        key: Setting name (e.g. ``max_concurrent_jobs``).
        value: Raw text value.
        updated_at: Last modification timestamp.
    """

    __tablename__ = "queue_settings"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )
