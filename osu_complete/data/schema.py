"""SQLAlchemy base class and shared column helpers.

Every timestamp in the database is an integer of epoch milliseconds, which
keeps rows directly comparable with the times reported by the osu! API and
lets SQLite order them without conversion.

Example:
    >>> from osu_complete.data.schema import Base, now_ms
    >>> class MyModel(Base):
    ...     __tablename__ = "my_table"
    ...     id: Mapped[int] = mapped_column(primary_key=True)
    ...     time_saved: Mapped[int] = mapped_column(default=now_ms)
"""
from __future__ import annotations

import time
from datetime import datetime

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""

    pass


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def to_ms(value: datetime | str | int | float | None) -> int | None:
    """Convert an API timestamp into epoch milliseconds.

    Accepts datetimes, ISO 8601 strings (with a trailing ``Z``) and numbers
    that are already epoch milliseconds.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return int(value.timestamp() * 1000)
