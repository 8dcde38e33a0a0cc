"""SQLAlchemy ORM models for the URL shortener application.

Data Model Layout
=================
::
    global_counter (singleton row, id = 1)
    ├─ current_counter (BIGINT, next unallocated integer, never decreases)
    ├─ range_size (INTEGER, default allocation chunk)
    └─ last_updated (TIMESTAMPTZ)

    range_allocations
    ├─ instance_id (VARCHAR(100))
    ├─ start_value / end_value (BIGINT, inclusive)
    ├─ allocated_at / exhausted_at (TIMESTAMPTZ)
    └─ status (ACTIVE | EXHAUSTED | EXPIRED)

    urls
    ├─ short_code (VARCHAR(20), unique among active rows)
    ├─ original_url (TEXT)
    ├─ owner_id (VARCHAR(64), NULL for anonymous creators)
    ├─ created_at / expires_at (TIMESTAMPTZ)
    ├─ click_count (INTEGER, eventually consistent)
    └─ is_active (soft delete)

    custom_aliases
    ├─ url_id (FK urls.id)
    ├─ custom_code (VARCHAR(50), unique among active rows)
    ├─ created_at (TIMESTAMPTZ)
    └─ is_active

Key Behaviours
===============
- Generated codes and custom aliases share one lookup namespace; the
  registry checks both tables before inserting into either.
- Uniqueness is enforced by partial indexes on active rows, so a retired
  alias can be claimed again.
- Timestamps are written from Python in UTC.

Classes:
    GlobalCounter:  The allocation source of truth.
    RangeAllocation:  Bookkeeping record of a range handed to one instance.
    ShortURL:  A generated short code and its target.
    CustomAlias:  A user-chosen entry point to an existing ShortURL.
"""

import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from shortener.database import Base
from shortener.enums import RangeStatus

__all__ = ["CustomAlias", "GlobalCounter", "RangeAllocation", "ShortURL", "utcnow"]

GLOBAL_COUNTER_ID = 1


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class GlobalCounter(Base):
    __tablename__ = "global_counter"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=GLOBAL_COUNTER_ID)
    current_counter: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    range_size: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)
    last_updated: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<GlobalCounter(current_counter={self.current_counter}, range_size={self.range_size})>"


class RangeAllocation(Base):
    __tablename__ = "range_allocations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    start_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    allocated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    exhausted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=RangeStatus.ACTIVE, index=True, nullable=False)

    def __repr__(self) -> str:
        return f"<RangeAllocation(instance_id='{self.instance_id}', [{self.start_value}, {self.end_value}], {self.status})>"


class ShortURL(Base):
    __tablename__ = "urls"
    __table_args__ = (
        Index(
            "ix_urls_active_short_code",
            "short_code",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    click_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<ShortURL(id={self.id}, short_code='{self.short_code}', clicks={self.click_count})>"


class CustomAlias(Base):
    __tablename__ = "custom_aliases"
    __table_args__ = (
        Index(
            "ix_custom_aliases_active_code",
            "custom_code",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    url_id: Mapped[int] = mapped_column(ForeignKey("urls.id", ondelete="CASCADE"), index=True, nullable=False)
    custom_code: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<CustomAlias(url_id={self.url_id}, custom_code='{self.custom_code}')>"
