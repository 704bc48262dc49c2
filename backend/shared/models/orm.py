"""
SQLAlchemy 2.0 ORM models for the meet reconciler.
Column types stay portable so the same schema runs on Postgres and SQLite.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    SmallInteger,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class MeetORM(Base):
    __tablename__ = "meets"

    meet_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    remote_id: Mapped[Optional[int]] = mapped_column(Integer, unique=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    results: Mapped[list["ResultORM"]] = relationship(back_populates="meet")


class CompetitorORM(Base):
    __tablename__ = "competitors"

    competitor_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    remote_id: Mapped[Optional[int]] = mapped_column(Integer)
    membership_number: Mapped[Optional[int]] = mapped_column(Integer)
    gender: Mapped[Optional[str]] = mapped_column(String(1))

    results: Mapped[list["ResultORM"]] = relationship(back_populates="competitor")


class ResultORM(Base):
    __tablename__ = "results"

    result_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    meet_id: Mapped[int] = mapped_column(Integer, ForeignKey("meets.meet_id"), nullable=False, index=True)
    competitor_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("competitors.competitor_id"))
    competitor_name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    age_category: Mapped[Optional[str]] = mapped_column(String(100))
    weight_class: Mapped[Optional[str]] = mapped_column(String(20))
    body_weight: Mapped[Optional[float]] = mapped_column(Float)
    best_snatch: Mapped[Optional[float]] = mapped_column(Float)
    best_cj: Mapped[Optional[float]] = mapped_column(Float)
    total: Mapped[Optional[float]] = mapped_column(Float)
    gender: Mapped[Optional[str]] = mapped_column(String(1))
    competition_age: Mapped[Optional[int]] = mapped_column(SmallInteger)
    birth_year: Mapped[Optional[int]] = mapped_column(SmallInteger)
    club_name: Mapped[Optional[str]] = mapped_column(String(200))
    region: Mapped[Optional[str]] = mapped_column(String(200))
    resolved_tier: Mapped[Optional[str]] = mapped_column(String(10))
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    meet: Mapped["MeetORM"] = relationship(back_populates="results")
    competitor: Mapped[Optional["CompetitorORM"]] = relationship(back_populates="results")


class MeetCompletionORM(Base):
    """Completion ledger row. One per meet, whole-row upserts only."""
    __tablename__ = "meet_completion_status"
    __table_args__ = (
        CheckConstraint(
            "status IN ('unknown','complete','incomplete','failed')",
            name="chk_completion_status",
        ),
    )

    meet_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    remote_id: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    remote_count: Mapped[Optional[int]] = mapped_column(Integer)
    local_count: Mapped[Optional[int]] = mapped_column(Integer)
    last_checked_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    error_log: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
