"""
Pass history models.

SQLAlchemy ORM models for reconciliation passes and device outcomes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class PassRecord(Base):
    """One reconciliation pass, completed or aborted."""

    __tablename__ = "passes"

    id = Column(Integer, primary_key=True)
    started_at = Column(DateTime, default=_utc_now, nullable=False, index=True)
    finished_at = Column(DateTime, nullable=True)
    trigger = Column(String(16), nullable=False)
    forced = Column(Boolean, default=False, nullable=False)
    disabled = Column(Integer, default=0, nullable=False)
    already_compliant = Column(Integer, default=0, nullable=False)
    errored = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)

    outcomes = relationship(
        "OutcomeRecord",
        back_populates="pass_record",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "trigger": self.trigger,
            "forced": self.forced,
            "disabled": self.disabled,
            "already_compliant": self.already_compliant,
            "errored": self.errored,
            "error": self.error,
        }


class OutcomeRecord(Base):
    """Classified result for one in-scope device within a pass."""

    __tablename__ = "outcomes"

    id = Column(Integer, primary_key=True)
    pass_id = Column(
        Integer,
        ForeignKey("passes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    device_id = Column(String(512), nullable=False, index=True)
    display_name = Column(String(512), nullable=True)
    result = Column(String(32), nullable=False)
    message = Column(Text, nullable=True)

    pass_record = relationship("PassRecord", back_populates="outcomes")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "pass_id": self.pass_id,
            "device_id": self.device_id,
            "display_name": self.display_name,
            "result": self.result,
            "message": self.message,
        }
