"""
Pass History Database.

Stores reconciliation passes and per-device outcomes for status
queries and troubleshooting.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generator

from sqlalchemy import create_engine, event, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from hdaguard.audit.models import Base, OutcomeRecord, PassRecord

if TYPE_CHECKING:
    from hdaguard.core.reconciler import PassSummary


logger = logging.getLogger(__name__)


# Enable SQLite foreign keys
@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable foreign key support for SQLite."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class AuditDatabase:
    """
    High-level interface for the pass history.

    Written by the reconciler after every pass, read by operator commands.
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
    ) -> None:
        """
        Initialize the history database.

        Args:
            db_path: Path to SQLite database file
            wal_mode: Enable WAL mode for concurrent readers
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

        Base.metadata.create_all(self.engine)

        if wal_mode:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.commit()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Get a database session context manager.

        Yields:
            SQLAlchemy Session object
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Writes
    # =========================================================================

    def record_pass(self, summary: PassSummary) -> PassRecord:
        """
        Store a pass and its outcomes.

        Args:
            summary: Completed or aborted pass summary

        Returns:
            Created PassRecord
        """
        with self.session() as session:
            record = PassRecord(
                started_at=summary.started_at,
                finished_at=summary.finished_at,
                trigger=summary.trigger.value,
                forced=summary.forced,
                disabled=summary.disabled,
                already_compliant=summary.already_compliant,
                errored=summary.errored,
                error=summary.error,
            )
            for outcome in summary.outcomes:
                record.outcomes.append(
                    OutcomeRecord(
                        device_id=outcome.device.identifier,
                        display_name=outcome.device.display_name,
                        result=outcome.outcome.value,
                        message=outcome.message or None,
                    )
                )
            session.add(record)
            session.commit()

            logger.debug(
                "Recorded pass %d (%s): %d outcomes",
                record.id, record.trigger, len(summary.outcomes),
            )
            session.expunge(record)
            return record

    def prune(self, older_than_days: int) -> int:
        """
        Delete passes older than the retention window.

        Args:
            older_than_days: Retention window in days

        Returns:
            Number of passes deleted
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        with self.session() as session:
            old = session.query(PassRecord).filter(PassRecord.started_at < cutoff).all()
            for record in old:
                session.delete(record)
            count = len(old)

        if count:
            logger.info("Pruned %d passes older than %d days", count, older_than_days)
        return count

    # =========================================================================
    # Queries
    # =========================================================================

    def get_recent_passes(self, limit: int = 20) -> list[PassRecord]:
        """Get the most recent passes, newest first."""
        with self.session() as session:
            records = (
                session.query(PassRecord)
                .order_by(PassRecord.started_at.desc(), PassRecord.id.desc())
                .limit(limit)
                .all()
            )
            for r in records:
                session.expunge(r)
            return records

    def get_last_pass(self) -> PassRecord | None:
        """Get the most recent pass."""
        records = self.get_recent_passes(limit=1)
        return records[0] if records else None

    def get_outcomes(
        self,
        pass_id: int | None = None,
        device_id: str | None = None,
        limit: int | None = 100,
    ) -> list[OutcomeRecord]:
        """
        Query device outcomes.

        Args:
            pass_id: Filter by pass
            device_id: Filter by device identifier
            limit: Maximum results

        Returns:
            List of outcomes, newest first
        """
        with self.session() as session:
            query = session.query(OutcomeRecord)
            if pass_id is not None:
                query = query.filter(OutcomeRecord.pass_id == pass_id)
            if device_id:
                query = query.filter(OutcomeRecord.device_id == device_id)

            query = query.order_by(OutcomeRecord.id.desc())
            if limit:
                query = query.limit(limit)

            outcomes = query.all()
            for o in outcomes:
                session.expunge(o)
            return outcomes

    def get_statistics(self) -> dict[str, Any]:
        """
        Get history statistics.

        Returns:
            Dictionary with statistics
        """
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        with self.session() as session:
            total_passes = session.query(func.count(PassRecord.id)).scalar()
            aborted = session.query(func.count(PassRecord.id)).filter(
                PassRecord.error.isnot(None)
            ).scalar()
            total_disabled = session.query(func.sum(PassRecord.disabled)).scalar()
            total_errored = session.query(func.sum(PassRecord.errored)).scalar()
            passes_24h = session.query(func.count(PassRecord.id)).filter(
                PassRecord.started_at >= since
            ).scalar()
            disabled_24h = session.query(func.sum(PassRecord.disabled)).filter(
                PassRecord.started_at >= since
            ).scalar()

            return {
                "total_passes": total_passes,
                "aborted_passes": aborted,
                "devices_disabled": total_disabled or 0,
                "device_errors": total_errored or 0,
                "passes_last_24h": passes_24h,
                "disabled_last_24h": disabled_24h or 0,
            }

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
