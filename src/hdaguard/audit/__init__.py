"""
Pass History.

Persistent record of reconciliation passes and device outcomes.
"""

from hdaguard.audit.database import AuditDatabase
from hdaguard.audit.models import Base, OutcomeRecord, PassRecord

__all__ = [
    "AuditDatabase",
    "Base",
    "OutcomeRecord",
    "PassRecord",
]
