"""
Database Package for the KRG e-Visit permit system

This package provides:
- SQLAlchemy ORM models for applications, watchlist, checkpoint and audit logs
- Session provider and transaction runner
- Repository pattern for data access
- Services for the application lifecycle, risk screening, watchlist
  curation and checkpoint verification (import them from their modules)
"""

from evisit.database.models import (
    Base,
    Application,
    ApplicationStatus,
    AuditAction,
    AuditLog,
    CheckpointAction,
    EntryExitLog,
    PriorityLevel,
    ReferenceSequence,
    RiskSeverity,
    UserRole,
    VisitorLocation,
    VisitPurpose,
    WatchlistEntry,
    WatchlistFlagType,
    TERMINAL_STATUSES,
)
from evisit.database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    get_db_provider,
    init_db,
    close_db,
    create_test_provider,
)
from evisit.database.repositories import (
    RepositoryError,
    DuplicateEntityError,
    ApplicationRepository,
    WatchlistRepository,
    EntryExitLogRepository,
    AuditRepository,
    ReferenceSequenceRepository,
)

__all__ = [
    # Models
    "Base",
    "Application",
    "ApplicationStatus",
    "AuditAction",
    "AuditLog",
    "CheckpointAction",
    "EntryExitLog",
    "PriorityLevel",
    "ReferenceSequence",
    "RiskSeverity",
    "UserRole",
    "VisitorLocation",
    "VisitPurpose",
    "WatchlistEntry",
    "WatchlistFlagType",
    "TERMINAL_STATUSES",
    # Connection
    "DatabaseSessionProvider",
    "DatabaseSettings",
    "get_db_provider",
    "init_db",
    "close_db",
    "create_test_provider",
    # Repositories
    "RepositoryError",
    "DuplicateEntityError",
    "ApplicationRepository",
    "WatchlistRepository",
    "EntryExitLogRepository",
    "AuditRepository",
    "ReferenceSequenceRepository",
]
