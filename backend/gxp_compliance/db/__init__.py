"""Database package."""

from gxp_compliance.db.models import (
    AuditImmutabilityError,
    AuditLog,
    Base,
    ElectronicSignature,
    SignatureType,
)
from gxp_compliance.db.session import (
    DbSession,
    check_database,
    close_db,
    get_db_session,
    init_db,
)

__all__ = [
    "DbSession",
    "get_db_session",
    "init_db",
    "close_db",
    "check_database",
    "Base",
    "ElectronicSignature",
    "SignatureType",
    "AuditLog",
    "AuditImmutabilityError",
]
