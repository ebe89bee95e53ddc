"""Service layer package.

Exports the sync pass and profile audit consumed by the CLI and HTTP layers.
"""

from .sync_service import SyncService, SyncServiceConfig, SyncState
from .audit_service import AuditService

__all__ = ["SyncService", "SyncServiceConfig", "SyncState", "AuditService"]
