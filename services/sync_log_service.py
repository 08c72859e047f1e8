"""
Sync log: one row per exchange operation in `exchange_sync_log`.

Rows are informational. A failed insert is logged and does not fail
the exchange step that produced it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import structlog

from config import get_supabase_client

logger = structlog.get_logger(__name__)


class SyncDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncLogService:
    """Writes exchange outcomes to the sync log table."""

    def __init__(self, client=None, log=None):
        self.db = client or get_supabase_client()
        self.logger = log or logger
        self.table = "exchange_sync_log"

    def record(
        self,
        sync_type: str,
        direction: SyncDirection,
        status: SyncStatus,
        message: str = "",
        items_processed: int = 0,
        items_failed: int = 0,
        started_at: Optional[datetime] = None
    ) -> Optional[dict]:
        """
        Insert a sync log row.

        Args:
            sync_type: What was synced (catalog, offers, orders, order_updates)
            direction: incoming (ERP -> store) or outgoing (store -> ERP)
            status: success, partial or failed
            message: Free-form summary
            items_processed: Entities handled
            items_failed: Entities that failed
            started_at: Start of the operation (defaults to now)

        Returns:
            Inserted row, or None if the insert failed
        """
        completed_at = datetime.now(timezone.utc)
        row = {
            "sync_type": sync_type,
            "direction": direction.value,
            "status": status.value,
            "message": message,
            "items_processed": items_processed,
            "items_failed": items_failed,
            "started_at": (started_at or completed_at).isoformat(),
            "completed_at": completed_at.isoformat(),
        }

        try:
            result = self.db.table(self.table).insert(row).execute()
        except Exception as e:
            self.logger.error(
                "sync_log_write_failed",
                sync_type=sync_type,
                error=str(e)
            )
            return None

        self.logger.debug("sync_logged", sync_type=sync_type, status=status.value)
        return result.data[0] if result.data else None


# Singleton instance
_sync_log_service: Optional[SyncLogService] = None


def get_sync_log_service() -> SyncLogService:
    """Get or create SyncLogService instance."""
    global _sync_log_service
    if _sync_log_service is None:
        _sync_log_service = SyncLogService()
    return _sync_log_service
