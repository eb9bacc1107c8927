"""
Notification History Service - persists decisions and delivery records.

Handles:
- Appending every produced Decision
- Upserting DeliveryRecords as they complete
- Querying recent deliveries and past notify decisions per approach
- Retention cleanup
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from pymongo.database import Database

from decision.models import Decision

from .models import DeliveryRecord

logger = logging.getLogger(__name__)


class HistoryStore(Protocol):
    def record_decision(self, decision: Decision) -> None:
        ...

    def record_delivery(self, record: DeliveryRecord) -> None:
        ...

    def recent_deliveries(self, since: datetime, limit: int = 50) -> List[dict]:
        ...

    def was_notified(self, target_id: str, approach_event_id: str) -> bool:
        ...

    def cleanup(self, older_than: Optional[datetime] = None) -> int:
        ...


class NotificationHistoryService:
    """MongoDB-backed HistoryStore."""

    RETENTION_HOURS = 24

    def __init__(self, db: Database):
        """
        Initialize history service.

        Args:
            db: MongoDB database instance
        """
        self.db = db

        # Ensure indexes for efficient queries
        self._ensure_indexes()

    def _ensure_indexes(self):
        """Create MongoDB indexes for queries."""
        self.db.decisions.create_index("produced_at")
        self.db.decisions.create_index([("target_id", 1), ("approach_event_id", 1)])

        self.db.delivery_records.create_index("notification_id", unique=True)
        self.db.delivery_records.create_index("created_at")

    def record_decision(self, decision: Decision) -> None:
        self.db.decisions.insert_one(decision.to_mongo_doc())

    def record_delivery(self, record: DeliveryRecord) -> None:
        """Insert or replace the record for its notification id."""
        self.db.delivery_records.update_one(
            {"notification_id": record.notification_id},
            {"$set": record.to_mongo_doc()},
            upsert=True,
        )
        logger.info(f"Recorded delivery {record.notification_id} (completed={record.completed})")

    def recent_deliveries(self, since: datetime, limit: int = 50) -> List[dict]:
        return list(
            self.db.delivery_records.find(
                {"created_at": {"$gte": since}},
                {"_id": 0},
                sort=[("created_at", -1)],
                limit=limit,
            )
        )

    def was_notified(self, target_id: str, approach_event_id: str) -> bool:
        """True if a notify decision was already stored for this approach."""
        doc = self.db.decisions.find_one({
            "target_id": target_id,
            "approach_event_id": approach_event_id,
            "should_notify": True,
        })
        return doc is not None

    def cleanup(self, older_than: Optional[datetime] = None) -> int:
        """
        Delete history older than the retention window.

        Returns:
            Number of documents removed
        """
        cutoff = older_than or datetime.now(timezone.utc) - timedelta(hours=self.RETENTION_HOURS)
        removed = self.db.decisions.delete_many({"produced_at": {"$lt": cutoff}}).deleted_count
        removed += self.db.delivery_records.delete_many({"created_at": {"$lt": cutoff}}).deleted_count
        logger.info(f"Removed {removed} history documents older than {cutoff.isoformat()}")
        return removed
