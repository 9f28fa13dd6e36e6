"""
Per-generation token usage log.

Records every metered generation attempt, whether or not the user ends up
saving the result, so usage can be audited against the ledger.

The log is advisory: storage failures are logged and swallowed, and never
block the generation or the quota decrement.
"""

import logging
import sqlite3

from subledger.models.usage import (
    GenerationStatus,
    TokenUsageAnalytics,
    TokenUsageCreate,
    TokenUsageRecord,
)
from subledger.storage.database import SubscriberDatabase

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


class UsageTracker:
    """
    Track token usage per generation.

    Responsibilities:
    - Record generation attempts (success, failure, partial)
    - Mark the record whose output was saved
    - Aggregate lifetime totals and list history
    """

    def __init__(self, db: SubscriberDatabase):
        self.db = db

    async def track_generation(self, usage: TokenUsageCreate) -> TokenUsageRecord | None:
        """
        Record a generation attempt.

        Returns:
            Stored record, or None if it could not be written
        """
        try:
            record = await self.db.insert_token_usage(usage)
        except sqlite3.Error as e:
            logger.error(
                "Failed to record token usage",
                extra={"subscriber_id": usage.subscriber_id, "video_id": usage.video_id, "error": str(e)},
            )
            return None

        if usage.status is not GenerationStatus.SUCCESS:
            logger.warning(
                "Generation recorded with non-success status",
                extra={
                    "subscriber_id": usage.subscriber_id,
                    "status": usage.status.value,
                    "error_message": usage.error_message,
                },
            )
        return record

    async def mark_as_saved(self, subscriber_id: str, video_id: str, summary_id: str) -> bool:
        """
        Flag the most recent unsaved record for ``video_id`` as saved.

        Returns:
            True if a record was updated
        """
        try:
            usage_id = await self.db.mark_latest_usage_saved(subscriber_id, video_id, summary_id)
        except sqlite3.Error as e:
            logger.error(
                "Failed to mark token usage as saved",
                extra={"subscriber_id": subscriber_id, "video_id": video_id, "error": str(e)},
            )
            return False

        if usage_id is None:
            logger.info(
                "No unsaved usage record to mark",
                extra={"subscriber_id": subscriber_id, "video_id": video_id},
            )
            return False
        return True

    async def get_analytics(self, subscriber_id: str) -> TokenUsageAnalytics:
        try:
            return await self.db.token_usage_totals(subscriber_id)
        except sqlite3.Error as e:
            logger.error(
                "Failed to load usage analytics",
                extra={"subscriber_id": subscriber_id, "error": str(e)},
            )
            return TokenUsageAnalytics()

    async def get_history(
        self, subscriber_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[TokenUsageRecord]:
        """Most recent usage records, newest first."""
        try:
            return await self.db.list_token_usage(subscriber_id, limit=limit)
        except sqlite3.Error as e:
            logger.error(
                "Failed to load usage history",
                extra={"subscriber_id": subscriber_id, "error": str(e)},
            )
            return []

    async def get_video_usage(self, subscriber_id: str, video_id: str) -> list[TokenUsageRecord]:
        """All usage records for one video, newest first."""
        try:
            return await self.db.list_token_usage(subscriber_id, video_id=video_id)
        except sqlite3.Error as e:
            logger.error(
                "Failed to load video usage",
                extra={"subscriber_id": subscriber_id, "video_id": video_id, "error": str(e)},
            )
            return []
