"""Durable inbound webhook queue with retry and exponential backoff.

Webhooks are persisted untouched on receipt and parsed later by a worker,
so a slow or failing downstream never costs the marketplace a delivery.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from deliverysync.db.base import utcnow
from deliverysync.models.delivery import DeliveryPlatform, WebhookQueueEntry
from deliverysync.services.delivery.exceptions import WebhookRejected

logger = logging.getLogger(__name__)

QueueProcessor = Callable[[WebhookQueueEntry], Awaitable[Any]]


class WebhookQueueService:
    """Queue of raw webhook deliveries, processed with retries."""

    def __init__(
        self,
        db: Session,
        max_retries: int = 5,
        retry_base_seconds: int = 60,
        retry_max_seconds: int = 3600,
        lease_seconds: int = 300,
    ):
        self.db = db
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.lease_seconds = lease_seconds

    def enqueue(
        self,
        platform: DeliveryPlatform,
        organization_id: Optional[str],
        headers: Mapping[str, str],
        raw_payload: str,
    ) -> WebhookQueueEntry:
        """Persist a webhook exactly as received, due immediately."""
        entry = WebhookQueueEntry(
            platform=platform,
            organization_id=organization_id,
            headers={k.lower(): v for k, v in headers.items()},
            raw_payload=raw_payload,
            max_retries=self.max_retries,
            next_attempt_at=utcnow(),
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(entry)
        logger.info(f"Queued {platform.value} webhook {entry.id} for org {organization_id}")
        return entry

    def retry_delay(self, retry_count: int) -> timedelta:
        """Delay before the next attempt once ``retry_count`` attempts have failed."""
        seconds = self.retry_base_seconds * 2 ** max(retry_count - 1, 0)
        return timedelta(seconds=min(seconds, self.retry_max_seconds))

    def _due_filter(self, now: datetime):
        return (
            WebhookQueueEntry.processed == False,  # noqa: E712
            WebhookQueueEntry.retry_count < WebhookQueueEntry.max_retries,
            WebhookQueueEntry.next_attempt_at <= now,
        )

    def _claim(self, entry_id: int, now: datetime) -> bool:
        """Lease an entry by pushing its next attempt past the processing window."""
        claimed = (
            self.db.query(WebhookQueueEntry)
            .filter(WebhookQueueEntry.id == entry_id, *self._due_filter(now))
            .update(
                {WebhookQueueEntry.next_attempt_at: now + timedelta(seconds=self.lease_seconds)},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return claimed == 1

    async def process_due(
        self,
        processor: QueueProcessor,
        now: Optional[datetime] = None,
        limit: int = 50,
    ) -> Dict[str, int]:
        """Run ``processor`` over due entries.

        Processor failures are recorded on the entry and never propagate.
        """
        now = now or utcnow()
        due_ids = [
            row.id
            for row in self.db.query(WebhookQueueEntry.id)
            .filter(*self._due_filter(now))
            .order_by(WebhookQueueEntry.next_attempt_at, WebhookQueueEntry.id)
            .limit(limit)
            .all()
        ]

        stats = {"processed": 0, "failed": 0, "exhausted": 0, "total": 0}
        for entry_id in due_ids:
            if not self._claim(entry_id, now):
                continue
            entry = self.db.get(WebhookQueueEntry, entry_id)
            stats["total"] += 1

            try:
                await processor(entry)
            except WebhookRejected as e:
                self.db.rollback()
                entry.retry_count = entry.max_retries
                entry.error_message = f"Rejected: {e}"
                self.db.commit()
                stats["exhausted"] += 1
                logger.warning(f"Webhook {entry_id} ({entry.platform.value}) rejected: {e}")
            except Exception as e:
                self.db.rollback()
                entry.retry_count += 1
                entry.error_message = f"{type(e).__name__}: {e}"
                if entry.retry_count >= entry.max_retries:
                    stats["exhausted"] += 1
                    logger.error(
                        f"Webhook {entry_id} ({entry.platform.value}) exhausted after "
                        f"{entry.retry_count} attempts: {e}"
                    )
                else:
                    entry.next_attempt_at = now + self.retry_delay(entry.retry_count)
                    stats["failed"] += 1
                    logger.warning(
                        f"Webhook {entry_id} failed, retry {entry.retry_count}/{entry.max_retries} "
                        f"at {entry.next_attempt_at.isoformat()}: {e}"
                    )
                self.db.commit()
            else:
                entry.processed = True
                entry.processed_at = now
                entry.error_message = None
                self.db.commit()
                stats["processed"] += 1

        if stats["total"]:
            logger.info(f"Webhook queue run: {stats}")
        return stats

    def list_exhausted(self, platform: Optional[DeliveryPlatform] = None) -> List[WebhookQueueEntry]:
        query = self.db.query(WebhookQueueEntry).filter(
            WebhookQueueEntry.processed == False,  # noqa: E712
            WebhookQueueEntry.retry_count >= WebhookQueueEntry.max_retries,
        )
        if platform:
            query = query.filter(WebhookQueueEntry.platform == platform)
        return query.order_by(WebhookQueueEntry.created_at.desc()).all()

    def requeue(self, entry_id: int) -> Optional[WebhookQueueEntry]:
        """Give an unprocessed entry a fresh set of attempts."""
        entry = self.db.get(WebhookQueueEntry, entry_id)
        if entry is None or entry.processed:
            return None
        entry.retry_count = 0
        entry.error_message = None
        entry.next_attempt_at = utcnow()
        self.db.commit()
        self.db.refresh(entry)
        logger.info(f"Requeued webhook {entry_id}")
        return entry

    def purge_processed(self, days_to_keep: int = 7) -> int:
        cutoff = utcnow() - timedelta(days=days_to_keep)
        deleted = (
            self.db.query(WebhookQueueEntry)
            .filter(
                WebhookQueueEntry.processed == True,  # noqa: E712
                WebhookQueueEntry.processed_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info(f"Purged {deleted} processed webhooks older than {days_to_keep} days")
        return deleted

    def get_stats(self) -> Dict[str, int]:
        base = self.db.query(WebhookQueueEntry)
        return {
            "pending": base.filter(
                WebhookQueueEntry.processed == False,  # noqa: E712
                WebhookQueueEntry.retry_count < WebhookQueueEntry.max_retries,
            ).count(),
            "processed": base.filter(WebhookQueueEntry.processed == True).count(),  # noqa: E712
            "exhausted": base.filter(
                WebhookQueueEntry.processed == False,  # noqa: E712
                WebhookQueueEntry.retry_count >= WebhookQueueEntry.max_retries,
            ).count(),
        }
