"""
Postgres repository for trigger rules and the records a fire produces.

The scheduler is the only writer of last_fired_at / last_fired_count.
"""

import json
from datetime import datetime
from typing import Any

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.audience_domain import AudienceDescriptor
from app.models.domain.delivery_domain import BatchResult
from app.models.domain.trigger_domain import TriggerRule

logger = get_logger(__name__)

RULE_COLUMNS = """
    id, title, kind, schedule_mode, send_time, message, timezone, audience,
    offset_days, start_date, end_date, send_days, specific_date, channels,
    enabled, last_fired_at, last_fired_count, created_by, announcement_type
"""


class TriggerRuleRepository:
    """Persistence helpers for trigger_rules and generated records."""

    @staticmethod
    @with_db_retry(max_retries=2)
    async def list_enabled(default_timezone: str) -> list[TriggerRule]:
        """
        Load every enabled rule.

        Rows that fail to parse are logged and skipped so one malformed rule
        cannot block the others.
        """
        query = f"""
            SELECT {RULE_COLUMNS}
            FROM trigger_rules
            WHERE enabled = TRUE
            ORDER BY created_at, id
        """
        rows = await fetch_all(query)

        rules: list[TriggerRule] = []
        for row in rows:
            try:
                rules.append(TriggerRule.from_row(row, default_timezone))
            except (KeyError, ValueError, TypeError) as e:
                logger.error(
                    "Skipping malformed trigger rule",
                    rule_id=str(row.get("id")),
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return rules

    @staticmethod
    async def mark_checked(rule_id: str, checked_at: datetime) -> None:
        """Record that the rule was evaluated today with nothing to send."""
        query = """
            UPDATE trigger_rules
            SET last_fired_at = %s, updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (checked_at, rule_id))

    @staticmethod
    async def record_fire(rule_id: str, fired_at: datetime, recipient_count: int) -> None:
        """Set last_fired_at and add to last_fired_count in one statement."""
        query = """
            UPDATE trigger_rules
            SET last_fired_at = %s,
                last_fired_count = COALESCE(last_fired_count, 0) + %s,
                updated_at = NOW()
            WHERE id = %s
        """
        affected = await execute_query(query, (fired_at, recipient_count, rule_id))
        if affected == 0:
            raise DatabaseError(
                f"Trigger rule {rule_id} not found while recording fire",
                operation="record_fire",
                recoverable=False,
            )

    @staticmethod
    async def create_announcement(
        *,
        title: str,
        content: str,
        announcement_type: str,
        author_id: str | None,
        audience: AudienceDescriptor,
        target_branch_id: str | None = None,
    ) -> dict[str, Any]:
        """Insert a published announcement and return it as the broadcast payload."""
        query = """
            INSERT INTO announcements (
                title, content, type, priority, author_id, target_audience,
                target_branch_id, is_published, published_at, send_notification
            )
            VALUES (%s, %s, %s, 'medium', %s, %s::jsonb, %s, TRUE, NOW(), TRUE)
            RETURNING id, title, content, type, priority, author_id,
                      target_audience, target_branch_id, published_at, created_at
        """
        row = await fetch_one(
            query,
            (
                title,
                content,
                announcement_type,
                author_id,
                json.dumps(audience.to_json()),
                target_branch_id,
            ),
        )
        if row is None:
            raise DatabaseError("Announcement insert returned no row", operation="create_announcement")

        announcement = dict(row)
        announcement["id"] = str(announcement["id"])
        for key in ("published_at", "created_at"):
            if isinstance(announcement.get(key), datetime):
                announcement[key] = announcement[key].isoformat()
        return announcement

    @staticmethod
    async def log_sms(
        *,
        sender_id: str | None,
        recipients: list[dict[str, Any]],
        message: str,
        template_id: str,
        result: BatchResult,
        branch_id: str | None = None,
    ) -> None:
        """Store one sms_messages row for a fire covering every message it sent."""
        status = "sent" if result.successful > 0 else "failed"
        query = """
            INSERT INTO sms_messages (
                sender_id, recipient_type, recipients, message, template_id,
                branch_id, status, total_recipients, successful_count,
                failed_count, cost, sent_at, error_message
            )
            VALUES (%s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s, %s, %s, NOW(), %s)
        """
        recipient_type = "individual" if len(recipients) == 1 else "group"
        error_message = "; ".join(e.get("error", "") for e in result.errors)[:1000] or None
        await execute_query(
            query,
            (
                sender_id,
                recipient_type,
                json.dumps(recipients),
                message,
                template_id,
                branch_id,
                status,
                len(recipients),
                result.successful,
                result.failed,
                round(result.total_cost, 4),
                error_message,
            ),
        )


# Singleton instance for application use
trigger_rule_repository = TriggerRuleRepository()
