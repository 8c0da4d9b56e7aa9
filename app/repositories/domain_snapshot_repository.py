"""
Read-only queries over academy data used by the trigger scheduler.

Everything here returns immutable records; the engine never writes users,
players, subscriptions or programs.
"""

import json
from datetime import date
from typing import Any

from app.db.helpers import fetch_all, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.snapshot_domain import (
    ContactRecord,
    DomainSnapshot,
    PlayerRecord,
    SessionRecord,
    SubscriptionRecord,
    UserRecord,
)
from app.models.domain.trigger_domain import WEEKDAYS

logger = get_logger(__name__)


def _opt_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def _contact(row: dict) -> ContactRecord | None:
    if not row.get("parent_id"):
        return None
    name = f"{row.get('parent_first_name') or ''} {row.get('parent_last_name') or ''}".strip()
    return ContactRecord(id=str(row["parent_id"]), name=name, phone=row.get("parent_phone"))


def _player_name(row: dict) -> str:
    return f"{row.get('player_first_name') or ''} {row.get('player_last_name') or ''}".strip()


def _schedule_entries(raw: Any) -> list[dict]:
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    return [entry for entry in raw if isinstance(entry, dict)] if isinstance(raw, list) else []


class DomainSnapshotRepository:
    """Snapshot and condition queries."""

    @staticmethod
    @with_db_retry(max_retries=2)
    async def load_audience_snapshot() -> DomainSnapshot:
        """Active users and players, as the audience resolver sees them."""
        # Self-registered players log in with a parent-role account; expose them as players
        users_query = """
            SELECT id,
                   CASE WHEN account_type = 'self_player' THEN 'player' ELSE role::text END AS role,
                   branch_id, phone, first_name, last_name, is_active
            FROM users
            WHERE is_active = TRUE
            ORDER BY created_at, id
        """
        players_query = """
            SELECT id, branch_id, parent_id, self_user_id, emergency_contact_phone,
                   first_name, last_name, status
            FROM players
            WHERE status = 'active'
            ORDER BY created_at, id
        """
        user_rows = await fetch_all(users_query)
        player_rows = await fetch_all(players_query)

        users = [
            UserRecord(
                id=str(row["id"]),
                role=row["role"],
                branch_id=_opt_str(row.get("branch_id")),
                phone=row.get("phone"),
                first_name=row.get("first_name") or "",
                last_name=row.get("last_name") or "",
                is_active=bool(row.get("is_active", True)),
            )
            for row in user_rows
        ]
        players = [
            PlayerRecord(
                id=str(row["id"]),
                branch_id=_opt_str(row.get("branch_id")),
                parent_id=_opt_str(row.get("parent_id")),
                self_user_id=_opt_str(row.get("self_user_id")),
                emergency_contact_phone=row.get("emergency_contact_phone"),
                first_name=row.get("first_name") or "",
                last_name=row.get("last_name") or "",
                status=row.get("status") or "active",
            )
            for row in player_rows
        ]

        logger.debug("Audience snapshot loaded", users=len(users), players=len(players))
        return DomainSnapshot(users=users, players=players)

    @staticmethod
    async def subscriptions_expiring_on(target_date: date) -> list[SubscriptionRecord]:
        """Active subscriptions whose end date is exactly `target_date`."""
        query = """
            SELECT s.id, s.end_date, s.total_amount,
                   p.first_name AS player_first_name, p.last_name AS player_last_name,
                   p.branch_id,
                   pr.name AS program_name,
                   u.id AS parent_id, u.first_name AS parent_first_name,
                   u.last_name AS parent_last_name, u.phone AS parent_phone
            FROM subscriptions s
            JOIN players p ON p.id = s.player_id
            JOIN programs pr ON pr.id = s.program_id
            LEFT JOIN users u ON u.id = p.parent_id
            WHERE s.status = 'active' AND s.end_date = %s
            ORDER BY s.end_date, s.id
        """
        rows = await fetch_all(query, (target_date,))
        return [DomainSnapshotRepository._subscription(row) for row in rows]

    @staticmethod
    async def overdue_subscriptions(cutoff: date) -> list[SubscriptionRecord]:
        """Expired subscriptions of active players that ended on or before `cutoff`."""
        query = """
            SELECT s.id, s.end_date, s.total_amount,
                   p.first_name AS player_first_name, p.last_name AS player_last_name,
                   p.branch_id,
                   pr.name AS program_name,
                   u.id AS parent_id, u.first_name AS parent_first_name,
                   u.last_name AS parent_last_name, u.phone AS parent_phone
            FROM subscriptions s
            JOIN players p ON p.id = s.player_id
            JOIN programs pr ON pr.id = s.program_id
            LEFT JOIN users u ON u.id = p.parent_id
            WHERE s.status = 'expired' AND s.end_date <= %s AND p.status = 'active'
            ORDER BY s.end_date, s.id
        """
        rows = await fetch_all(query, (cutoff,))
        return [DomainSnapshotRepository._subscription(row) for row in rows]

    @staticmethod
    async def sessions_on(session_date: date) -> list[SessionRecord]:
        """Players enrolled in active programs that train on `session_date`'s weekday."""
        weekday = WEEKDAYS[session_date.weekday()]
        query = """
            SELECT pr.name AS program_name, pr.schedule,
                   p.first_name AS player_first_name, p.last_name AS player_last_name,
                   p.branch_id,
                   u.id AS parent_id, u.first_name AS parent_first_name,
                   u.last_name AS parent_last_name, u.phone AS parent_phone
            FROM programs pr
            JOIN players p ON p.program_id = pr.id AND p.status = 'active'
            LEFT JOIN users u ON u.id = p.parent_id
            WHERE pr.is_active = TRUE
            ORDER BY pr.name, p.id
        """
        rows = await fetch_all(query)

        sessions: list[SessionRecord] = []
        for row in rows:
            for entry in _schedule_entries(row.get("schedule")):
                if str(entry.get("day", "")).strip().lower() != weekday:
                    continue
                sessions.append(
                    SessionRecord(
                        player_name=_player_name(row),
                        program_name=row.get("program_name") or "",
                        start_time=entry.get("start_time"),
                        parent=_contact(row),
                        branch_id=_opt_str(row.get("branch_id")),
                    )
                )
        return sessions

    @staticmethod
    def _subscription(row: dict) -> SubscriptionRecord:
        return SubscriptionRecord(
            id=str(row["id"]),
            player_name=_player_name(row),
            program_name=row.get("program_name") or "",
            end_date=row["end_date"],
            parent=_contact(row),
            amount=float(row.get("total_amount") or 0),
            branch_id=_opt_str(row.get("branch_id")),
        )


# Singleton instance for application use
domain_snapshot_repository = DomainSnapshotRepository()
