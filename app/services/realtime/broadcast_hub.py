"""
Realtime broadcast hub.

Tracks which rooms each live connection has joined and fans events out to
the rooms implied by an audience descriptor. Membership is in-memory only;
clients rejoin after a restart. Delivery is best-effort: a connection that
is not joined at emit time misses the event, and a connection whose send
fails is dropped.

Room names are part of the client contract and must not change:
    attendance-updates, schedule-updates, schedule-branch-{b},
    branch-{b}, role-{r}, role-{r}-branch-{b}, user-{u}
"""

import asyncio
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from app.infrastructure.observability.logging import get_logger
from app.models.domain.audience_domain import (
    BROADCAST_ROLES,
    ROLE_BRANCH_ADMIN,
    AllAudience,
    AudienceDescriptor,
    RolesAudience,
    ScopedAudience,
    canonicalize,
)
from app.services.audience_resolver import mirror_player_roles

logger = get_logger(__name__)

ATTENDANCE_ROOM = "attendance-updates"
SCHEDULE_ROOM = "schedule-updates"

ANNOUNCEMENT_CREATED_EVENT = "announcement-created"
NOTIFICATION_CREATED_EVENT = "notification-created"

# A client that does not accept a frame within this window is dropped
SEND_TIMEOUT_SECONDS = 5.0


def branch_room(branch_id: str) -> str:
    return f"branch-{branch_id}"


def role_room(role: str, branch_id: str | None = None) -> str:
    if branch_id:
        return f"role-{role}-branch-{branch_id}"
    return f"role-{role}"


def user_room(user_id: str) -> str:
    return f"user-{user_id}"


def schedule_branch_room(branch_id: str) -> str:
    return f"schedule-branch-{branch_id}"


def make_envelope(event_type: str, data: Any) -> dict:
    return {
        "type": event_type,
        "data": data,
        "timestamp": datetime.now(UTC).isoformat(),
    }


class RealtimeConnection(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass(slots=True)
class BroadcastResult:
    event: str
    rooms: set[str] = field(default_factory=set)
    delivered: int = 0


class BroadcastHub:
    """In-process room registry and fanout for realtime clients."""

    def __init__(self, send_timeout: float = SEND_TIMEOUT_SECONDS):
        self.send_timeout = send_timeout
        self._connections: dict[str, RealtimeConnection] = {}
        self._memberships: dict[str, set[str]] = {}
        self._rooms: dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def connect(self, connection: RealtimeConnection) -> str:
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = connection
        self._memberships[connection_id] = set()
        logger.info("Realtime client connected", connection_id=connection_id)
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        rooms = self._memberships.pop(connection_id, set())
        for room in rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        if self._connections.pop(connection_id, None) is not None:
            logger.info("Realtime client disconnected", connection_id=connection_id)

    def _add(self, connection_id: str, room: str) -> None:
        if connection_id not in self._connections:
            raise KeyError(f"Unknown connection '{connection_id}'")
        self._memberships[connection_id].add(room)
        self._rooms.setdefault(room, set()).add(connection_id)

    def join(
        self,
        connection_id: str,
        role: str | None = None,
        branch_id: str | None = None,
        user_id: str | None = None,
    ) -> list[str]:
        """
        Subscribe a connection to its global, branch, role and user rooms.

        Returns:
            list[str]: Rooms joined, in join order
        """
        rooms = [ATTENDANCE_ROOM]
        if branch_id:
            rooms.append(branch_room(branch_id))
        if role:
            rooms.append(role_room(role))
        if role and branch_id:
            rooms.append(role_room(role, branch_id))
        if user_id:
            rooms.append(user_room(user_id))

        for room in rooms:
            self._add(connection_id, room)

        logger.info("Realtime client joined rooms", connection_id=connection_id, user_id=user_id, rooms=rooms)
        return rooms

    def join_schedule(self, connection_id: str, branch_id: str | None = None) -> list[str]:
        rooms = [SCHEDULE_ROOM]
        if branch_id:
            rooms.append(schedule_branch_room(branch_id))
        for room in rooms:
            self._add(connection_id, room)
        return rooms

    def rooms_of(self, connection_id: str) -> set[str]:
        return set(self._memberships.get(connection_id, set()))

    def members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, set()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------
    # Audience -> rooms
    # ------------------------------------------------------------------

    @staticmethod
    def rooms_for_audience(audience: AudienceDescriptor, branch_id: str | None = None) -> set[str]:
        """
        Map a descriptor to the rooms that must receive an event.

        `branch_id` scopes role rooms when the event targets a single branch.
        Targeting players always targets parents in the same scope.
        """
        audience = canonicalize(audience)
        rooms: set[str] = set()

        if isinstance(audience, AllAudience):
            for role in BROADCAST_ROLES:
                rooms.add(role_room(role, branch_id))
            return rooms

        if isinstance(audience, RolesAudience):
            for role in mirror_player_roles(audience.roles):
                rooms.add(role_room(role, branch_id))
            return rooms

        if isinstance(audience, ScopedAudience):
            for scoped_branch, scope in audience.branches.items():
                for role in mirror_player_roles(scope.roles):
                    rooms.add(role_room(role, scoped_branch))
                for user_id in scope.users:
                    rooms.add(user_room(user_id))
            for user_id in audience.users:
                rooms.add(user_room(user_id))
            return rooms

        raise TypeError(f"Unsupported audience descriptor: {type(audience).__name__}")

    # ------------------------------------------------------------------
    # Fanout
    # ------------------------------------------------------------------

    async def emit(self, rooms: Iterable[str], event: str, envelope: dict) -> int:
        """
        Send one frame to every connection in any of `rooms`.

        A connection present in several target rooms receives the frame once.
        A send that fails or stalls past `send_timeout` drops that connection;
        the other targets are unaffected.

        Returns:
            int: Connections the frame was delivered to
        """
        targets: set[str] = set()
        for room in rooms:
            targets |= self._rooms.get(room, set())

        if not targets:
            return 0

        frame = {"event": event, **envelope}
        ordered = sorted(targets)
        results = await asyncio.gather(
            *(
                asyncio.wait_for(self._connections[cid].send_json(frame), timeout=self.send_timeout)
                for cid in ordered
            ),
            return_exceptions=True,
        )

        delivered = 0
        for connection_id, result in zip(ordered, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Dropping realtime connection after failed send",
                    connection_id=connection_id,
                    error=str(result) or type(result).__name__,
                )
                self.disconnect(connection_id)
            else:
                delivered += 1
        return delivered

    async def broadcast(
        self,
        event: str,
        payload: Any,
        audience: AudienceDescriptor,
        branch_id: str | None = None,
    ) -> BroadcastResult:
        """Fan an event out to the rooms implied by `audience`."""
        rooms = self.rooms_for_audience(audience, branch_id)
        delivered = await self.emit(rooms, event, make_envelope(event, payload))
        logger.info("Realtime broadcast emitted", event_name=event, rooms=sorted(rooms), delivered=delivered)
        return BroadcastResult(event=event, rooms=rooms, delivered=delivered)

    async def emit_announcement_created(
        self, announcement: dict, audience: AudienceDescriptor
    ) -> BroadcastResult:
        return await self.broadcast(
            ANNOUNCEMENT_CREATED_EVENT,
            announcement,
            audience,
            branch_id=announcement.get("target_branch_id"),
        )

    async def emit_attendance_update(self, event_type: str, data: dict) -> int:
        """Attendance changes go to the global room and the record's branch room."""
        event = f"attendance-{event_type}-updated"
        rooms = [ATTENDANCE_ROOM]
        if data.get("branch_id"):
            rooms.append(branch_room(data["branch_id"]))
        return await self.emit(rooms, event, make_envelope(event_type, data))

    async def emit_schedule_update(self, event_type: str, data: dict) -> int:
        event = f"schedule-{event_type}"
        return await self._emit_schedule_rooms(event, event_type, data)

    async def emit_waitlist_update(self, event_type: str, data: dict) -> int:
        event = f"waitlist-{event_type}"
        return await self._emit_schedule_rooms(event, event_type, data)

    async def _emit_schedule_rooms(self, event: str, event_type: str, data: dict) -> int:
        rooms = [SCHEDULE_ROOM]
        if data.get("branch_id"):
            rooms.append(schedule_branch_room(data["branch_id"]))
        return await self.emit(rooms, event, make_envelope(event_type, data))

    async def emit_notification(
        self, data: dict, roles: Iterable[str], branch_id: str | None = None
    ) -> int:
        """Admin notifications; branch admins get the branch-scoped room."""
        rooms = set()
        for role in roles:
            if role == ROLE_BRANCH_ADMIN and branch_id:
                rooms.add(role_room(role, branch_id))
            else:
                rooms.add(role_room(role))
        return await self.emit(rooms, NOTIFICATION_CREATED_EVENT, make_envelope(NOTIFICATION_CREATED_EVENT, data))


# Singleton instance for application use
broadcast_hub = BroadcastHub()
