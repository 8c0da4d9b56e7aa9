"""
WebSocket endpoint for realtime clients.

Clients send JSON frames {"event": ..., "data": {...}}:

    join-attendance-room  data: {role, branch_id, user_id}
    join-schedule-room    data: {branch_id}

Server events arrive as {"event": ..., "type": ..., "data": ..., "timestamp": ...}.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.infrastructure.observability.logging import get_logger
from app.services.realtime.broadcast_hub import broadcast_hub

router = APIRouter(tags=["realtime"])
logger = get_logger(__name__)

JOIN_ATTENDANCE_EVENT = "join-attendance-room"
JOIN_SCHEDULE_EVENT = "join-schedule-room"


def _opt(data: dict, key: str) -> str | None:
    value = data.get(key)
    return str(value) if value not in (None, "") else None


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    await websocket.accept()
    connection_id = broadcast_hub.connect(websocket)

    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"message": "Frames must be JSON"}})
                continue

            if not isinstance(frame, dict):
                await websocket.send_json({"event": "error", "data": {"message": "Frames must be objects"}})
                continue

            event = frame.get("event")
            data = frame.get("data") or {}
            if not isinstance(data, dict):
                data = {}

            if event == JOIN_ATTENDANCE_EVENT:
                rooms = broadcast_hub.join(
                    connection_id,
                    role=_opt(data, "role"),
                    branch_id=_opt(data, "branch_id"),
                    user_id=_opt(data, "user_id"),
                )
            elif event == JOIN_SCHEDULE_EVENT:
                rooms = broadcast_hub.join_schedule(connection_id, branch_id=_opt(data, "branch_id"))
            else:
                await websocket.send_json({"event": "error", "data": {"message": f"Unknown event '{event}'"}})
                continue

            logger.debug("Realtime client joined rooms", connection_id=connection_id, rooms=rooms)
            await websocket.send_json({"event": "joined", "data": {"rooms": rooms}})

    except WebSocketDisconnect as e:
        logger.debug("Realtime client disconnected", connection_id=connection_id, code=e.code)
    finally:
        broadcast_hub.disconnect(connection_id)
