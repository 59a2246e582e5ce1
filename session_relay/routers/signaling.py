import asyncio
import logging
from typing import Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadError

from session_relay import errors
from session_relay.models import JoinRoom, LeaveRoom, ParticipantInfo, parse_event

logger = logging.getLogger(__name__)

router = APIRouter()


def error_message(code: str, message: str, event: Optional[str] = None) -> dict:
    return {"type": "error", "code": code, "message": message, "event": event}


class ConnectionManager:
    """Live websocket registry, doubling as the relay's transport.

    Each client gets an outbox drained by its own writer task, so pushing a
    message never waits on the network.
    """

    def __init__(self):
        self.active_connections: Dict[str, Dict[str, asyncio.Queue]] = {}

    async def connect(self, websocket: WebSocket, room: str, client_id: str) -> asyncio.Queue:
        await websocket.accept()
        outbox: asyncio.Queue = asyncio.Queue()
        self.active_connections.setdefault(room, {})[client_id] = outbox
        logger.info(f"✅ Client {client_id} connected to room {room}")
        return outbox

    def disconnect(self, room: str, client_id: str):
        if room in self.active_connections:
            outbox = self.active_connections[room].pop(client_id, None)
            if outbox is not None:
                outbox.put_nowait(None)
                logger.info(f"❌ Client {client_id} left room {room}")
            if not self.active_connections[room]:
                del self.active_connections[room]

    def is_reachable(self, room: str, client_id: str) -> bool:
        return client_id in self.active_connections.get(room, {})

    def push(self, room: str, client_id: str, message: dict) -> None:
        outbox = self.active_connections.get(room, {}).get(client_id)
        if outbox is None:
            raise errors.TransientDeliveryFailure(room, client_id)
        outbox.put_nowait(message)

    def get_room_clients(self, room: str) -> list:
        return list(self.active_connections.get(room, {}))

    async def pump(self, websocket: WebSocket, outbox: asyncio.Queue, client_id: str):
        while True:
            message = await outbox.get()
            if message is None:
                return
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.error(f"❌ Error sending to client {client_id}: {e}")
                return


@router.websocket("/ws/{room}/{client_id}")
async def websocket_endpoint(websocket: WebSocket, room: str, client_id: str):
    relay = websocket.app.state.relay
    manager: ConnectionManager = websocket.app.state.connections

    if manager.is_reachable(room, client_id):
        await websocket.accept()
        await websocket.send_json(error_message("DUPLICATE_PARTICIPANT", f"{client_id} is already connected", "join-room"))
        await websocket.close(code=1008)
        return

    outbox = await manager.connect(websocket, room, client_id)
    writer = asyncio.create_task(manager.pump(websocket, outbox, client_id))

    try:
        join = JoinRoom(room_id=room, participant=ParticipantInfo(id=client_id, display_data=dict(websocket.query_params)))
        try:
            relay.handle(join, sender_id=client_id)
        except errors.CoordinationError as e:
            logger.warning(f"⚠️ Join rejected for {client_id} in room {room}: {e.code}")
            manager.push(room, client_id, error_message(e.code, e.message, "join-room"))
            manager.disconnect(room, client_id)
            await writer
            await websocket.close(code=1008)
            return

        while True:
            data = await websocket.receive_json()
            message_type = data.get("type") if isinstance(data, dict) else None

            logger.debug(f"📨 Received {message_type} from {client_id} in room {room}")

            try:
                if message_type is None:
                    raise errors.ValidationError("Messages must be JSON objects with a type")
                data.setdefault("room_id", room)
                event = parse_event(data, sender_id=client_id)
                if event.room_id != room:
                    raise errors.PermissionDenied(f"This socket is bound to room {room}")
                relay.handle(event, sender_id=client_id)
            except PayloadError as e:
                manager.push(room, client_id, error_message("VALIDATION_ERROR", str(e), message_type))
                continue
            except errors.CoordinationError as e:
                manager.push(room, client_id, error_message(e.code, e.message, message_type))
                continue

            if isinstance(event, LeaveRoom):
                manager.disconnect(room, client_id)
                await writer
                await websocket.close()
                return

    except WebSocketDisconnect:
        manager.disconnect(room, client_id)
        relay.disconnect(room, client_id)
    except Exception as e:
        logger.error(f"❌ Error in websocket: {e}")
        manager.disconnect(room, client_id)
        relay.disconnect(room, client_id)
    finally:
        if not writer.done():
            writer.cancel()
