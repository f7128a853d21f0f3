import json
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from ...core.deps import get_websocket_session
from ...core.metrics import WEBSOCKET_CONNECTIONS, WEBSOCKET_MESSAGES
from ...realtime.base import ChangeEvent, EventType, topic_for
from ...schemas.chat import MessageCreate, MessageWithReply
from ...services.chat_service import ChatService
from ...services.room_service import PARTICIPANTS_TABLE, ROOMS_TABLE
from ...services.typing_service import TypingService

logger = logging.getLogger(__name__)
router = APIRouter()


async def send_frame(websocket: WebSocket, message_type: str, payload: Any) -> None:
    await websocket.send_json({"type": message_type, "payload": payload})
    WEBSOCKET_MESSAGES.labels(direction="out", message_type=message_type).inc()


@router.websocket("/ws/rooms/{room_id}")
async def room_websocket(
    websocket: WebSocket,
    room_id: str,
    token: str = Query(...),
):
    """
    Realtime feed for one room.

    Pushes `message` frames for new messages and `typing` frames with the
    usernames currently typing; accepts `message` and `typing` frames from
    the client. The socket is closed with 1008 when the user is removed
    from the room or the room is deleted.
    """
    # 1. Authenticate user and check membership
    session = await get_websocket_session(websocket, token)
    if not session:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    state = websocket.app.state
    chat_service = ChatService(state.store, state.channel)
    typing_service = TypingService(state.store, state.channel, state.settings)

    try:
        await chat_service.require_participant(session, room_id)
    except HTTPException as e:
        logger.info(f"Rejected WS for user {session.user_id} in room {room_id}: {e.detail}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    WEBSOCKET_CONNECTIONS.inc()
    logger.info(f"WebSocket connected: user={session.user_id}, room={room_id}")

    # 2. Subscribe to room changes
    async def on_message(message: MessageWithReply) -> None:
        await send_frame(websocket, "message", message.model_dump(mode="json", by_alias=True))

    async def on_typing(usernames: List[str]) -> None:
        await send_frame(websocket, "typing", {"usernames": usernames})

    subscriptions = []

    async def cancel_subscriptions() -> None:
        for subscription in subscriptions:
            await subscription.cancel()

    async def on_membership_change(event: ChangeEvent) -> None:
        if event.event_type != EventType.DELETE:
            return
        if event.table == PARTICIPANTS_TABLE and event.record.get("user_id") != str(session.user_id):
            return
        logger.info(f"Closing WS for user {session.user_id}: {event.table} delete in room {room_id}")
        await cancel_subscriptions()
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)

    try:
        subscriptions.append(await chat_service.subscribe(room_id, on_message))
        subscriptions.append(await typing_service.subscribe(room_id, session.user_id, on_typing))
        for table in (PARTICIPANTS_TABLE, ROOMS_TABLE):
            subscriptions.append(
                await state.channel.subscribe(topic_for(table, room_id), on_membership_change)
            )

        # 3. Main loop: handle frames from the client
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
                message_type = frame.get("type")
                payload: Dict[str, Any] = frame.get("payload") or {}
                WEBSOCKET_MESSAGES.labels(direction="in", message_type=str(message_type)).inc()

                if message_type == "message":
                    await chat_service.send_message(session, room_id, MessageCreate.model_validate(payload))
                elif message_type == "typing":
                    await typing_service.set_typing(session, room_id, bool(payload.get("isTyping")))
                else:
                    logger.warning(f"[{session.user_id}] Unknown message type received: {message_type}")
                    await send_frame(websocket, "error", {"message": f"Unknown message type: {message_type}"})

            except (json.JSONDecodeError, AttributeError):
                logger.warning(f"[{session.user_id}] Received invalid JSON: {data}")
                await send_frame(websocket, "error", {"message": "Invalid JSON"})
            except ValidationError as e:
                await send_frame(websocket, "error", {"message": e.errors()[0]["msg"]})
            except HTTPException as e:
                await send_frame(websocket, "error", {"message": e.detail})

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: user={session.user_id}, room={room_id}")
    except Exception as e:
        logger.exception(f"WebSocket error for user {session.user_id} in room {room_id}: {e}")
    finally:
        WEBSOCKET_CONNECTIONS.dec()
        await cancel_subscriptions()
        try:
            await typing_service.clear_typing(room_id, session.user_id)
        except HTTPException as e:
            logger.warning(f"Could not clear typing for {session.user_id} in room {room_id}: {e.detail}")
        logger.info(f"Cleanup complete for user {session.user_id} in room {room_id}")
