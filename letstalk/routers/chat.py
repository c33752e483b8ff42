import asyncio
import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from letstalk.core.errors import ConversationError
from letstalk.core.logging import get_logger
from letstalk.services.chat_service import ChatService
from letstalk.services.conversation_service import ConversationService
from letstalk.utils.dependencies import get_chat_service, get_conversation_service
from letstalk.utils.realtime_bus import user_channel


router = APIRouter(prefix="/ws", tags=["chat"])
logger = get_logger("letstalk.routers.chat")


def _error_frame(kind: str, detail: str, conversation_id: Any = None) -> str:
    return json.dumps({"type": "error", "error": kind, "detail": detail, "conversation_id": conversation_id})


async def _handle_frame(
    user_id: str,
    msg: Dict[str, Any],
    websocket: WebSocket,
    chat: ChatService,
    conversations: ConversationService,
) -> None:
    kind = msg.get("type", "message")
    conversation_id = msg.get("conversation_id")
    if not conversation_id:
        await websocket.send_text(_error_frame("InvalidPayload", "conversation_id is required"))
        return
    fanout = websocket.app.state.fanout

    if kind in ("typing_start", "typing_stop"):
        if kind == "typing_start":
            conversation = await conversations.start_typing(conversation_id, user_id)
        else:
            conversation = await conversations.stop_typing(conversation_id, user_id)
        await fanout.send(
            conversation.participants,
            {"type": kind, "conversation_id": conversation_id, "from": user_id},
            exclude=user_id,
        )
        return

    if kind == "read":
        updated = await chat.mark_read(conversation_id, user_id)
        await websocket.send_text(json.dumps({"type": "read", "conversation_id": conversation_id, "updated": updated}))
        return

    if kind != "message" or not isinstance(msg.get("content"), str):
        await websocket.send_text(_error_frame("InvalidPayload", "Invalid message payload", conversation_id))
        return
    try:
        ack = await chat.send_message(conversation_id, user_id, msg["content"], msg.get("client_message_id"))
    except ValueError as exc:
        await websocket.send_text(_error_frame("InvalidPayload", str(exc), conversation_id))
        return
    await websocket.send_text(json.dumps(ack))


@router.websocket("/chat/{user_id}")
async def chat_socket(
    websocket: WebSocket,
    user_id: str,
    chat: ChatService = Depends(get_chat_service),
    conversations: ConversationService = Depends(get_conversation_service),
):
    manager = websocket.app.state.connections
    bus = websocket.app.state.bus
    await manager.connect(user_id, websocket)

    subscriber = None
    sub_task = None
    if getattr(bus, "enabled", False):
        subscriber = await bus.subscribe(user_channel(user_id), websocket.send_text)
        sub_task = asyncio.create_task(subscriber.run())

    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(_error_frame("InvalidPayload", "Frames must be JSON objects"))
                continue
            if not isinstance(msg, dict):
                await websocket.send_text(_error_frame("InvalidPayload", "Frames must be JSON objects"))
                continue
            try:
                await _handle_frame(user_id, msg, websocket, chat, conversations)
            except ConversationError as exc:
                await websocket.send_text(_error_frame(exc.kind, str(exc), exc.conversation_id))
    except WebSocketDisconnect:
        logger.info("websocket.disconnected", extra={"user_id": user_id})
    finally:
        manager.disconnect(user_id, websocket)
        if subscriber is not None:
            await subscriber.cancel()
        if sub_task is not None:
            sub_task.cancel()
