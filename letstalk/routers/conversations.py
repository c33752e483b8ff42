from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from letstalk.core.config import get_settings
from letstalk.schemas.conversation import (
    AppearanceUpdate,
    ConversationCreate,
    ConversationPage,
    ConversationPublic,
    FlagUpdate,
    GroupUpdate,
    MessageCreate,
    ParticipantAdd,
    PinCreate,
)
from letstalk.services.chat_service import ChatService
from letstalk.services.conversation_service import ConversationService
from letstalk.utils.dependencies import get_chat_service, get_conversation_service, get_current_user_id


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("", response_model=ConversationPage)
async def list_conversations(
    limit: Optional[int] = Query(None, ge=1, le=100),
    cursor: Optional[str] = None,
    include_archived: bool = True,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    items, next_cursor = await service.list_for_user(
        current_user,
        limit=limit or get_settings().conversation_page_size,
        cursor=cursor,
        include_archived=include_archived,
    )
    return ConversationPage(
        items=[ConversationPublic.for_viewer(it, current_user) for it in items],
        next_cursor=next_cursor,
    )


@router.post("", response_model=ConversationPublic)
async def create_conversation(
    body: ConversationCreate,
    response: Response,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    participants = list(dict.fromkeys([*body.participants, current_user]))
    direct_pair = not body.is_group and len(participants) == 2
    if direct_pair and body.group_name is None and body.group_avatar is None:
        other = participants[0] if participants[1] == current_user else participants[1]
        conversation, created = await service.get_or_create_direct(current_user, other)
    else:
        conversation = await service.create(
            participants,
            body.is_group,
            group_name=body.group_name,
            admin_id=current_user if body.is_group else None,
            group_avatar=body.group_avatar,
        )
        created = True
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return ConversationPublic.for_viewer(conversation, current_user)


@router.get("/{conversation_id}", response_model=ConversationPublic)
async def get_conversation(
    conversation_id: str,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.get_conversation(conversation_id, viewer_id=current_user)
    return ConversationPublic.for_viewer(conversation, current_user)


@router.patch("/{conversation_id}", response_model=ConversationPublic)
async def update_group(
    conversation_id: str,
    body: GroupUpdate,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.update_group(
        conversation_id, current_user, group_name=body.group_name, group_avatar=body.group_avatar
    )
    return ConversationPublic.for_viewer(conversation, current_user)


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    await service.delete(conversation_id, current_user)
    return {"msg": "Conversation deleted"}


@router.put("/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    current_user: str = Depends(get_current_user_id),
    chat: ChatService = Depends(get_chat_service),
):
    count = await chat.mark_read(conversation_id, current_user)
    return {"updated": count}


@router.put("/{conversation_id}/archive", response_model=ConversationPublic)
async def set_archived(
    conversation_id: str,
    body: FlagUpdate,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.set_archived(conversation_id, current_user, body.value)
    return ConversationPublic.for_viewer(conversation, current_user)


@router.put("/{conversation_id}/mute", response_model=ConversationPublic)
async def set_muted(
    conversation_id: str,
    body: FlagUpdate,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.set_muted(conversation_id, current_user, body.value)
    return ConversationPublic.for_viewer(conversation, current_user)


@router.put("/{conversation_id}/appearance", response_model=ConversationPublic)
async def update_appearance(
    conversation_id: str,
    body: AppearanceUpdate,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.update_appearance(conversation_id, current_user, theme=body.theme, emoji=body.emoji)
    return ConversationPublic.for_viewer(conversation, current_user)


@router.post("/{conversation_id}/participants", response_model=ConversationPublic)
async def add_participant(
    conversation_id: str,
    body: ParticipantAdd,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.add_participant(conversation_id, body.user_id, actor_id=current_user)
    return ConversationPublic.for_viewer(conversation, current_user)


@router.delete("/{conversation_id}/participants/{user_id}")
async def remove_participant(
    conversation_id: str,
    user_id: str,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.remove_participant(conversation_id, user_id, actor_id=current_user)
    return {
        "conversation_id": conversation_id,
        "deleted": conversation.deleted,
        "participants": list(conversation.participants),
        "admin_id": conversation.admin_id,
    }


@router.post("/{conversation_id}/pins", response_model=ConversationPublic)
async def pin_message(
    conversation_id: str,
    body: PinCreate,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.pin(conversation_id, body.message_id, actor_id=current_user)
    return ConversationPublic.for_viewer(conversation, current_user)


@router.delete("/{conversation_id}/pins/{message_id}", response_model=ConversationPublic)
async def unpin_message(
    conversation_id: str,
    message_id: str,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.unpin(conversation_id, message_id, actor_id=current_user)
    return ConversationPublic.for_viewer(conversation, current_user)


@router.post("/{conversation_id}/typing")
async def start_typing(
    conversation_id: str,
    request: Request,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.start_typing(conversation_id, current_user)
    await request.app.state.fanout.send(
        conversation.participants,
        {"type": "typing_start", "conversation_id": conversation_id, "from": current_user},
        exclude=current_user,
    )
    return {"typing_users": sorted(conversation.typing_users)}


@router.delete("/{conversation_id}/typing")
async def stop_typing(
    conversation_id: str,
    request: Request,
    current_user: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.stop_typing(conversation_id, current_user)
    await request.app.state.fanout.send(
        conversation.participants,
        {"type": "typing_stop", "conversation_id": conversation_id, "from": current_user},
        exclude=current_user,
    )
    return {"typing_users": sorted(conversation.typing_users)}


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = None,
    current_user: str = Depends(get_current_user_id),
    chat: ChatService = Depends(get_chat_service),
):
    messages, next_cursor = await chat.get_history(conversation_id, current_user, limit=limit, cursor=cursor)
    return {"items": messages, "next_cursor": next_cursor}


@router.post("/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    body: MessageCreate,
    current_user: str = Depends(get_current_user_id),
    chat: ChatService = Depends(get_chat_service),
):
    try:
        return await chat.send_message(conversation_id, current_user, body.content, body.client_message_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
