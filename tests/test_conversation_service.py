import asyncio
from unittest.mock import AsyncMock

import pytest

from letstalk.core.errors import (
    ConversationConflict,
    ConversationNotFound,
    MessageNotInConversation,
    NotGroupAdmin,
    NotGroupConversation,
    NotParticipant,
    StoreUnavailable,
)


@pytest.mark.asyncio
async def test_create_persists_conversation(service, store):
    conversation = await service.create(["u1", "u2"], is_group=False)

    loaded = await store.load(conversation.id)
    assert loaded.participants == ["u1", "u2"]
    assert loaded.version == 1


@pytest.mark.asyncio
async def test_direct_conversation_is_reused_for_the_same_pair(service):
    first, created = await service.get_or_create_direct("u1", "u2")
    second, created_again = await service.get_or_create_direct("u2", "u1")

    assert created is True
    assert created_again is False
    assert first.id == second.id


@pytest.mark.asyncio
async def test_message_then_read_scenario(service):
    conversation = await service.create(["u1", "u2"], is_group=False)

    await service.record_incoming_message(conversation.id, "u1", "m1")
    view = await service.get_conversation(conversation.id)
    assert view.unread_count_for("u2") == 1
    assert view.unread_count_for("u1") == 0
    assert view.last_message_id == "m1"

    await service.mark_read(conversation.id, "u2")
    await service.mark_read(conversation.id, "u2")
    view = await service.get_conversation(conversation.id)
    assert view.unread_count_for("u2") == 0


@pytest.mark.asyncio
async def test_concurrent_deliveries_are_serialized(service):
    conversation = await service.create(["u1", "u2", "u3"], is_group=True)

    await asyncio.gather(
        *(service.record_incoming_message(conversation.id, "u1", f"m{i}") for i in range(25)),
        *(service.set_muted(conversation.id, "u2", i % 2 == 0) for i in range(5)),
    )

    view = await service.get_conversation(conversation.id)
    assert view.unread_count_for("u2") == 25
    assert view.unread_count_for("u3") == 25
    assert view.unread_count_for("u1") == 0


@pytest.mark.asyncio
async def test_stale_version_is_reported_as_conflict(service, store):
    conversation = await service.create(["u1", "u2"], is_group=False)
    stale = await store.load(conversation.id)
    await service.mark_read(conversation.id, "u1")

    stale.set_archived("u1", True)
    with pytest.raises(ConversationConflict):
        await store.save(stale)


@pytest.mark.asyncio
async def test_viewer_must_be_participant(service):
    conversation = await service.create(["u1", "u2"], is_group=False)
    with pytest.raises(NotParticipant):
        await service.get_conversation(conversation.id, viewer_id="u9")


@pytest.mark.asyncio
async def test_unknown_conversation_is_not_found(service):
    with pytest.raises(ConversationNotFound):
        await service.mark_read("65f000000000000000000000", "u1")


@pytest.mark.asyncio
async def test_remove_admin_unsets_admin(service):
    conversation = await service.create(["u1", "u2", "u3"], is_group=True, admin_id="u1")

    result = await service.remove_participant(conversation.id, "u1")

    assert result.admin_id is None
    assert result.participants == ["u2", "u3"]
    view = await service.get_conversation(conversation.id)
    assert view.admin_id is None


@pytest.mark.asyncio
async def test_remove_purges_state_and_typing(service):
    conversation = await service.create(["u1", "u2", "u3"], is_group=True)
    await service.record_incoming_message(conversation.id, "u1", "m1")
    await service.set_archived(conversation.id, "u2", True)
    await service.set_muted(conversation.id, "u2", True)
    await service.start_typing(conversation.id, "u2")

    result = await service.remove_participant(conversation.id, "u2")

    assert "u2" not in result.unread_count
    assert "u2" not in result.archived_by
    assert "u2" not in result.muted_by
    assert "u2" not in result.typing_users


@pytest.mark.asyncio
async def test_removing_last_participant_deletes_everything(service, store, messages):
    conversation = await service.create(["u1", "u2"], is_group=True)
    message_id = messages.add(conversation.id)

    await service.remove_participant(conversation.id, "u1")
    result = await service.remove_participant(conversation.id, "u2")

    assert result.deleted is True
    assert conversation.id not in store.docs
    assert messages.messages[message_id]["is_deleted"] is True
    for call in (
        service.mark_read(conversation.id, "u1"),
        service.start_typing(conversation.id, "u1"),
        service.stop_typing(conversation.id, "u1"),
        service.add_participant(conversation.id, "u1"),
        service.unpin(conversation.id, "m1"),
        service.get_conversation(conversation.id),
    ):
        with pytest.raises(ConversationNotFound):
            await call


@pytest.mark.asyncio
async def test_failed_message_cleanup_keeps_conversation(service, store, messages, monkeypatch):
    conversation = await service.create(["u1", "u2"], is_group=True)
    message_id = messages.add(conversation.id)
    await service.remove_participant(conversation.id, "u1")
    monkeypatch.setattr(
        messages,
        "soft_delete_for_conversation",
        AsyncMock(side_effect=StoreUnavailable("down", conversation_id=conversation.id)),
    )

    with pytest.raises(StoreUnavailable):
        await service.remove_participant(conversation.id, "u2")

    assert conversation.id in store.docs
    assert messages.messages[message_id]["is_deleted"] is False
    assert (await service.get_conversation(conversation.id)).participants == ["u2"]


@pytest.mark.asyncio
async def test_only_admin_removes_other_members(service):
    conversation = await service.create(["u1", "u2", "u3"], is_group=True, admin_id="u1")

    with pytest.raises(NotGroupAdmin):
        await service.remove_participant(conversation.id, "u3", actor_id="u2")

    await service.remove_participant(conversation.id, "u2", actor_id="u2")
    result = await service.remove_participant(conversation.id, "u3", actor_id="u1")
    assert result.participants == ["u1"]


@pytest.mark.asyncio
async def test_add_participant_rules(service, store):
    direct = await service.create(["u1", "u2"], is_group=False)
    with pytest.raises(NotGroupConversation):
        await service.add_participant(direct.id, "u3")

    group = await service.create(["u1", "u2"], is_group=True)
    with pytest.raises(NotParticipant):
        await service.add_participant(group.id, "u4", actor_id="u9")

    await service.add_participant(group.id, "u3", actor_id="u1")
    saves = store.saves
    result = await service.add_participant(group.id, "u3", actor_id="u1")
    assert result.participants == ["u1", "u2", "u3"]
    assert store.saves == saves


@pytest.mark.asyncio
async def test_pin_validates_message_owner(service, messages):
    conversation = await service.create(["u1", "u2"], is_group=False)
    other = await service.create(["u1", "u3"], is_group=False)
    own_message = messages.add(conversation.id)
    foreign_message = messages.add(other.id)

    with pytest.raises(MessageNotInConversation):
        await service.pin(conversation.id, foreign_message)
    with pytest.raises(MessageNotInConversation):
        await service.pin(conversation.id, "65f000000000000000000000")

    await service.pin(conversation.id, own_message)
    result = await service.pin(conversation.id, own_message)
    assert result.pinned_message_ids == [own_message]

    await service.unpin(conversation.id, own_message)
    result = await service.unpin(conversation.id, own_message)
    assert result.pinned_message_ids == []


@pytest.mark.asyncio
async def test_typing_indicators_expire(service, clock):
    conversation = await service.create(["u1", "u2"], is_group=False)

    await service.start_typing(conversation.id, "u1")
    await service.start_typing(conversation.id, "u1")
    assert (await service.get_conversation(conversation.id)).typing_users == {"u1"}

    clock.advance(6)
    assert (await service.get_conversation(conversation.id)).typing_users == set()

    await service.stop_typing(conversation.id, "u2")
    with pytest.raises(NotParticipant):
        await service.start_typing(conversation.id, "u9")


@pytest.mark.asyncio
async def test_typing_is_not_persisted(service, store):
    conversation = await service.create(["u1", "u2"], is_group=False)
    await service.start_typing(conversation.id, "u1")

    assert "typing_users" not in store.docs[conversation.id]
    assert (await store.load(conversation.id)).typing_users == set()


@pytest.mark.asyncio
async def test_group_update_requires_admin(service):
    group = await service.create(["u1", "u2", "u3"], is_group=True, group_name="Old", admin_id="u1")
    direct = await service.create(["u1", "u2"], is_group=False)

    with pytest.raises(NotGroupAdmin):
        await service.update_group(group.id, "u2", group_name="New")
    with pytest.raises(NotGroupConversation):
        await service.update_group(direct.id, "u1", group_name="New")

    result = await service.update_group(group.id, "u1", group_name="New", group_avatar="https://img/a.png")
    assert result.group_name == "New"
    assert result.group_avatar == "https://img/a.png"


@pytest.mark.asyncio
async def test_appearance_update_by_any_participant(service):
    conversation = await service.create(["u1", "u2"], is_group=False)
    result = await service.update_appearance(conversation.id, "u2", theme="ocean", emoji="🔥")

    assert result.theme == "ocean"
    assert result.emoji == "🔥"
    with pytest.raises(NotParticipant):
        await service.update_appearance(conversation.id, "u9", theme="dark")


@pytest.mark.asyncio
async def test_delete_rules(service, store):
    group = await service.create(["u1", "u2", "u3"], is_group=True, admin_id="u1")
    with pytest.raises(NotGroupAdmin):
        await service.delete(group.id, "u2")

    await service.delete(group.id, "u1")
    assert group.id not in store.docs
    with pytest.raises(ConversationNotFound):
        await service.delete(group.id, "u1")


@pytest.mark.asyncio
async def test_list_for_user_orders_by_recency_and_pages(service):
    first = await service.create(["u1", "u2"], is_group=False)
    second = await service.create(["u1", "u3"], is_group=False)
    third = await service.create(["u1", "u4"], is_group=False)
    await asyncio.sleep(0.002)
    await service.record_incoming_message(first.id, "u2", "m1")

    page, cursor = await service.list_for_user("u1", limit=2)
    assert [c.id for c in page] == [first.id, third.id]
    assert cursor is not None

    rest, next_cursor = await service.list_for_user("u1", limit=2, cursor=cursor)
    assert [c.id for c in rest] == [second.id]
    assert next_cursor is None


@pytest.mark.asyncio
async def test_list_can_hide_archived(service):
    kept = await service.create(["u1", "u2"], is_group=False)
    hidden = await service.create(["u1", "u3"], is_group=False)
    await service.set_archived(hidden.id, "u1", True)

    items, _ = await service.list_for_user("u1", include_archived=False)
    assert [c.id for c in items] == [kept.id]
    items, _ = await service.list_for_user("u3", include_archived=False)
    assert [c.id for c in items] == [hidden.id]
