"""Test suite for composing, sending, editing and deleting messages."""

import asyncio

import pytest

from marketplace_chat.domain.models import Attachment, LocalFile
from marketplace_chat.errors import SendFailure, StoreError, ValidationError
from marketplace_chat.services.composer import MessageComposer
from marketplace_chat.services.send_queue import OutboundQueue
from marketplace_chat.services.synchronizer import MessageSynchronizer


async def open_conversation(store, buyer, product):
    """Create a conversation and a composer with its feed active."""
    conversation = await store.create_conversation("Inquiry about Steel Bolts", product_id=product.id)
    synchronizer = MessageSynchronizer(store)
    synchronizer.activate(conversation.id, poll=False)
    composer = MessageComposer(store, synchronizer, buyer, OutboundQueue(send_timeout=1.0))
    return conversation, synchronizer, composer


def photo() -> Attachment:
    return Attachment.from_local(LocalFile(name="crate.jpg", data=b"\xff\xd8\xff"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content, attachments, accepted",
    [
        ("", [], False),
        ("   \n", [], False),
        ("", [photo()], True),
        ("hello", [], True),
    ],
)
async def test_compose_requires_text_or_attachment(store, buyer, product, content, attachments, accepted):
    """Test the empty-message rule."""
    _, synchronizer, composer = await open_conversation(store, buyer, product)

    if accepted:
        pending = composer.compose(content, attachments)
        assert pending.is_pending
        assert synchronizer.feed.messages == [pending]
    else:
        with pytest.raises(ValidationError):
            composer.compose(content, attachments)
        assert synchronizer.feed.messages == []
    await composer.close()


@pytest.mark.asyncio
async def test_compose_without_active_conversation_is_rejected(store, buyer):
    composer = MessageComposer(store, MessageSynchronizer(store), buyer)
    with pytest.raises(ValidationError):
        composer.compose("hello")


@pytest.mark.asyncio
async def test_sent_message_appears_once(store, buyer, product):
    """Pending shows immediately, confirmation swaps it, a sync does not duplicate it."""
    _, synchronizer, composer = await open_conversation(store, buyer, product)

    pending = composer.compose("Do you ship to Rotterdam?")
    assert [m.id for m in synchronizer.feed.messages] == [pending.id]

    confirmed = await composer.deliver(pending)
    assert confirmed.is_sent
    assert confirmed.client_id == pending.client_id
    assert [m.id for m in synchronizer.feed.messages] == [confirmed.id]

    await synchronizer.tick()
    messages = synchronizer.feed.messages
    assert [m.id for m in messages] == [confirmed.id]
    assert synchronizer.feed.local == []
    await composer.close()


@pytest.mark.asyncio
async def test_sync_before_confirmation_does_not_duplicate(store, buyer, product):
    """The server copy may be listed before the send call returns."""
    _, synchronizer, composer = await open_conversation(store, buyer, product)
    store.echo_client_id = False
    original = store.send_message
    listed = asyncio.Event()

    async def send_then_sync(*args, **kwargs):
        result = await original(*args, **kwargs)
        await synchronizer.tick()
        listed.set()
        return result

    store.send_message = send_then_sync

    confirmed = await composer.send("Sample pack please")

    assert listed.is_set()
    assert [m.id for m in synchronizer.feed.messages] == [confirmed.id]
    assert synchronizer.feed.local == []
    await composer.close()


@pytest.mark.asyncio
async def test_attachments_are_uploaded_with_the_message(store, buyer, product):
    _, synchronizer, composer = await open_conversation(store, buyer, product)

    confirmed = await composer.send("", [photo()])

    assert confirmed.attachments[0].is_uploaded
    assert confirmed.attachments[0].name == "crate.jpg"
    await composer.close()


@pytest.mark.asyncio
async def test_failed_send_is_marked_and_retried(scripted_store, buyer, make_message):
    """A failed send stays visible as failed until retried."""
    synchronizer = MessageSynchronizer(scripted_store)
    feed = synchronizer.activate("conv-1", poll=False)
    composer = MessageComposer(scripted_store, synchronizer, buyer)
    scripted_store.send_error = StoreError("502 Bad Gateway", status_code=502)

    pending = composer.compose("hello")
    with pytest.raises(SendFailure):
        await composer.deliver(pending)

    failed = feed.get(pending.client_id)
    assert failed.is_failed
    assert "502" in failed.state.error

    scripted_store.send_error = None
    scripted_store.send_result = make_message("s1", "hello", sender=buyer)
    confirmed = await composer.retry(pending.client_id)

    assert confirmed.id == "s1"
    assert [m.id for m in feed.messages] == ["s1"]
    assert [m.client_id for m in scripted_store.sent] == [pending.client_id] * 2
    await composer.close()


@pytest.mark.asyncio
async def test_failed_send_can_be_discarded(scripted_store, buyer):
    synchronizer = MessageSynchronizer(scripted_store)
    feed = synchronizer.activate("conv-1", poll=False)
    composer = MessageComposer(scripted_store, synchronizer, buyer)
    scripted_store.send_error = StoreError("offline")

    pending = composer.compose("hello")
    with pytest.raises(SendFailure):
        await composer.deliver(pending)
    composer.discard(pending.client_id)

    assert feed.messages == []
    with pytest.raises(ValidationError):
        composer.discard(pending.client_id)
    await composer.close()


@pytest.mark.asyncio
async def test_only_failed_messages_can_be_retried(store, buyer, product):
    _, _, composer = await open_conversation(store, buyer, product)
    pending = composer.compose("hello")

    with pytest.raises(ValidationError):
        await composer.retry(pending.client_id)
    await composer.close()


@pytest.mark.asyncio
async def test_sends_keep_compose_order(slow_store, buyer, product):
    _, synchronizer, composer = await open_conversation(slow_store, buyer, product)

    await asyncio.gather(*[composer.send(f"line {i}") for i in range(4)])
    await synchronizer.tick()

    assert [m.content for m in synchronizer.feed.messages] == [f"line {i}" for i in range(4)]
    await composer.close()


@pytest.mark.asyncio
async def test_edit_renders_before_the_store_answers(slow_store, buyer, product):
    """Edits are optimistic; the PUT runs in the background."""
    _, synchronizer, composer = await open_conversation(slow_store, buyer, product)
    sent = await composer.send("500 units")

    edited = composer.edit_content(sent.id, "600 units")

    assert edited.content == "600 units" and edited.edited
    assert slow_store.calls["edit_message"] == 0
    await composer.wait_background()
    assert slow_store.calls["edit_message"] == 1

    await synchronizer.tick()
    assert synchronizer.feed.get(sent.id).content == "600 units"
    await composer.close()


@pytest.mark.asyncio
async def test_failed_edit_reverts_to_server_content(store, buyer, product):
    _, synchronizer, composer = await open_conversation(store, buyer, product)
    sent = await composer.send("500 units")

    async def rejecting(message_id, content):
        raise StoreError("conflict", status_code=409)

    store.edit_message = rejecting
    composer.edit_content(sent.id, "600 units")
    await composer.wait_background()

    assert synchronizer.feed.get(sent.id).content == "500 units"
    await composer.close()


@pytest.mark.asyncio
async def test_failed_edit_keeps_a_later_edit(store, buyer, product):
    """An earlier edit failing after a newer one does not undo the newer one."""
    _, synchronizer, composer = await open_conversation(store, buyer, product)
    sent = await composer.send("500 units")
    accept = store.edit_message
    release_first = asyncio.Event()

    async def edit_message(message_id, content):
        if content == "600 units":
            await release_first.wait()
            raise StoreError("conflict", status_code=409)
        return await accept(message_id, content)

    store.edit_message = edit_message
    composer.edit_content(sent.id, "600 units")
    composer.edit_content(sent.id, "700 units")
    await asyncio.sleep(0)
    release_first.set()
    await composer.wait_background()

    assert synchronizer.feed.get(sent.id).content == "700 units"
    await synchronizer.tick()
    assert synchronizer.feed.get(sent.id).content == "700 units"
    await composer.close()


@pytest.mark.asyncio
async def test_only_the_author_may_edit_or_delete(store, buyer, product):
    conversation, synchronizer, composer = await open_conversation(store, buyer, product)
    incoming = await store.deliver_incoming(conversation.id, "Price is $2 per unit")
    await synchronizer.tick()

    with pytest.raises(ValidationError):
        composer.edit_content(incoming.id, "Price is $1 per unit")
    with pytest.raises(ValidationError):
        await composer.delete(incoming.id)
    assert store.calls["edit_message"] == 0
    assert store.calls["delete_message"] == 0
    await composer.close()


@pytest.mark.asyncio
async def test_pending_messages_cannot_be_edited(store, buyer, product):
    _, _, composer = await open_conversation(store, buyer, product)
    pending = composer.compose("hello")

    with pytest.raises(ValidationError):
        composer.edit_content(pending.id, "hi")
    await composer.close()


@pytest.mark.asyncio
async def test_delete_leaves_a_tombstone(store, buyer, product):
    _, synchronizer, composer = await open_conversation(store, buyer, product)
    sent = await composer.send("wrong quote")

    deleted = await composer.delete(sent.id)
    assert deleted.is_deleted

    await synchronizer.tick()
    tombstone = synchronizer.feed.get(sent.id)
    assert tombstone is not None and tombstone.is_deleted
    with pytest.raises(ValidationError):
        await composer.delete(sent.id)
    await composer.close()


@pytest.mark.asyncio
async def test_failed_delete_restores_the_message(store, buyer, product):
    _, synchronizer, composer = await open_conversation(store, buyer, product)
    sent = await composer.send("keep me")

    async def rejecting(message_id):
        raise StoreError("forbidden", status_code=403)

    store.delete_message = rejecting
    with pytest.raises(StoreError):
        await composer.delete(sent.id)

    assert not synchronizer.feed.get(sent.id).is_deleted
    await composer.close()


@pytest.mark.asyncio
async def test_reply_to_deleted_or_missing_target_has_no_context(store, buyer, product):
    """Reply context is resolved at render time and never raises."""
    _, synchronizer, composer = await open_conversation(store, buyer, product)
    original = await composer.send("What is the lead time?")
    reply = await composer.send("Also the MOQ?", reply_to=original.id)
    orphan = await composer.send("Ignore that", reply_to="msg-does-not-exist")
    feed = synchronizer.feed

    context = feed.reply_context(feed.get(reply.id))
    assert context.message_id == original.id
    assert context.snippet == "What is the lead time?"

    await composer.delete(original.id)
    assert feed.reply_context(feed.get(reply.id)) is None
    assert feed.reply_context(feed.get(orphan.id)) is None
    await composer.close()
