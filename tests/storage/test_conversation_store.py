"""Tests for conversation, message and blocking storage."""

import pytest

from llm_chat.errors import ConversationAlreadyBlocked, ConversationNotFound, PersistenceFailure
from llm_chat.models import FormSubmission, Message


@pytest.fixture
def conv(storage):
    return storage.create_conversation("u1", "test-model", title="First")


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def test_create_and_get(storage, conv):
    loaded = storage.get_conversation(conv.id)
    assert loaded == conv
    assert loaded.title == "First"


def test_get_missing(storage):
    assert storage.get_conversation("nope") is None


def test_get_scoped_to_owner(storage, conv):
    assert storage.get_conversation(conv.id, "u1") is not None
    assert storage.get_conversation(conv.id, "someone-else") is None


def test_list_only_own_and_newest_first(storage, conv):
    second = storage.create_conversation("u1", "m", title="Second")
    storage.create_conversation("u2", "m")
    storage.add_message(Message(conversation_id=conv.id, role="user", content="bump"))
    ids = [c.id for c in storage.list_conversations("u1")]
    assert ids == [conv.id, second.id]
    assert len(storage.list_conversations("u1", limit=1)) == 1


def test_soft_delete(storage, conv):
    storage.add_message(Message(conversation_id=conv.id, role="user", content="hi"))
    assert storage.delete_conversation(conv.id, "u1")
    assert storage.get_conversation(conv.id) is None
    assert storage.list_conversations("u1") == []
    assert storage.delete_conversation(conv.id) is False
    # the file stays on disk
    assert (storage._conv_file(conv.id)).exists()


def test_delete_other_users_conversation_refused(storage, conv):
    assert storage.delete_conversation(conv.id, "u2") is False
    assert storage.get_conversation(conv.id) is not None


def test_update_conversation_missing_raises(storage):
    with pytest.raises(ConversationNotFound):
        storage.update_conversation("nope", title="x")


def test_corrupt_file_raises_persistence_failure(storage, conv):
    storage._conv_file(conv.id).write_text("{broken")
    with pytest.raises(PersistenceFailure):
        storage.get_conversation(conv.id)


# ---------------------------------------------------------------------------
# Blocking
# ---------------------------------------------------------------------------

def test_block_once(storage, conv):
    blocked = storage.block_conversation(conv.id, "Danger detected: overdose")
    assert blocked.blocked
    assert blocked.blocked_reason == "Danger detected: overdose"
    assert blocked.blocked_at
    with pytest.raises(ConversationAlreadyBlocked):
        storage.block_conversation(conv.id, "again")
    assert storage.get_conversation(conv.id).blocked_reason == "Danger detected: overdose"


def test_block_missing(storage):
    with pytest.raises(ConversationNotFound):
        storage.block_conversation("nope", "x")


def test_unblock(storage, conv):
    storage.block_conversation(conv.id, "x")
    conv_now = storage.unblock_conversation(conv.id)
    assert not conv_now.blocked
    assert conv_now.blocked_reason is None
    assert conv_now.blocked_at is None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def test_messages_in_commit_order(storage, conv):
    for text in ("one", "two", "three"):
        storage.add_message(Message(conversation_id=conv.id, role="user", content=text))
    assert [m.content for m in storage.get_messages(conv.id)] == ["one", "two", "three"]
    assert [m.content for m in storage.get_messages(conv.id, limit=2)] == ["two", "three"]


def test_add_message_to_missing_conversation(storage):
    with pytest.raises(ConversationNotFound):
        storage.add_message(Message(conversation_id="nope", role="user", content="x"))


def test_attachments_survive_storage(storage, conv):
    storage.add_message(Message(
        conversation_id=conv.id, role="user", content="",
        attachments=FormSubmission(values={"mood": "ok"}),
    ))
    (msg,) = storage.get_messages(conv.id)
    assert isinstance(msg.attachments, FormSubmission)


def test_update_message(storage, conv):
    msg = storage.add_message(Message(conversation_id=conv.id, role="assistant", content="x"))
    storage.update_message(conv.id, msg.id, is_validated=True)
    assert storage.get_messages(conv.id)[0].is_validated


def test_update_missing_message(storage, conv):
    with pytest.raises(ValueError):
        storage.update_message(conv.id, "nope", content="y")


def test_soft_deleted_messages_hidden(storage, conv):
    msg = storage.add_message(Message(conversation_id=conv.id, role="user", content="x"))
    storage.update_message(conv.id, msg.id, deleted_at="2026-01-01T00:00:00+00:00")
    assert storage.get_messages(conv.id) == []
