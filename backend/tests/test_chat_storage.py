import pytest
from cryptography.fernet import Fernet
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from branchchat.core.exceptions import NotFoundError
from branchchat.core.security import CryptoVault
from branchchat.models.message import MessageRole
from branchchat.schemas.chat import ConversationUpdate, MessageCreate
from branchchat.schemas.settings import ChatSettingsCreate


async def add(storage, conversation_id, content, role=MessageRole.USER, **kwargs):
    return await storage.add_message(MessageCreate(
        conversation_id=conversation_id, role=role, content=content, **kwargs
    ))


@pytest.mark.asyncio
async def test_create_and_get_conversation(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o")

    conversation = await storage.get_conversation(conversation_id)

    assert conversation.title == "New Chat"
    assert conversation.provider == "openai"
    assert conversation.is_dual_mode is False
    assert conversation.is_archived is False
    assert conversation.created_at == conversation.updated_at


@pytest.mark.asyncio
async def test_missing_conversation_raises(storage):
    with pytest.raises(NotFoundError):
        await storage.get_conversation(404)
    with pytest.raises(NotFoundError):
        await storage.update_conversation(404, {"title": "x"})
    with pytest.raises(NotFoundError):
        await storage.delete_conversation(404)
    with pytest.raises(NotFoundError):
        await add(storage, 404, "hello")
    with pytest.raises(NotFoundError):
        await storage.get_messages(404)


@pytest.mark.asyncio
async def test_conversations_listed_by_recent_activity(storage):
    first = await storage.create_conversation("openai", "gpt-4o")
    second = await storage.create_conversation("openai", "gpt-4o")

    assert [c.id for c in await storage.get_conversations()] == [second, first]

    await add(storage, first, "bump")

    assert [c.id for c in await storage.get_conversations()] == [first, second]


@pytest.mark.asyncio
async def test_update_conversation_merges_fields(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o")
    before = await storage.get_conversation(conversation_id)

    updated = await storage.update_conversation(
        conversation_id, ConversationUpdate(is_dual_mode=True, second_provider="anthropic")
    )

    assert updated.is_dual_mode is True
    assert updated.second_provider == "anthropic"
    assert updated.model == "gpt-4o"
    assert updated.updated_at > before.updated_at


@pytest.mark.asyncio
async def test_update_conversation_rejects_null_title(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o", title="Keep me")

    with pytest.raises(ValidationError):
        await storage.update_conversation(conversation_id, {"title": None})

    assert (await storage.get_conversation(conversation_id)).title == "Keep me"


@pytest.mark.asyncio
async def test_clearing_second_provider_is_allowed(storage):
    conversation_id = await storage.create_conversation(
        "openai", "gpt-4o", second_provider="anthropic", second_model="claude-3-haiku-20240307"
    )

    updated = await storage.update_conversation(
        conversation_id, {"second_provider": None, "second_model": None}
    )

    assert updated.second_provider is None
    assert updated.title == "New Chat"


@pytest.mark.asyncio
async def test_archived_conversations_hidden_by_default(storage):
    kept = await storage.create_conversation("openai", "gpt-4o")
    archived = await storage.create_conversation("openai", "gpt-4o")
    await storage.archive_conversation(archived)

    assert [c.id for c in await storage.get_conversations()] == [kept]
    assert {c.id for c in await storage.get_conversations(include_archived=True)} == {kept, archived}


@pytest.mark.asyncio
async def test_delete_conversation_removes_messages(storage):
    doomed = await storage.create_conversation("openai", "gpt-4o")
    other = await storage.create_conversation("openai", "gpt-4o")
    await add(storage, doomed, "one")
    await add(storage, doomed, "two", role=MessageRole.ASSISTANT)
    kept = await add(storage, other, "three")

    await storage.delete_conversation(doomed)

    with pytest.raises(NotFoundError):
        await storage.get_messages(doomed)
    exported = await storage.export_all_data()
    assert [m["id"] for m in exported["messages"]] == [kept]


@pytest.mark.asyncio
async def test_timestamps_strictly_increase(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o")
    for i in range(20):
        await add(storage, conversation_id, f"m{i}")

    messages = await storage.get_messages(conversation_id)

    timestamps = [m.timestamp for m in messages]
    assert all(a < b for a, b in zip(timestamps, timestamps[1:]))
    assert [m.content for m in messages] == [f"m{i}" for i in range(20)]


@pytest.mark.asyncio
async def test_update_and_delete_message(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o")
    message_id = await add(storage, conversation_id, "typo")

    updated = await storage.update_message(message_id, {"content": "fixed"})
    assert updated.content == "fixed"
    assert (await storage.get_message(message_id)).content == "fixed"

    await storage.delete_message(message_id)
    with pytest.raises(NotFoundError):
        await storage.get_message(message_id)
    with pytest.raises(NotFoundError):
        await storage.delete_message(message_id)


@pytest.mark.asyncio
async def test_create_branch_from_message(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o")
    parent_id = await add(storage, conversation_id, "Hello")

    branch = await storage.create_branch_from_message(
        conversation_id, parent_id, "Hello", "anthropic", "claude-3-haiku-20240307"
    )

    first = await storage.get_message(branch.user_message_id)
    assert first.thread_id == branch.thread_id
    assert first.parent_message_id == parent_id
    assert first.role == MessageRole.USER
    assert first.provider == "anthropic"

    other = await storage.create_branch_from_message(
        conversation_id, parent_id, "Hello", "openai", "gpt-4o"
    )
    assert other.thread_id != branch.thread_id


@pytest.mark.asyncio
async def test_branch_parent_must_exist_in_same_conversation(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o")
    elsewhere = await storage.create_conversation("openai", "gpt-4o")
    foreign_id = await add(storage, elsewhere, "not yours")

    with pytest.raises(NotFoundError):
        await storage.create_branch_from_message(conversation_id, 999, "x", "openai", "gpt-4o")
    with pytest.raises(NotFoundError):
        await storage.create_branch_from_message(conversation_id, foreign_id, "x", "openai", "gpt-4o")


@pytest.mark.asyncio
async def test_thread_messages(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o")
    m1 = await add(storage, conversation_id, "Hello")
    m2 = await add(storage, conversation_id, "Hi!", role=MessageRole.ASSISTANT)
    await add(storage, conversation_id, "Unrelated follow-up")
    branch = await storage.create_branch_from_message(conversation_id, m2, "Tell me more", "openai", "gpt-4o")
    reply = await add(
        storage, conversation_id, "More.", role=MessageRole.ASSISTANT,
        thread_id=branch.thread_id, parent_message_id=branch.user_message_id,
    )

    main = await storage.get_thread_messages(conversation_id)
    context = await storage.get_thread_messages(conversation_id, branch.thread_id)

    assert [m.content for m in main] == ["Hello", "Hi!", "Unrelated follow-up"]
    assert [m.id for m in context] == [m1, m2, branch.user_message_id, reply]


@pytest.mark.asyncio
async def test_settings_key_encrypted_at_rest(storage):
    saved = await storage.save_settings(ChatSettingsCreate(
        provider="openai", model="gpt-4o", api_key="sk-secret", temperature=0.2
    ))

    assert saved.api_key and saved.api_key != "sk-secret"
    assert await storage.get_api_key("openai") == "sk-secret"
    exported = await storage.export_all_data()
    assert "sk-secret" not in str(exported)


@pytest.mark.asyncio
async def test_save_settings_upserts_and_keeps_key(storage):
    await storage.save_settings(ChatSettingsCreate(provider="openai", model="gpt-4o", api_key="sk-1"))

    await storage.save_settings(ChatSettingsCreate(provider="openai", model="gpt-4o-mini", max_tokens=500))

    rows = await storage.get_settings("openai")
    assert len(rows) == 1
    assert rows[0].model == "gpt-4o-mini"
    assert rows[0].max_tokens == 500
    assert await storage.get_api_key("openai") == "sk-1"


@pytest.mark.asyncio
async def test_empty_key_clears_credential(storage):
    await storage.save_settings(ChatSettingsCreate(provider="openai", model="gpt-4o", api_key="sk-1"))

    await storage.save_settings(ChatSettingsCreate(provider="openai", model="gpt-4o", api_key=""))

    assert await storage.get_api_key("openai") is None


@pytest.mark.asyncio
async def test_undecryptable_key_reads_as_missing(storage):
    await storage.save_settings(ChatSettingsCreate(provider="openai", model="gpt-4o", api_key="sk-1"))
    storage.vault = CryptoVault(Fernet.generate_key())

    assert await storage.get_api_key("openai") is None
    assert await storage.get_api_key("anthropic") is None


@pytest.mark.asyncio
async def test_delete_settings(storage):
    await storage.save_settings(ChatSettingsCreate(provider="openai", model="gpt-4o", api_key="sk-1"))

    await storage.delete_settings("openai")

    assert await storage.get_settings("openai") == []
    with pytest.raises(NotFoundError):
        await storage.delete_settings("openai")


@pytest.mark.asyncio
async def test_search(storage):
    python_chat = await storage.create_conversation("openai", "gpt-4o", title="Python tips")
    archived = await storage.create_conversation("openai", "gpt-4o", title="Old python notes")
    await storage.archive_conversation(archived)
    await storage.create_conversation("openai", "gpt-4o", title="100% done")
    await add(storage, python_chat, "How do I use asyncio?")
    await add(storage, archived, "asyncio again")

    assert [c.id for c in await storage.search_conversations("PYTHON")] == [python_chat]
    assert [c.title for c in await storage.search_conversations("%")] == ["100% done"]

    results = await storage.search_messages("AsyncIO")
    assert [(m.content, c.id) for m, c in results] == [("How do I use asyncio?", python_chat)]


@pytest.mark.asyncio
async def test_export_import_round_trip(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o", title="Keep me")
    parent = await add(storage, conversation_id, "Hello")
    await storage.create_branch_from_message(conversation_id, parent, "Hello", "google", "gemini-1.5-flash")
    await storage.save_settings(ChatSettingsCreate(provider="openai", model="gpt-4o", api_key="sk-1"))
    exported = await storage.export_all_data()

    await storage.clear_all_data()
    assert await storage.get_conversations(include_archived=True) == []

    await storage.import_data(exported)

    again = await storage.export_all_data()
    for key in ("conversations", "messages", "settings"):
        assert again[key] == exported[key]
    assert await storage.get_api_key("openai") == "sk-1"


@pytest.mark.asyncio
async def test_import_continues_clock_after_imported_data(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o")
    await add(storage, conversation_id, "before")
    exported = await storage.export_all_data()
    # push the imported data into the future
    exported["messages"][-1]["timestamp"] = "2999-01-01T00:00:00"

    await storage.import_data(exported)
    new_id = await add(storage, conversation_id, "after")

    messages = await storage.get_messages(conversation_id)
    assert messages[-1].id == new_id
    assert messages[-1].timestamp.year == 2999


@pytest.mark.asyncio
async def test_failed_import_changes_nothing(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o", title="Survivor")
    await add(storage, conversation_id, "still here")
    bad = await storage.export_all_data()
    bad["messages"][0]["conversation_id"] = 12345

    with pytest.raises(IntegrityError):
        await storage.import_data(bad)

    conversations = await storage.get_conversations()
    assert [c.title for c in conversations] == ["Survivor"]
    assert [m.content for m in await storage.get_messages(conversation_id)] == ["still here"]


@pytest.mark.asyncio
async def test_import_rejects_unknown_version(storage):
    conversation_id = await storage.create_conversation("openai", "gpt-4o", title="Survivor")
    await add(storage, conversation_id, "still here")
    bundle = await storage.export_all_data()
    bundle["version"] = 99

    with pytest.raises(ValidationError, match="unsupported export version"):
        await storage.import_data(bundle)

    assert [c.title for c in await storage.get_conversations()] == ["Survivor"]
    assert [m.content for m in await storage.get_messages(conversation_id)] == ["still here"]
