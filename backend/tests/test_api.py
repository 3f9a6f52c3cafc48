import json

import pytest
from fastapi.testclient import TestClient

from branchchat.db.database import create_engine
from branchchat.main import create_app
from branchchat.services.chat_storage import ChatStorage

from conftest import ClientRegistry, ScriptedClient


@pytest.fixture
def registry():
    registry = ClientRegistry()
    registry.add("openai", ScriptedClient(["Hi", " there"]))
    registry.add("anthropic", ScriptedClient(["Bonjour"]))
    return registry


@pytest.fixture
def client(tmp_path, vault, registry):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", echo=False)
    app = create_app(storage=ChatStorage(engine, vault=vault), client_factory=registry)
    with TestClient(app) as test_client:
        yield test_client


def new_conversation(client, **fields):
    body = {"provider": "openai", "model": "gpt-4o", **fields}
    response = client.post("/api/conversations", json=body)
    assert response.status_code == 201
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["status"] == "running"


def test_conversation_crud(client):
    created = new_conversation(client)
    conversation_id = created["id"]
    assert created["title"] == "New Chat"

    response = client.patch(f"/api/conversations/{conversation_id}", json={"title": "Renamed"})
    assert response.json()["title"] == "Renamed"

    assert [c["id"] for c in client.get("/api/conversations").json()] == [conversation_id]
    assert [c["id"] for c in client.get("/api/conversations", params={"q": "renam"}).json()] == [conversation_id]

    client.post(f"/api/conversations/{conversation_id}/archive")
    assert client.get("/api/conversations").json() == []
    assert len(client.get("/api/conversations", params={"include_archived": True}).json()) == 1

    assert client.delete(f"/api/conversations/{conversation_id}").status_code == 200
    assert client.get(f"/api/conversations/{conversation_id}").status_code == 404


def test_null_title_is_rejected(client):
    conversation_id = new_conversation(client, title="Keep me")["id"]

    response = client.patch(f"/api/conversations/{conversation_id}", json={"title": None})

    assert response.status_code == 422
    assert client.get(f"/api/conversations/{conversation_id}").json()["title"] == "Keep me"


def test_missing_conversation_is_404(client):
    response = client.get("/api/conversations/999")

    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_send_and_read_back(client):
    conversation_id = new_conversation(client)["id"]

    response = client.post(
        "/api/chat/send", params={"wait": True},
        json={"conversation_id": conversation_id, "content": "Hello"},
    )

    assert response.status_code == 202
    status = response.json()
    assert status["state"] == "committed"
    assert status["text"] == "Hi there"

    messages = client.get(f"/api/conversations/{conversation_id}/messages").json()
    assert [(m["role"], m["content"]) for m in messages] == [("user", "Hello"), ("assistant", "Hi there")]
    assert client.get(f"/api/conversations/{conversation_id}").json()["title"] == "Hello"


def test_stream_replays_fragments(client):
    conversation_id = new_conversation(client)["id"]
    client.post(
        "/api/chat/send", params={"wait": True},
        json={"conversation_id": conversation_id, "content": "Hello"},
    )

    response = client.get(f"/api/chat/stream/{conversation_id}")

    events = [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]
    assert [e["text"] for e in events if e["type"] == "fragment"] == ["Hi", " there"]
    assert events[-1]["type"] == "done"
    assert events[-1]["state"] == "committed"


def test_stream_without_slot_is_404(client):
    conversation_id = new_conversation(client)["id"]

    assert client.get(f"/api/chat/stream/{conversation_id}").status_code == 404


def test_dual_send_and_thread_view(client):
    conversation_id = new_conversation(
        client, is_dual_mode=True, second_provider="anthropic", second_model="claude-3-haiku-20240307"
    )["id"]

    response = client.post(
        "/api/chat/dual", params={"wait": True},
        json={"conversation_id": conversation_id, "content": "Compare"},
    )

    assert [s["state"] for s in response.json()] == ["committed", "committed"]
    view = client.get(f"/api/conversations/{conversation_id}/threads").json()
    parent_id = view["main_thread"][0]["id"]
    assert len(view["branches"]) == 2
    assert view["reply_counts"] == {str(parent_id): 2}
    assert view["orphaned_branches"] == []

    branch = view["branches"][1]
    response = client.post("/api/chat/reply", params={"wait": True}, json={
        "conversation_id": conversation_id,
        "parent_message_id": branch["messages"][-1]["id"],
        "content": "More please",
        "thread_id": branch["id"],
    })
    assert response.json()["state"] == "committed"

    thread = client.get(f"/api/conversations/{conversation_id}/threads/{branch['id']}").json()
    assert [m["content"] for m in thread][-2:] == ["More please", "Bonjour"]


def test_dual_send_without_second_provider(client):
    conversation_id = new_conversation(client)["id"]

    response = client.post(
        "/api/chat/dual", json={"conversation_id": conversation_id, "content": "Compare"}
    )

    assert response.status_code == 400
    assert "no second provider" in response.json()["detail"]
    assert client.get(f"/api/conversations/{conversation_id}/messages").json() == []


def test_failed_stream_reports_error(client):
    conversation_id = new_conversation(client, provider="google", model="gemini-1.5-flash")["id"]

    response = client.post(
        "/api/chat/send", params={"wait": True},
        json={"conversation_id": conversation_id, "content": "Hello"},
    )

    assert response.json()["state"] == "failed"
    assert "No API key" in response.json()["error"]


def test_cancel_without_stream(client):
    conversation_id = new_conversation(client)["id"]

    response = client.post("/api/chat/cancel", json={"conversation_id": conversation_id})

    assert response.json() == {"cancelled": False}


def test_regenerate_not_implemented(client):
    conversation_id = new_conversation(client)["id"]

    assert client.post(f"/api/chat/regenerate/{conversation_id}/1").status_code == 501


def test_edit_and_search_messages(client):
    conversation_id = new_conversation(client)["id"]
    client.post(
        "/api/chat/send", params={"wait": True},
        json={"conversation_id": conversation_id, "content": "Helo"},
    )
    user_message = client.get(f"/api/conversations/{conversation_id}/messages").json()[0]

    edited = client.patch(f"/api/messages/{user_message['id']}", json={"content": "Hello world"})
    assert edited.json()["content"] == "Hello world"

    results = client.get("/api/messages/search", params={"q": "WORLD"}).json()
    assert [r["message"]["id"] for r in results] == [user_message["id"]]


def test_settings_never_return_key(client):
    response = client.put("/api/settings", json={
        "provider": "openai", "model": "gpt-4o", "api_key": "sk-secret", "temperature": 0.5,
    })

    assert response.status_code == 200
    body = response.json()
    assert body["has_api_key"] is True
    assert "api_key" not in body
    assert "sk-secret" not in client.get("/api/settings").text
    assert client.get("/api/settings/openai").json()["temperature"] == 0.5

    assert client.delete("/api/settings/openai").status_code == 200
    assert client.get("/api/settings/openai").status_code == 404


def test_settings_for_unknown_provider(client):
    response = client.put("/api/settings", json={"provider": "mistral", "model": "large"})

    assert response.status_code == 404


def test_credential_check_without_key(client):
    response = client.post("/api/settings/test", json={"provider": "openai"})

    assert response.json() == {"provider": "openai", "valid": False}


def test_providers(client):
    providers = client.get("/api/providers").json()

    assert [p["id"] for p in providers] == ["openai", "anthropic", "google"]


def test_export_clear_import(client):
    conversation_id = new_conversation(client, title="Backup me")["id"]
    client.post(
        "/api/chat/send", params={"wait": True},
        json={"conversation_id": conversation_id, "content": "Hello"},
    )

    export = client.get("/api/data/export")
    assert "attachment" in export.headers["content-disposition"]
    bundle = export.json()

    client.delete("/api/data")
    assert client.get("/api/conversations").json() == []

    response = client.post("/api/data/import", json=bundle)
    assert response.json() == {"conversations": 1, "messages": 2, "settings": 0}
    assert client.get(f"/api/conversations/{conversation_id}").json()["title"] == "Hello"


def test_import_rejects_unknown_version(client):
    new_conversation(client, title="Survivor")
    bundle = client.get("/api/data/export").json()
    bundle["version"] = 99

    response = client.post("/api/data/import", json=bundle)

    assert response.status_code == 422
    assert [c["title"] for c in client.get("/api/conversations").json()] == ["Survivor"]
