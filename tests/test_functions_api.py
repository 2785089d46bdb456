import httpx
import pytest
from fastapi.testclient import TestClient

from fakes import FakeBackendClient
from app.api import functions
from app.services.backend_client import BackendClient
from app.main import app


@pytest.fixture
def backend():
    return FakeBackendClient()


@pytest.fixture
def client(store, backend):
    app.dependency_overrides[functions.get_supabase_service] = lambda: store
    app.dependency_overrides[functions.get_backend_client] = lambda: backend
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_preflight_returns_204_with_cors_headers(client):
    resp = client.options(
        "/send-chat-message",
        headers={"Origin": "https://app.example", "Access-Control-Request-Method": "POST"},
    )

    assert resp.status_code == 204
    assert resp.headers["access-control-allow-origin"] == "*"
    assert "content-type" in resp.headers["access-control-allow-headers"]


def test_create_notebook_inserts_row_and_calls_backend(client, backend, supabase_client):
    resp = client.post("/create-notebook", json={"name": "Physics II", "user_id": "u1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["notebook"]["name"] == "Physics II"
    assert body["notebook"]["selected_books"] == []
    assert body["notebook"]["selected_genres"] == []
    assert body["backend_response"]["message"] == "Notebook created successfully"
    assert backend.create_calls == [("Physics II", "u1")]
    assert resp.headers["access-control-allow-origin"] == "*"
    assert any(r["name"] == "Physics II" for r in supabase_client.tables["notebooks"])


def test_create_notebook_survives_backend_outage(client, store, supabase_client):
    app.dependency_overrides[functions.get_backend_client] = lambda: FakeBackendClient(fail_create=True)

    resp = client.post("/create-notebook", json={"name": "Offline", "user_id": "u1"})

    assert resp.status_code == 200
    assert resp.json()["backend_response"] is None
    assert any(r["name"] == "Offline" for r in supabase_client.tables["notebooks"])


@pytest.mark.parametrize("payload", [{"name": "No user"}, {"user_id": "u1"}, {}])
def test_create_notebook_missing_fields_is_500(client, payload):
    resp = client.post("/create-notebook", json=payload)

    assert resp.status_code == 500
    assert resp.json() == {"error": "name and user_id are required"}


def test_create_notebook_store_failure_is_500(client, supabase_client):
    supabase_client.fail("notebooks", "insert", Exception("duplicate key value violates unique constraint"))

    resp = client.post("/create-notebook", json={"name": "Dup", "user_id": "u1"})

    assert resp.status_code == 500
    assert "duplicate key" in resp.json()["error"]


def test_send_chat_message_forwards_and_persists(client, backend, supabase_client):
    backend.chat_reply = {
        "response": "Light bends.",
        "citations": [{"book_title": "A Brief History of Time", "page_start": 4, "page_end": 5,
                       "content_preview": "Gravity..."}],
        "memory_summary": "",
        "key_facts": [],
    }

    resp = client.post("/send-chat-message", json={"notebookId": "n1", "message": "What is gravity?"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["message"]["user_message"] == "What is gravity?"
    assert body["message"]["assistant_response"] == "Light bends."
    assert body["message"]["citations"][0]["book_title"] == "A Brief History of Time"
    assert body["response"]["response"] == "Light bends."
    assert backend.chat_calls == [("What is gravity?", "n1", "u1")]
    assert supabase_client.tables["chat_messages"][-1]["id"] == body["message"]["id"]


def test_send_chat_message_without_reply_text(client, backend):
    backend.chat_reply = {"citations": []}

    resp = client.post("/send-chat-message", json={"notebookId": "n1", "message": "Hello?"})

    assert resp.status_code == 200
    assert resp.json()["message"]["assistant_response"] == "No response"
    assert resp.json()["message"]["citations"] is None


def test_send_chat_message_backend_failure_is_fatal(client, supabase_client):
    app.dependency_overrides[functions.get_backend_client] = lambda: FakeBackendClient(fail_chat=True)
    before = len(supabase_client.tables["chat_messages"])

    resp = client.post("/send-chat-message", json={"notebookId": "n1", "message": "Anyone there?"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Backend API error: 503"}
    assert len(supabase_client.tables["chat_messages"]) == before


def test_send_chat_message_unknown_notebook(client):
    resp = client.post("/send-chat-message", json={"notebookId": "nope", "message": "Hi"})

    assert resp.status_code == 500
    assert "not found" in resp.json()["error"]


def test_send_chat_message_missing_fields(client):
    resp = client.post("/send-chat-message", json={"notebookId": "n1"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "notebookId and message are required"}


def test_invalid_json_body_is_500(client):
    resp = client.post("/create-notebook", content=b"not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 500
    assert "Invalid JSON" in resp.json()["error"]


def test_missing_configuration_is_500(monkeypatch):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)

    with TestClient(app) as test_client:
        resp = test_client.post("/create-notebook", json={"name": "x", "user_id": "u1"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Missing required environment variables"}


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_create_notebook_survives_malformed_backend_reply(client, supabase_client):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["unexpected"]))
    app.dependency_overrides[functions.get_backend_client] = lambda: BackendClient("https://backend.test", transport=transport)

    resp = client.post("/create-notebook", json={"name": "Odd reply", "user_id": "u1"})

    assert resp.status_code == 200
    assert resp.json()["backend_response"] is None
    assert any(r["name"] == "Odd reply" for r in supabase_client.tables["notebooks"])


@pytest.mark.parametrize("citations", ["see page 4", {"book_title": "x"}, [], ["loose", 3]])
def test_send_chat_message_stores_malformed_citations_as_none(client, backend, supabase_client, citations):
    backend.chat_reply = {"response": "Answer", "citations": citations}

    resp = client.post("/send-chat-message", json={"notebookId": "n1", "message": "Sources?"})

    assert resp.status_code == 200
    assert resp.json()["message"]["citations"] is None
    assert supabase_client.tables["chat_messages"][-1]["citations"] is None


def test_send_chat_message_keeps_citation_objects_only(client, backend):
    backend.chat_reply = {"response": "Answer", "citations": ["loose", {"book_title": "Meditations"}]}

    resp = client.post("/send-chat-message", json={"notebookId": "n1", "message": "Sources?"})

    assert resp.json()["message"]["citations"] == [{"book_title": "Meditations"}]


def test_send_chat_message_continues_when_genre_lookup_fails(client, backend, supabase_client):
    supabase_client.fail("books", "select", httpx.ConnectError("books unavailable"))

    resp = client.post("/send-chat-message", json={"notebookId": "n1", "message": "Still there?"})

    assert resp.status_code == 200
    assert backend.chat_calls == [("Still there?", "n1", "u1")]
    assert resp.json()["message"]["user_message"] == "Still there?"
