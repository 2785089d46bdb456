import json

import httpx
import pytest

from app.services.backend_client import BackendClient
from app.services.errors import BackendUnavailable


def _client(handler):
    return BackendClient("https://backend.test/", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_chat_posts_message_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": "ok", "citations": []})

    data = await _client(handler).chat("hi", "n1", "u1")

    assert data == {"response": "ok", "citations": []}
    assert seen["url"] == "https://backend.test/api/chat"
    assert seen["body"] == {"message": "hi", "notebook_id": "n1", "user_id": "u1"}


@pytest.mark.asyncio
async def test_create_notebook_passes_user_as_query_param():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message": "Notebook created successfully"})

    await _client(handler).create_notebook("Physics", "u1")

    assert seen["params"] == {"user_id": "u1"}
    assert seen["body"] == {"name": "Physics", "selected_books": [], "selected_genres": []}


@pytest.mark.asyncio
async def test_error_status_raises_backend_unavailable():
    client = _client(lambda request: httpx.Response(503, text="sleeping"))

    with pytest.raises(BackendUnavailable, match="503"):
        await client.chat("hi", "n1", "u1")


@pytest.mark.asyncio
async def test_connection_failure_raises_backend_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackendUnavailable, match="unreachable"):
        await _client(handler).chat("hi", "n1", "u1")


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [["unexpected"], "text", None])
async def test_non_object_reply_raises_backend_unavailable(payload):
    client = _client(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(BackendUnavailable, match="unexpected response"):
        await client.create_notebook("Physics", "u1")
