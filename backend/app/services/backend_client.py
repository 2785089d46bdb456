import httpx
from typing import Dict, Optional
import logging

from .errors import BackendUnavailable
from ..models.database import BackendChatRequest, BackendNotebookCreate

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_URL = "https://evalchatbot-backend.onrender.com"


class BackendClient:
    """
    Client for the external AI backend that owns retrieval and answer generation
    """

    def __init__(self, base_url: str = DEFAULT_BACKEND_URL, timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def _post(self, path: str, payload: Dict, params: Dict = None) -> Dict:
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload, params=params)
        except httpx.HTTPError as e:
            logger.error(f"AI backend unreachable at {path}: {e}")
            raise BackendUnavailable(f"Backend API unreachable: {e}", cause=e) from e

        if response.status_code >= 400:
            logger.error(f"AI backend error: {response.status_code} {response.text}")
            raise BackendUnavailable(f"Backend API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise BackendUnavailable(f"Backend API returned invalid JSON: {e}", cause=e) from e

        if not isinstance(data, dict):
            logger.error(f"AI backend returned a {type(data).__name__} from {path}, expected an object")
            raise BackendUnavailable("Backend API returned an unexpected response")
        return data

    async def create_notebook(self, name: str, user_id: str) -> Dict:
        payload = BackendNotebookCreate(name=name)
        return await self._post("/api/notebooks", payload.model_dump(mode="json"), params={"user_id": user_id})

    async def chat(self, message: str, notebook_id: str, user_id: str) -> Dict:
        payload = BackendChatRequest(message=message, notebook_id=notebook_id, user_id=user_id)
        return await self._post("/api/chat", payload.model_dump())
