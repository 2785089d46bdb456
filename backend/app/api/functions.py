from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
import json
import logging
import os

from ..models.database import (
    CreateNotebookRequest,
    CreateNotebookResponse,
    SendChatMessageRequest,
    SendChatMessageResponse,
)
from ..services.backend_client import BackendClient, DEFAULT_BACKEND_URL
from ..services.errors import BackendUnavailable, InsightsError, NotFoundError, StoreError, ValidationFailed
from ..services.sources import effective_book_ids
from ..services.supabase_service import SupabaseService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["functions"])

# Dependency injection
async def get_supabase_service():
    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")  # Service role, the endpoints write on behalf of users

    if not all([supabase_url, supabase_key]):
        raise ValidationFailed("Missing required environment variables")

    return await SupabaseService.connect(supabase_url, supabase_key)

def get_backend_client():
    base_url = os.getenv("BACKEND_API_URL", DEFAULT_BACKEND_URL)
    timeout = float(os.getenv("BACKEND_TIMEOUT_SECONDS", "60"))
    return BackendClient(base_url, timeout=timeout)


def error_response(message: str) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": message})


async def read_body(request: Request, model):
    try:
        payload = await request.json()
    except ValueError as e:
        raise ValidationFailed(f"Invalid JSON body: {e}") from e
    if not isinstance(payload, dict):
        raise ValidationFailed("Request body must be a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ValidationFailed(str(e)) from e


def reply_text(backend_data: dict) -> str:
    text = backend_data.get("response") or backend_data.get("message") or "No response"
    return text if isinstance(text, str) else json.dumps(text)


def reply_citations(backend_data: dict):
    """Citation objects from the reply, or None when there are none"""
    citations = backend_data.get("citations")
    if not isinstance(citations, list):
        return None
    return [c for c in citations if isinstance(c, dict)] or None


@router.post("/create-notebook")
async def create_notebook(
    request: Request,
    supabase_service: SupabaseService = Depends(get_supabase_service),
    backend: BackendClient = Depends(get_backend_client),
):
    """
    Insert the notebook, then tell the AI backend about it.

    The backend call is best effort: the notebook exists once the insert succeeds.
    """
    try:
        body = await read_body(request, CreateNotebookRequest)
        logger.info(f"Creating notebook: name={body.name!r} user_id={body.user_id}")

        if not body.name or not body.user_id:
            raise ValidationFailed("name and user_id are required")

        notebook = await supabase_service.create_notebook({"name": body.name, "user_id": body.user_id})
        if not notebook:
            raise StoreError("Failed to create notebook: no row returned")

        backend_data = None
        try:
            backend_data = await backend.create_notebook(body.name, body.user_id)
            logger.info(f"Backend response: {backend_data}")
        except BackendUnavailable as e:
            logger.warning(f"Backend API call failed (non-blocking): {e}")

        return CreateNotebookResponse(notebook=notebook, backend_response=backend_data).model_dump()

    except InsightsError as e:
        logger.error(f"Error in create-notebook: {e}")
        return error_response(e.message or "Failed to create notebook")


@router.post("/send-chat-message")
async def send_chat_message(
    request: Request,
    supabase_service: SupabaseService = Depends(get_supabase_service),
    backend: BackendClient = Depends(get_backend_client),
):
    """
    Forward a message to the AI backend and store the turn with its reply.
    """
    try:
        body = await read_body(request, SendChatMessageRequest)
        logger.info(f"Received chat message for notebook {body.notebook_id}")

        if not body.notebook_id or not body.message:
            raise ValidationFailed("notebookId and message are required")

        notebook = await supabase_service.get_notebook_by_id(body.notebook_id)
        if not notebook:
            raise NotFoundError(f"Failed to fetch notebook: {body.notebook_id} not found")

        try:
            genre_books = await supabase_service.get_books_by_genres(notebook.get("selected_genres") or [])
        except InsightsError as e:
            logger.warning(f"Genre books lookup failed, using selected books only: {e}")
            genre_books = []
        book_ids = effective_book_ids(notebook.get("selected_books"), [book["id"] for book in genre_books])
        logger.info(f"Found book IDs for context: {book_ids}")

        backend_data = await backend.chat(body.message, body.notebook_id, notebook["user_id"])

        chat_message = await supabase_service.save_chat_message({
            "notebook_id": body.notebook_id,
            "user_message": body.message,
            "assistant_response": reply_text(backend_data),
            "citations": reply_citations(backend_data),
        })
        if not chat_message:
            raise StoreError("Failed to save chat message: no row returned")

        return SendChatMessageResponse(message=chat_message, response=backend_data).model_dump()

    except InsightsError as e:
        logger.error(f"Error in send-chat-message: {e}")
        return error_response(e.message or "Failed to process chat message")
