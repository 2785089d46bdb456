from supabase import AsyncClient, acreate_client
from typing import Any, Dict, List, Optional
import json
import logging
from datetime import datetime, timezone
import uuid
from enum import Enum

from .errors import classify_error

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _genre_value(genre) -> str:
    return genre.value if isinstance(genre, Enum) else genre


class SupabaseService:
    def __init__(self, client: AsyncClient):
        self.supabase: AsyncClient = client

    @classmethod
    async def connect(cls, supabase_url: str, supabase_key: str) -> "SupabaseService":
        return cls(await acreate_client(supabase_url, supabase_key))

    async def _run(self, query, action: str) -> List[Dict]:
        """Execute a query builder, converting client failures into tagged errors"""
        try:
            result = await query.execute()
        except Exception as e:
            logger.error(f"Error {action}: {e}")
            raise classify_error(e) from e
        return result.data if result.data else []

    # Book operations
    async def get_book_by_id(self, book_id: str) -> Optional[Dict]:
        """Get book by ID"""
        rows = await self._run(self.supabase.table("books").select("*").eq("id", book_id), "getting book")
        return rows[0] if rows else None

    async def get_books_by_ids(self, book_ids: List[str]) -> List[Dict]:
        """Get multiple books by their IDs"""
        if not book_ids:
            return []
        return await self._run(
            self.supabase.table("books").select("*").in_("id", book_ids),
            "getting books by IDs",
        )

    async def get_books_by_genres(self, genres: List[str]) -> List[Dict]:
        """Get all books in any of the given genres"""
        if not genres:
            return []
        return await self._run(
            self.supabase.table("books").select("*").in_("genre", [_genre_value(g) for g in genres]),
            "getting books by genre",
        )

    async def get_all_books(self) -> List[Dict]:
        return await self._run(
            self.supabase.table("books").select("*").order("genre", desc=False).order("title", desc=False),
            "getting all books",
        )

    async def get_book_lookup(self) -> List[Dict]:
        """Minimal book rows used to resolve citation titles"""
        return await self._run(self.supabase.table("books").select("id, title, author"), "getting book lookup")

    # Notebook operations
    async def create_notebook(self, notebook_data: Dict) -> Dict:
        """Create a new notebook with no sources selected"""
        now = utc_now()
        notebook_record = {
            "id": str(uuid.uuid4()),
            "user_id": notebook_data["user_id"],
            "name": notebook_data["name"],
            "selected_books": [],
            "selected_genres": [],
            "memory_summary": "",
            "key_facts": [],
            "created_at": now,
            "updated_at": now,
        }

        rows = await self._run(self.supabase.table("notebooks").insert(notebook_record), "creating notebook")
        return rows[0] if rows else None

    async def get_notebook_by_id(self, notebook_id: str, user_id: str = None) -> Optional[Dict]:
        """Get notebook by ID, optionally filtering by user_id"""
        logger.debug(f"Getting notebook by id: {notebook_id} for user_id: {user_id}")
        query = self.supabase.table("notebooks").select("*").eq("id", notebook_id)
        if user_id:
            query = query.eq("user_id", user_id)

        rows = await self._run(query, "getting notebook")
        return rows[0] if rows else None

    async def get_user_notebooks(self, user_id: str) -> List[Dict]:
        """Get all notebooks for a user, most recently updated first"""
        return await self._run(
            self.supabase.table("notebooks").select("*").eq("user_id", user_id).order("updated_at", desc=True),
            "getting user notebooks",
        )

    async def update_notebook(self, notebook_id: str, updates: Dict[str, Any]) -> Optional[Dict]:
        """Apply a partial update and return the updated row"""
        values = dict(updates)
        values["updated_at"] = utc_now()
        rows = await self._run(
            self.supabase.table("notebooks").update(values).eq("id", notebook_id),
            "updating notebook",
        )
        return rows[0] if rows else None

    async def update_notebook_sources(
        self,
        notebook_id: str,
        selected_books: List[str],
        selected_genres: List[str],
        expected_updated_at: Optional[str],
    ) -> Optional[Dict]:
        """
        Write the source selections only if the row is unchanged since it was read.

        Returns None when another writer got there first.
        """
        query = (
            self.supabase.table("notebooks")
            .update({
                "selected_books": selected_books,
                "selected_genres": [_genre_value(g) for g in selected_genres],
                "updated_at": utc_now(),
            })
            .eq("id", notebook_id)
        )
        if expected_updated_at is None:
            query = query.is_("updated_at", "null")
        else:
            query = query.eq("updated_at", expected_updated_at)

        rows = await self._run(query, "updating notebook sources")
        return rows[0] if rows else None

    # Chat operations
    async def save_chat_message(self, chat_data: Dict) -> Dict:
        """Save a chat message"""
        message_record = {
            "id": str(uuid.uuid4()),
            "notebook_id": chat_data["notebook_id"],
            "user_message": chat_data["user_message"],
            "assistant_response": chat_data.get("assistant_response", ""),
            "citations": chat_data.get("citations"),
            "timestamp": utc_now(),
        }

        rows = await self._run(self.supabase.table("chat_messages").insert(message_record), "saving chat message")
        return rows[0] if rows else None

    async def get_chat_history(self, notebook_id: str, limit: int = None) -> List[Dict]:
        """Get chat history for a notebook, oldest first"""
        query = (
            self.supabase.table("chat_messages")
            .select("*")
            .eq("notebook_id", notebook_id)
            .order("timestamp", desc=False)
        )
        if limit:
            query = query.limit(limit)
        return await self._run(query, "getting chat history")

    async def delete_chat_history(self, notebook_id: str) -> None:
        logger.info(f"Deleting chat history for notebook: {notebook_id}")
        await self._run(
            self.supabase.table("chat_messages").delete().eq("notebook_id", notebook_id),
            "deleting chat history",
        )

    # Serverless endpoints
    async def invoke_function(self, name: str, body: Dict) -> Dict:
        """Call one of the serverless endpoints and decode its JSON reply"""
        try:
            result = await self.supabase.functions.invoke(name, invoke_options={"body": body})
        except Exception as e:
            logger.error(f"Error invoking function {name}: {e}")
            raise classify_error(e) from e

        if isinstance(result, (bytes, bytearray)):
            result = result.decode("utf-8")
        if isinstance(result, str):
            result = json.loads(result) if result else {}
        return result
