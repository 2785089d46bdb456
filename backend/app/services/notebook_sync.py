"""
Notebook/chat synchronization layer

Keeps a local cache of notebooks, sources and chat messages consistent with
the store across three write paths: reads, mutations and realtime pushes.
"""
import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from supabase import acreate_client

from .change_feed import ChangeEvent, ChangeFeed, SupabaseChangeFeed, Subscription
from .errors import (
    AuthError,
    ConflictError,
    InsightsError,
    NotFoundError,
    StoreError,
    ValidationFailed,
    classify_error,
)
from .message_normalizer import build_source_map, normalize_record, normalize_records
from .query_cache import CacheKey, QueryCache
from .sources import effective_book_ids, group_books_by_genre, merge_unique
from .supabase_service import SupabaseService
from ..models.database import BookCatalog, NormalizedMessage, Notebook, NotebookSummary

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOTEBOOKS = "notebooks"
NOTEBOOK = "notebook"
NOTEBOOK_BOOKS = "notebook-books"
ALL_BOOKS = "all-books"
CHAT_MESSAGES = "chat-messages"

DEFAULT_NOTEBOOK_NAME = "Untitled Notebook"
MAX_READ_RETRIES = 3
MAX_SOURCE_UPDATE_ATTEMPTS = 3


def _message_id(message: NormalizedMessage) -> str:
    return message.id


def _notebook_fields(row: Dict) -> Dict:
    """Nullable array columns come back as None"""
    return {
        **row,
        "selected_books": row.get("selected_books") or [],
        "selected_genres": row.get("selected_genres") or [],
        "key_facts": row.get("key_facts") or [],
    }


class NotebookSync:
    def __init__(
        self,
        store: SupabaseService,
        feed: Optional[ChangeFeed] = None,
        cache: Optional[QueryCache] = None,
        max_read_retries: int = MAX_READ_RETRIES,
        retry_delay: float = 0.5,
    ):
        self.store = store
        self.feed = feed
        self.cache = cache if cache is not None else QueryCache()
        self.max_read_retries = max_read_retries
        self.retry_delay = retry_delay

    # Read plumbing
    async def _with_read_retry(self, loader: Callable[[], Awaitable[T]], action: str) -> T:
        """
        Retry a read up to ``max_read_retries`` times after the first failure.
        Authentication failures are raised immediately.
        """
        failures = 0
        while True:
            try:
                return await loader()
            except Exception as e:
                error = classify_error(e)
                if isinstance(error, AuthError) or failures >= self.max_read_retries:
                    logger.error(f"Error {action}: {error}")
                    if error is e:
                        raise
                    raise error from e
                failures += 1
                logger.warning(f"Retrying {action} ({failures}/{self.max_read_retries}) after: {error}")
                if self.retry_delay:
                    await asyncio.sleep(self.retry_delay * failures)

    async def _read(
        self,
        key: CacheKey,
        loader: Callable[[], Awaitable[T]],
        action: str,
        id_of: Callable = None,
    ) -> T:
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        ticket = self.cache.begin_read(key)
        try:
            data = await self._with_read_retry(loader, action)
        except BaseException:
            self.cache.abandon_read(ticket)
            raise
        if not self.cache.complete_read(ticket, data, id_of=id_of):
            logger.info(f"Result of {action} not applied, cache entry {key} changed meanwhile")
            return data
        return self.cache.peek(key)

    def release(self, kind: str, scope: str) -> None:
        """Drop a cache entry when its consumer goes away"""
        self.cache.release((kind, scope))

    # Notebooks
    async def list_notebooks(self, user_id: str) -> List[NotebookSummary]:
        """
        The user's notebooks, most recently updated first, each with the size
        of its effective source set.
        """
        async def load() -> List[NotebookSummary]:
            logger.info(f"Fetching notebooks for user: {user_id}")
            rows = await self.store.get_user_notebooks(user_id)

            genres = sorted({genre for row in rows for genre in (row.get("selected_genres") or [])})
            genre_books: Dict[str, List[str]] = {}
            for book in await self.store.get_books_by_genres(genres):
                genre_books.setdefault(book.get("genre"), []).append(book["id"])

            notebooks = []
            for row in rows:
                reachable = [
                    book_id
                    for genre in (row.get("selected_genres") or [])
                    for book_id in genre_books.get(genre, [])
                ]
                count = len(effective_book_ids(row.get("selected_books"), reachable))
                notebooks.append(NotebookSummary.model_validate({**_notebook_fields(row), "source_count": count}))

            logger.info(f"Fetched notebooks: {len(notebooks)}")
            return notebooks

        return list(await self._read((NOTEBOOKS, user_id), load, "fetching notebooks"))

    async def get_notebook(self, notebook_id: str) -> Notebook:
        async def load() -> Notebook:
            row = await self.store.get_notebook_by_id(notebook_id)
            if not row:
                raise NotFoundError(f"Notebook {notebook_id} not found")
            return Notebook.model_validate(_notebook_fields(row))

        return await self._read((NOTEBOOK, notebook_id), load, "fetching notebook")

    async def create_notebook(self, name: str, user_id: str) -> Notebook:
        """
        Create a notebook through the create-notebook endpoint. The endpoint
        inserts the row, so the notebook list is only invalidated here.
        """
        if not user_id:
            raise AuthError("User not authenticated")

        key = (NOTEBOOKS, user_id)
        self.cache.mark_pending(key)
        try:
            logger.info(f"Creating notebook {name!r} for user {user_id}")
            data = await self.store.invoke_function(
                "create-notebook",
                {"name": name or DEFAULT_NOTEBOOK_NAME, "user_id": user_id},
            )
            if not data or data.get("error") or not data.get("notebook"):
                raise StoreError((data or {}).get("error") or "Failed to create notebook")
        finally:
            self.cache.clear_pending(key)

        self.cache.invalidate(key)
        logger.info(f"Notebook created successfully: {data['notebook'].get('id')}")
        return Notebook.model_validate(_notebook_fields(data["notebook"]))

    async def update_notebook(self, notebook_id: str, name: str = None, memory_summary: str = None) -> Notebook:
        updates = {}
        if name:
            updates["name"] = name
        if memory_summary:
            updates["memory_summary"] = memory_summary
        if not updates:
            raise ValidationFailed("name or memory_summary is required")

        logger.info(f"Updating notebook {notebook_id}: {sorted(updates)}")
        row = await self.store.update_notebook(notebook_id, updates)
        if not row:
            raise NotFoundError(f"Notebook {notebook_id} not found")

        self._invalidate_notebook(notebook_id)
        return Notebook.model_validate(_notebook_fields(row))

    def _invalidate_notebook(self, notebook_id: str) -> None:
        self.cache.invalidate((NOTEBOOK, notebook_id))
        self.cache.invalidate((NOTEBOOK_BOOKS, notebook_id))
        self.cache.invalidate_kind(NOTEBOOKS)

    # Sources
    async def list_sources(self, notebook_id: str) -> List[Dict]:
        """Books attached to a notebook directly or through a genre, newest first"""
        async def load() -> List[Dict]:
            notebook = await self.store.get_notebook_by_id(notebook_id)
            if not notebook:
                raise NotFoundError(f"Notebook {notebook_id} not found")

            direct = await self.store.get_books_by_ids(notebook.get("selected_books") or [])
            by_genre = await self.store.get_books_by_genres(notebook.get("selected_genres") or [])

            books = {}
            for book in direct + by_genre:
                books.setdefault(book["id"], book)
            return sorted(books.values(), key=lambda book: book.get("created_at") or "", reverse=True)

        return list(await self._read((NOTEBOOK_BOOKS, notebook_id), load, "fetching notebook sources"))

    async def add_sources(self, notebook_id: str, book_ids: List[str] = None, genres: List[str] = None) -> Notebook:
        def change(books, current_genres):
            return merge_unique(books, book_ids), merge_unique(current_genres, genres)

        return await self._update_sources(notebook_id, change)

    async def remove_source(self, notebook_id: str, book_id: str = None, genre: str = None) -> Notebook:
        def change(books, current_genres):
            if book_id:
                books = [b for b in books if b != book_id]
            if genre:
                current_genres = [g for g in current_genres if g != genre]
            return books, current_genres

        return await self._update_sources(notebook_id, change)

    async def _update_sources(self, notebook_id: str, change) -> Notebook:
        """
        Read-modify-write of the source arrays, guarded by the row's updated_at.
        A concurrent writer makes the guarded update miss; the change is then
        re-applied to a fresh read.
        """
        for attempt in range(1, MAX_SOURCE_UPDATE_ATTEMPTS + 1):
            row = await self.store.get_notebook_by_id(notebook_id)
            if not row:
                raise NotFoundError(f"Notebook {notebook_id} not found")

            books, genres = change(list(row.get("selected_books") or []), list(row.get("selected_genres") or []))
            updated = await self.store.update_notebook_sources(notebook_id, books, genres, row.get("updated_at"))
            if updated:
                self._invalidate_notebook(notebook_id)
                return Notebook.model_validate(_notebook_fields(updated))

            logger.warning(f"Notebook {notebook_id} changed concurrently, retrying source update ({attempt})")

        raise ConflictError(f"Notebook {notebook_id} kept changing, source update abandoned")

    async def list_all_books(self) -> BookCatalog:
        async def load() -> BookCatalog:
            books = await self.store.get_all_books()
            grouped = group_books_by_genre(books)
            return BookCatalog(books=books, books_by_genre=grouped, available_genres=list(grouped))

        return await self._read((ALL_BOOKS, "*"), load, "fetching books")

    # Chat
    async def _source_map(self):
        return build_source_map(await self._with_read_retry(self.store.get_book_lookup, "fetching book lookup"))

    async def list_chat_messages(self, notebook_id: str) -> List[NormalizedMessage]:
        async def load() -> List[NormalizedMessage]:
            rows = await self.store.get_chat_history(notebook_id)
            source_map = build_source_map(await self.store.get_book_lookup())
            return normalize_records(rows, source_map)

        messages = await self._read((CHAT_MESSAGES, notebook_id), load, "fetching chat messages", id_of=_message_id)
        return list(messages)

    async def send_message(self, notebook_id: str, text: str) -> Dict:
        """
        Send through the send-chat-message endpoint, which stores the row and
        the reply. The returned row is merged like a realtime insert.
        """
        if not notebook_id or not text:
            raise ValidationFailed("notebookId and message are required")

        key = (CHAT_MESSAGES, notebook_id)
        self.cache.mark_pending(key)
        try:
            data = await self.store.invoke_function("send-chat-message", {"notebookId": notebook_id, "message": text})
        finally:
            self.cache.clear_pending(key)

        if not data or data.get("error"):
            raise StoreError((data or {}).get("error") or "Failed to send message")

        # The row is stored at this point; a failed local merge must not report a failed send
        row = data.get("message")
        if row:
            try:
                await self.merge_chat_row(notebook_id, row)
            except InsightsError as e:
                logger.warning(f"Message {row.get('id')} sent but not merged locally, waiting for realtime insert: {e}")
        return data

    async def merge_chat_row(self, notebook_id: str, row: Dict) -> int:
        """Normalize a stored row and insert its messages once"""
        messages = normalize_record(row, await self._source_map())
        added = self.cache.merge((CHAT_MESSAGES, notebook_id), messages, _message_id)
        if not added:
            logger.info(f"Chat row {row.get('id')} already cached, skipping")
        return added

    async def delete_chat_history(self, notebook_id: str) -> str:
        await self.store.delete_chat_history(notebook_id)
        # Replace rather than refetch; a refetch could race the delete
        self.cache.set((CHAT_MESSAGES, notebook_id), [])
        logger.info(f"Chat history cleared for notebook: {notebook_id}")
        return notebook_id

    # Realtime
    def _require_feed(self) -> ChangeFeed:
        if self.feed is None:
            raise ValidationFailed("No change feed configured")
        return self.feed

    async def on_chat_message_inserted(self, notebook_id: str, event: ChangeEvent) -> None:
        if not event.record:
            return
        await self.merge_chat_row(notebook_id, event.record)

    def on_notebook_changed(self, user_id: str, event: ChangeEvent) -> None:
        logger.info(f"Notebook {event.type} received for user {user_id}")
        self.cache.invalidate((NOTEBOOKS, user_id))
        notebook_id = (event.record or event.old_record or {}).get("id")
        if notebook_id:
            self.cache.invalidate((NOTEBOOK, notebook_id))
            self.cache.invalidate((NOTEBOOK_BOOKS, notebook_id))

    async def watch_chat_messages(self, notebook_id: str) -> Subscription:
        return await self._require_feed().subscribe(
            f"chat-messages:{notebook_id}",
            "chat_messages",
            lambda event: self.on_chat_message_inserted(notebook_id, event),
            event="INSERT",
            row_filter=f"notebook_id=eq.{notebook_id}",
        )

    async def watch_notebooks(self, user_id: str) -> Subscription:
        return await self._require_feed().subscribe(
            f"notebooks:{user_id}",
            "notebooks",
            lambda event: self.on_notebook_changed(user_id, event),
            event="*",
            row_filter=f"user_id=eq.{user_id}",
        )


async def create_notebook_sync() -> NotebookSync:
    """Build the sync layer from SUPABASE_URL / SUPABASE_KEY, with realtime enabled"""
    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_KEY")

    if not all([supabase_url, supabase_key]):
        raise ValidationFailed("Missing required environment variables")

    # One async client for queries and realtime, so reads never block pushes
    client = await acreate_client(supabase_url, supabase_key)
    return NotebookSync(SupabaseService(client), feed=SupabaseChangeFeed(client))
