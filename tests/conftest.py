# tests/conftest.py
"""
Pytest configuration and fixtures.
Adds backend/ to sys.path so `import app` works without an install.
"""

import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
backend_root = project_root / "backend"
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

tests_root = Path(__file__).parent
if str(tests_root) not in sys.path:
    sys.path.insert(0, str(tests_root))

import pytest

from fakes import FakeSupabaseClient, InMemoryChangeFeed
from app.services.notebook_sync import NotebookSync
from app.services.supabase_service import SupabaseService


BOOKS = [
    {"id": "b1", "title": "A Brief History of Time", "author": "Hawking", "genre": "science",
     "file_path": "b1.pdf", "total_pages": 200, "created_at": "2024-01-01T00:00:00+00:00"},
    {"id": "b2", "title": "The Selfish Gene", "author": "Dawkins", "genre": "science",
     "file_path": "b2.pdf", "total_pages": 300, "created_at": "2024-01-02T00:00:00+00:00"},
    {"id": "b3", "title": "Meditations", "author": "Marcus Aurelius", "genre": "philosophy",
     "file_path": "b3.pdf", "total_pages": 150, "created_at": "2024-01-03T00:00:00+00:00"},
]


@pytest.fixture
def supabase_client():
    return FakeSupabaseClient({
        "books": BOOKS,
        "notebooks": [
            {"id": "n1", "user_id": "u1", "name": "Physics", "selected_books": ["b1"],
             "selected_genres": ["science"], "memory_summary": "", "key_facts": [],
             "created_at": "2024-02-01T00:00:00+00:00", "updated_at": "2024-02-03T00:00:00+00:00"},
            {"id": "n2", "user_id": "u1", "name": "Stoics", "selected_books": None,
             "selected_genres": None, "memory_summary": None, "key_facts": None,
             "created_at": "2024-02-02T00:00:00+00:00", "updated_at": "2024-02-04T00:00:00+00:00"},
            {"id": "n3", "user_id": "u2", "name": "Someone else", "selected_books": [],
             "selected_genres": [], "memory_summary": "", "key_facts": [],
             "created_at": "2024-02-02T00:00:00+00:00", "updated_at": "2024-02-02T00:00:00+00:00"},
        ],
        "chat_messages": [
            {"id": "r1", "notebook_id": "n1", "user_message": "Hi", "assistant_response": "",
             "citations": None, "timestamp": "2024-03-01T00:00:00+00:00"},
            {"id": "r2", "notebook_id": "n1", "user_message": "Q", "assistant_response": "A",
             "citations": [{"source_id": "b1", "source_title": "Book", "chunk_lines_from": 1, "chunk_lines_to": 3}],
             "timestamp": "2024-03-02T00:00:00+00:00"},
        ],
    })


@pytest.fixture
def store(supabase_client):
    return SupabaseService(client=supabase_client)


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def sync(store, feed):
    return NotebookSync(store, feed=feed, retry_delay=0)
