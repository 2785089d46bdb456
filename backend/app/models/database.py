from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

class Genre(str, Enum):
    HISTORY = "history"
    SCIENCE = "science"
    LITERATURE = "literature"
    PHILOSOPHY = "philosophy"
    TECHNOLOGY = "technology"
    OTHER = "other"

class Role(str, Enum):
    HUMAN = "human"
    ASSISTANT = "assistant"

class Book(BaseModel):
    id: str
    title: str
    author: str
    genre: Genre = Genre.OTHER
    file_path: str = ""
    total_pages: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class Notebook(BaseModel):
    id: str
    user_id: str
    name: str
    selected_books: List[str] = []  # List of book IDs
    selected_genres: List[Genre] = []
    memory_summary: Optional[str] = ""
    key_facts: List[str] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class NotebookSummary(Notebook):
    source_count: int = 0

class ChatRow(BaseModel):
    id: str
    notebook_id: str
    user_message: str
    assistant_response: Optional[str] = ""
    citations: Optional[List[dict]] = None  # Raw citation payloads from the backend
    timestamp: Optional[datetime] = None

class Citation(BaseModel):
    citation_id: int
    source_id: Optional[str] = None
    source_title: str
    source_type: str = "book"
    chunk_index: Optional[int] = None
    chunk_lines_from: Optional[int] = None
    chunk_lines_to: Optional[int] = None
    excerpt: Optional[str] = None

class MessageSegment(BaseModel):
    text: str
    citation_id: Optional[int] = None

class StructuredContent(BaseModel):
    segments: List[MessageSegment]
    citations: List[Citation]

# Plain text or segments with citations, decided once by the normalizer
MessageContent = Union[str, StructuredContent]

class NormalizedMessage(BaseModel):
    id: str
    session_id: str
    role: Role
    content: MessageContent

    @property
    def is_structured(self) -> bool:
        return isinstance(self.content, StructuredContent)

class SourceInfo(BaseModel):
    """Book lookup entry used to resolve citation titles"""
    title: str
    type: str = "book"

class BookCatalog(BaseModel):
    books: List[Book]
    books_by_genre: Dict[str, List[Book]]
    available_genres: List[str]

# Serverless endpoint payloads. Fields are optional so that a missing value
# surfaces as the endpoint's own {error} response instead of a 422.
class CreateNotebookRequest(BaseModel):
    name: Optional[str] = None
    user_id: Optional[str] = None

class SendChatMessageRequest(BaseModel):
    notebook_id: Optional[str] = Field(default=None, alias="notebookId")
    message: Optional[str] = None

    model_config = {"populate_by_name": True}

class CreateNotebookResponse(BaseModel):
    success: bool = True
    notebook: dict
    backend_response: Optional[dict] = None

class SendChatMessageResponse(BaseModel):
    success: bool = True
    message: ChatRow
    response: dict

# AI backend payloads
class BackendChatRequest(BaseModel):
    message: str
    notebook_id: str
    user_id: str

class BackendNotebookCreate(BaseModel):
    name: str
    selected_books: List[str] = []
    selected_genres: List[Genre] = []
