"""
Chat message normalization

Turns stored chat rows (and rows pushed by the realtime feed) into the
human/assistant messages the client renders. Two stored encodings exist:

* the ``chat_messages`` row: ``{id, notebook_id, user_message, assistant_response, citations}``
* the legacy chat-history item: ``{id, session_id, message: {type, content}}`` where an
  ``ai`` content may be a JSON string holding ``{"output": [{"text", "citations"}]}``

Everything here is pure: no clock, no randomness, no I/O. Malformed legacy
content degrades to plain text and is never raised to the caller.
"""
from typing import Any, Dict, Iterable, List, Mapping
import json
import logging

from pydantic import ValidationError

from ..models.database import (
    Citation,
    MessageContent,
    MessageSegment,
    NormalizedMessage,
    Role,
    SourceInfo,
    StructuredContent,
)

logger = logging.getLogger(__name__)

UNKNOWN_SOURCE_TITLE = "Unknown Source"
DEFAULT_SOURCE_TYPE = "book"
LEGACY_SOURCE_TYPE = "pdf"
EMPTY_MESSAGE = "Empty message"
UNPARSEABLE_MESSAGE = "Unable to parse message"

SourceMap = Mapping[str, SourceInfo]


def build_source_map(books: Iterable[Dict]) -> Dict[str, SourceInfo]:
    """Index books by id for citation title lookup"""
    return {
        book["id"]: SourceInfo(title=book.get("title") or UNKNOWN_SOURCE_TITLE, type="book")
        for book in books
        if book.get("id")
    }


def normalize_record(record: Mapping[str, Any], source_map: SourceMap) -> List[NormalizedMessage]:
    """
    Normalize any stored chat record, whichever encoding it uses
    """
    if "message" in record and "user_message" not in record:
        return [normalize_legacy_item(record, source_map)]
    return normalize_chat_row(record, source_map)


def normalize_records(records: Iterable[Mapping[str, Any]], source_map: SourceMap) -> List[NormalizedMessage]:
    messages: List[NormalizedMessage] = []
    for record in records:
        messages.extend(normalize_record(record, source_map))
    return messages


def normalize_chat_row(row: Mapping[str, Any], source_map: SourceMap) -> List[NormalizedMessage]:
    """
    One chat row yields the human turn and, once answered, the assistant turn
    """
    row_id = str(row["id"])
    session_id = str(row.get("notebook_id") or "")

    messages = [
        NormalizedMessage(
            id=f"{row_id}-user",
            session_id=session_id,
            role=Role.HUMAN,
            content=row.get("user_message") or "",
        )
    ]

    assistant_text = row.get("assistant_response") or ""
    if not assistant_text:
        return messages

    citations = row.get("citations") or []
    if isinstance(citations, list):
        citations = [raw for raw in citations if isinstance(raw, Mapping)]
    content: MessageContent = assistant_text
    if isinstance(citations, list) and citations:
        try:
            content = StructuredContent(
                segments=[MessageSegment(text=assistant_text, citation_id=1)],
                citations=[_row_citation(raw, index, source_map) for index, raw in enumerate(citations)],
            )
        except (TypeError, ValidationError) as e:
            logger.warning(f"Unreadable citations on chat row {row_id}, rendering as text: {e}")

    messages.append(
        NormalizedMessage(
            id=f"{row_id}-assistant",
            session_id=session_id,
            role=Role.ASSISTANT,
            content=content,
        )
    )
    return messages


def _row_citation(raw: Mapping[str, Any], index: int, source_map: SourceMap) -> Citation:
    source_id = raw.get("source_id")
    source = source_map.get(source_id) if source_id else None

    citation_id = raw.get("citation_id")
    if not isinstance(citation_id, int) or isinstance(citation_id, bool):
        citation_id = index + 1

    # The AI backend reports book_title / content_preview instead of source fields
    title = (
        (source.title if source else None)
        or raw.get("source_title")
        or raw.get("book_title")
        or UNKNOWN_SOURCE_TITLE
    )
    source_type = (source.type if source else None) or raw.get("source_type") or DEFAULT_SOURCE_TYPE

    return Citation(
        citation_id=citation_id,
        source_id=str(source_id) if source_id is not None else None,
        source_title=title,
        source_type=source_type,
        chunk_index=_int_or_none(raw.get("chunk_index")),
        chunk_lines_from=_int_or_none(raw.get("chunk_lines_from")),
        chunk_lines_to=_int_or_none(raw.get("chunk_lines_to")),
        excerpt=raw.get("excerpt") or raw.get("content_preview"),
    )


def normalize_legacy_item(item: Mapping[str, Any], source_map: SourceMap) -> NormalizedMessage:
    """
    Normalize a chat-history item from the older agent pipeline
    """
    item_id = str(item.get("id", ""))
    session_id = str(item.get("session_id") or item.get("notebook_id") or "")
    message = item.get("message")

    if isinstance(message, Mapping) and "type" in message and "content" in message:
        role = Role.HUMAN if message.get("type") == "human" else Role.ASSISTANT
        raw_content = message.get("content")

        if role is Role.ASSISTANT and isinstance(raw_content, str):
            content = _parse_agent_output(raw_content, source_map)
        elif isinstance(raw_content, Mapping):
            content = _coerce_structured(raw_content)
        elif isinstance(raw_content, str) and raw_content:
            content = raw_content
        elif raw_content:
            content = json.dumps(raw_content, sort_keys=True, default=str)
        else:
            content = EMPTY_MESSAGE

        return NormalizedMessage(id=item_id, session_id=session_id, role=role, content=content)

    if isinstance(message, str):
        return NormalizedMessage(id=item_id, session_id=session_id, role=Role.HUMAN, content=message)

    logger.warning(f"Unrecognised chat history item {item_id}, rendering placeholder")
    return NormalizedMessage(id=item_id, session_id=session_id, role=Role.HUMAN, content=UNPARSEABLE_MESSAGE)


def _parse_agent_output(raw_content: str, source_map: SourceMap) -> MessageContent:
    """
    Flatten ``{"output": [{"text", "citations"}]}`` into segments and citations.

    The citation counter advances once per output item that cites anything,
    so every citation of one item shares that item's id.
    """
    try:
        parsed = json.loads(raw_content)
    except (TypeError, ValueError) as e:
        logger.debug(f"AI content is not JSON, keeping plain text: {e}")
        return raw_content

    output = parsed.get("output") if isinstance(parsed, dict) else None
    if not isinstance(output, list):
        return raw_content

    segments: List[MessageSegment] = []
    citations: List[Citation] = []
    citation_counter = 1

    try:
        for entry in output:
            entry_citations = entry.get("citations") or []
            has_citations = len(entry_citations) > 0
            segments.append(
                MessageSegment(
                    text=entry.get("text", ""),
                    citation_id=citation_counter if has_citations else None,
                )
            )
            if not has_citations:
                continue

            for cited in entry_citations:
                source_id = cited.get("chunk_source_id")
                source = source_map.get(source_id) if source_id else None
                lines_from = cited.get("chunk_lines_from")
                lines_to = cited.get("chunk_lines_to")
                citations.append(
                    Citation(
                        citation_id=citation_counter,
                        source_id=source_id,
                        source_title=source.title if source else UNKNOWN_SOURCE_TITLE,
                        source_type=source.type if source else LEGACY_SOURCE_TYPE,
                        chunk_index=cited.get("chunk_index"),
                        chunk_lines_from=lines_from,
                        chunk_lines_to=lines_to,
                        excerpt=f"Lines {lines_from}-{lines_to}",
                    )
                )
            citation_counter += 1
    except (AttributeError, TypeError, ValidationError) as e:
        logger.warning(f"Malformed agent output, falling back to plain text: {e}")
        return raw_content

    return StructuredContent(segments=segments, citations=citations)


def _coerce_structured(raw_content: Mapping[str, Any]) -> MessageContent:
    try:
        return StructuredContent.model_validate(dict(raw_content))
    except ValidationError as e:
        logger.warning(f"Pre-shaped content failed validation, rendering as text: {e}")
        return json.dumps(raw_content, sort_keys=True, default=str)


def _int_or_none(value: Any):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    return None
