"""
Notebook source resolution shared by the sync layer and the chat endpoint
"""
from typing import Dict, Iterable, List, Optional


def effective_book_ids(
    selected_books: Optional[Iterable[str]],
    genre_book_ids: Optional[Iterable[str]],
) -> List[str]:
    """
    Union of individually selected books and books reached through genres.

    Order is first appearance, selected books first. An id reachable both
    ways appears once.
    """
    merged: Dict[str, None] = {}
    for book_id in list(selected_books or []) + list(genre_book_ids or []):
        merged.setdefault(book_id, None)
    return list(merged)


def merge_unique(current: Optional[Iterable[str]], additions: Optional[Iterable[str]]) -> List[str]:
    """Append additions that are not already present, keeping existing order"""
    result = list(current or [])
    for value in additions or []:
        if value not in result:
            result.append(value)
    return result


def group_books_by_genre(books: Iterable[Dict]) -> Dict[str, List[Dict]]:
    grouped: Dict[str, List[Dict]] = {}
    for book in books:
        grouped.setdefault(book.get("genre") or "other", []).append(book)
    return grouped
