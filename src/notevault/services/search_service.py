"""Service for searching notes and building content previews."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from notevault.config import config
from notevault.models.schema import Note
from notevault.observability import traced
from notevault.storage.user_store import UserStore

logger = logging.getLogger(__name__)

# Markdown punctuation dropped from previews
_MARKDOWN_CHARS_RE = re.compile(r"[#*_~`\[\]]")
_WHITESPACE_RE = re.compile(r"\s+")

ELLIPSIS = "..."


def summarize(content: str, length: Optional[int] = None) -> str:
    """Plain-text preview of markdown content.

    Strips markdown punctuation, collapses whitespace and truncates to
    ``length`` characters (config.summary_length by default), appending
    ``...`` when something was cut off.
    """
    if not content:
        return ""
    limit = length or config.summary_length
    text = _WHITESPACE_RE.sub(" ", _MARKDOWN_CHARS_RE.sub("", content)).strip()
    if len(text) > limit:
        return text[:limit] + ELLIPSIS
    return text


@dataclass
class SearchResult:
    """A lightweight search hit."""

    name: str
    id: str
    preview: str
    tags: List[str] = field(default_factory=list)
    groups: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "preview": self.preview,
            "tags": list(self.tags),
            "groups": list(self.groups),
        }


def note_matches(note: Note, query: str) -> bool:
    """Case-insensitive substring test over title, content, tags and groups."""
    needle = query.lower()
    return (
        needle in note.title.lower()
        or needle in note.content.lower()
        or any(needle in tag.lower() for tag in note.tags)
        or any(needle in group.lower() for group in note.groups)
    )


class SearchService:
    """Linear scan over one user's notes; no ranking, no index."""

    def __init__(self, store: Optional[UserStore] = None):
        self.store = store or UserStore()

    @traced("search_notes")
    def search(self, user_id: str, query: str) -> List[SearchResult]:
        """Return every note of ``user_id`` matching ``query``.

        Results follow list order (most recently updated first). An empty
        query matches nothing; unreadable notes are skipped.
        """
        query = (query or "").strip()
        if not query:
            return []
        results = []
        for note in self.store.iter_notes(user_id):
            if note_matches(note, query):
                results.append(
                    SearchResult(
                        name=note.title,
                        id=note.id,
                        preview=summarize(note.content),
                        tags=list(note.tags),
                        groups=list(note.groups),
                    )
                )
        logger.debug(f"Search for {query!r} in {user_id}: {len(results)} match(es)")
        return results
