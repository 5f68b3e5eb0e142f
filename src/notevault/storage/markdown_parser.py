"""Markdown import/export with optional YAML frontmatter.

Imported files may carry ``title``, ``tags`` and ``groups`` in a frontmatter
block; the block is stripped before the content is stored. Exported files
carry the same keys so an export can be imported again.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import frontmatter
import yaml

from notevault.models.schema import DEFAULT_TITLE, Note, normalize_labels
from notevault.storage.user_store import title_from_markdown

logger = logging.getLogger(__name__)


@dataclass
class ParsedMarkdown:
    """Fields recovered from an imported markdown document."""

    title: str
    content: str
    tags: List[str] = field(default_factory=list)
    groups: List[str] = field(default_factory=list)


class MarkdownParser:
    """Parses imported markdown and renders notes for export."""

    def parse(self, text: str, title: Optional[str] = None) -> ParsedMarkdown:
        """Split frontmatter from body and work out the title.

        Title precedence: explicit ``title`` argument, frontmatter ``title``,
        the first level-one heading, then "Untitled". A frontmatter block
        that is not valid YAML is kept as part of the content.
        """
        try:
            post = frontmatter.loads(text)
            metadata: Dict[str, Any] = dict(post.metadata)
            body = post.content
        except yaml.YAMLError as e:
            logger.warning(f"Ignoring unparseable frontmatter in imported markdown: {e}")
            metadata, body = {}, text

        resolved_title = (
            (title or "").strip()
            or str(metadata.get("title") or "").strip()
            or title_from_markdown(body)
            or DEFAULT_TITLE
        )
        return ParsedMarkdown(
            title=resolved_title,
            content=body,
            tags=normalize_labels(metadata.get("tags")),
            groups=normalize_labels(metadata.get("groups")),
        )

    def render(self, note: Note) -> str:
        """Render a note as markdown with a frontmatter header."""
        metadata: Dict[str, Any] = {"title": note.title}
        if note.tags:
            metadata["tags"] = list(note.tags)
        if note.groups:
            metadata["groups"] = list(note.groups)
        metadata["created"] = note.created_at.isoformat()
        metadata["updated"] = note.updated_at.isoformat()
        post = frontmatter.Post(note.content, **metadata)
        return frontmatter.dumps(post) + "\n"
