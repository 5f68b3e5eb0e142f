"""Data models for Notevault."""

import datetime
import re
import secrets
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Characters allowed in identifiers that become file or directory names
SAFE_PATH_COMPONENT_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")

DEFAULT_TITLE = "Untitled"

# 8 random bytes for notes, 16 for share tokens (hex encoded)
NOTE_ID_BYTES = 8
SHARE_TOKEN_BYTES = 16


def validate_safe_path_component(value: str, field_name: str = "value") -> str:
    """Validate that a value is safe to use as a filesystem path component.

    Prevents path traversal attacks by rejecting:
    - Path separators (/, \\)
    - Parent directory references (..)
    - Current directory references (single .)
    - Any characters outside alphanumeric, underscore, hyphen, dot

    Args:
        value: The string to validate
        field_name: Name of the field for error messages

    Returns:
        The validated value (unchanged)

    Raises:
        ValueError: If the value contains unsafe characters
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")

    if ".." in value or value == ".":
        raise ValueError(f"{field_name} cannot contain '..' (path traversal)")

    if "/" in value or "\\" in value:
        raise ValueError(f"{field_name} cannot contain path separators")

    if not SAFE_PATH_COMPONENT_PATTERN.match(value):
        raise ValueError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric characters, underscores, hyphens, and dots are allowed."
        )

    return value


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    Older documents were written by different tools; anything without an
    offset is assumed to be UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def generate_note_id() -> str:
    """Generate an unguessable note identifier (16 hex characters)."""
    return secrets.token_hex(NOTE_ID_BYTES)


def generate_share_token() -> str:
    """Generate an unguessable share token (32 hex characters)."""
    return secrets.token_hex(SHARE_TOKEN_BYTES)


def normalize_labels(value: Any) -> List[str]:
    """Coerce a tag/group field into a de-duplicated list of strings.

    Accepts None, a comma-separated string or any iterable. Order of first
    appearance is kept so documents round-trip without churn.
    """
    if value is None:
        return []
    if isinstance(value, str):
        raw = value.split(",")
    else:
        raw = list(value)
    labels: List[str] = []
    for item in raw:
        label = str(item).strip()
        if label and label not in labels:
            labels.append(label)
    return labels


class WriteMode(str, Enum):
    """How UserStore.write combines incoming metadata with what is stored."""

    REPLACE = "replace"  # Incoming metadata replaces the stored entry wholesale
    PATCH = "patch"  # Only fields explicitly set on the incoming note are merged


class NoteMetadata(BaseModel):
    """Metadata of a note as kept in the per-user index.

    Serialized with the camelCase keys used on disk; the identifier is the
    index key and never part of the stored document.
    """

    id: str = Field(default_factory=generate_note_id, description="Note identifier")
    title: str = Field(default=DEFAULT_TITLE, description="Title of the note")
    tags: List[str] = Field(default_factory=list, description="Tags")
    groups: List[str] = Field(default_factory=list, description="Groups")
    is_password_protected: bool = Field(
        default=False, alias="isPasswordProtected", description="Protection flag"
    )
    password_hash: Optional[str] = Field(
        default=None, alias="password", description="Hash, only when protected"
    )
    share_id: Optional[str] = Field(
        default=None, alias="shareId", description="Active share token"
    )
    created_at: datetime.datetime = Field(
        default_factory=utc_now, alias="createdAt", description="Creation time (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, alias="updatedAt", description="Last update (UTC)"
    )

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def _default_updated_at(cls, data: Any) -> Any:
        """Documents without updatedAt were last touched when created."""
        if isinstance(data, dict):
            has_updated = "updatedAt" in data or "updated_at" in data
            created = data.get("createdAt", data.get("created_at"))
            if not has_updated and created is not None:
                data = {**data, "updatedAt": created}
        return data

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate that the ID is safe for filesystem use."""
        return validate_safe_path_component(v, "Note ID")

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, v: Any) -> str:
        """Missing or blank titles fall back to the default."""
        if v is None or not str(v).strip():
            return DEFAULT_TITLE
        return str(v)

    @field_validator("tags", "groups", mode="before")
    @classmethod
    def validate_labels(cls, v: Any) -> List[str]:
        return normalize_labels(v)

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)

    @model_validator(mode="after")
    def _drop_hash_when_unprotected(self) -> "NoteMetadata":
        """An unprotected note never carries a password hash."""
        if not self.is_password_protected and self.password_hash is not None:
            self.password_hash = None
        return self

    @property
    def is_shared(self) -> bool:
        return self.share_id is not None

    def to_index_entry(self) -> Dict[str, Any]:
        """Serialize to the document stored under this note's id in the index."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"id", "content"},
            exclude_none=True,
        )

    @classmethod
    def from_index_entry(cls, note_id: str, entry: Dict[str, Any]) -> "NoteMetadata":
        """Build metadata from an index entry keyed by ``note_id``."""
        data = {k: v for k, v in entry.items() if k not in ("id", "content", "markdown")}
        return cls(id=note_id, **data)


class Note(NoteMetadata):
    """A note: metadata plus its markdown content."""

    content: str = Field(default="", description="Markdown content")

    @field_validator("content", mode="before")
    @classmethod
    def validate_content(cls, v: Any) -> str:
        return "" if v is None else str(v)

    def metadata(self) -> NoteMetadata:
        """Return the metadata part of this note."""
        return NoteMetadata.model_validate(self.model_dump(exclude={"content"}))

    @classmethod
    def from_parts(cls, metadata: NoteMetadata, content: str) -> "Note":
        """Combine index metadata with content loaded separately."""
        return cls(**metadata.model_dump(), content=content)


class ShareEntry(BaseModel):
    """Reverse-index record mapping a share token to a (user, note) pair."""

    user_id: str = Field(..., alias="userId")
    note_id: str = Field(..., alias="noteId")
    created_at: datetime.datetime = Field(default_factory=utc_now, alias="createdAt")

    model_config = {"populate_by_name": True, "extra": "ignore", "frozen": True}

    @field_validator("created_at", mode="after")
    @classmethod
    def validate_created_at(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Account(BaseModel):
    """A login account. The password hash is treated as an opaque string."""

    username: str = Field(..., description="Login name, also the user identifier")
    password: str = Field(..., description="Opaque credential hash")
    is_admin: bool = Field(default=False, alias="isAdmin")
    created_at: datetime.datetime = Field(default_factory=utc_now, alias="createdAt")

    model_config = {"populate_by_name": True, "extra": "allow"}

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        return validate_safe_path_component(v, "Username")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def public_view(self) -> Dict[str, Any]:
        """Account fields safe to show to an administrator."""
        return {
            "username": self.username,
            "isAdmin": self.is_admin,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class NoteSummary:
    """Lightweight list entry for a note (no content, no hash)."""

    id: str
    name: str
    tags: List[str]
    groups: List[str]
    is_password_protected: bool
    is_shared: bool
    created_at: datetime.datetime
    updated_at: datetime.datetime
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tags": list(self.tags),
            "groups": list(self.groups),
            "isPasswordProtected": self.is_password_protected,
            "isShared": self.is_shared,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "summary": self.summary,
        }


@dataclass
class SharedNote:
    """What a share link reveals: content and labels, never credentials."""

    title: str
    content: str
    tags: List[str]
    created_at: datetime.datetime
    updated_at: datetime.datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "markdown": self.content,
            "tags": list(self.tags),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class MigrationReport:
    """Outcome of migrating one user's legacy notes."""

    user_id: str
    migrated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    dry_run: bool = True
