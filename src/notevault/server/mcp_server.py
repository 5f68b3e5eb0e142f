"""MCP server exposing Notevault notes to a client on behalf of one user."""

import logging
import uuid
from typing import Optional

from mcp.server.fastmcp import FastMCP

from notevault.backup import BackupCodec, BackupManager
from notevault.config import config
from notevault.exceptions import NotevaultError, ValidationError
from notevault.models.schema import normalize_labels
from notevault.observability import metrics, timed_operation
from notevault.services.account_service import AccountService
from notevault.services.note_service import NoteService
from notevault.services.search_service import SearchService
from notevault.storage.account_repository import AccountRepository
from notevault.storage.share_registry import ShareRegistry
from notevault.storage.user_store import UserStore

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1_000_000  # 1 MB


def _validate_input_lengths(
    title: Optional[str] = None, content: Optional[str] = None
) -> None:
    """Validate input string lengths at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters",
            field="title",
        )
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters",
            field="content",
        )


def _labels(value: Optional[str]):
    """Comma-separated tool argument to a label list (None stays None)."""
    return None if value is None else normalize_labels(value)


class NotevaultMcpServer:
    """MCP server for one Notevault installation and acting user."""

    def __init__(self, user_id: Optional[str] = None):
        """Initialize the MCP server.

        Args:
            user_id: Account whose notes the tools operate on. Defaults to
                     config.default_user.
        """
        self.user_id = user_id or config.default_user
        self.mcp = FastMCP(config.server_name)

        self.store = UserStore()
        self.shares = ShareRegistry()
        self.accounts = AccountRepository()
        self.note_service = NoteService(store=self.store, shares=self.shares)
        self.search_service = SearchService(store=self.store)
        self.account_service = AccountService(accounts=self.accounts, store=self.store)
        self.backup_manager = BackupManager(
            codec=BackupCodec(
                store=self.store, accounts=self.accounts, shares=self.shares
            )
        )

        self.initialize()
        self._register_tools()

    def initialize(self) -> None:
        """Create the default admin on first start and the acting user's store."""
        self.account_service.ensure_default_admin()
        self.store.ensure(self.user_id)
        logger.info(f"Notevault MCP server initialized for user {self.user_id}")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Domain errors are shown as-is; anything else gets a generic message
        with a reference id that appears in the log next to the details.
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, NotevaultError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, OSError):
            # Never expose filesystem paths
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="nv_create_note")
        def nv_create_note(
            title: Optional[str] = None,
            content: Optional[str] = None,
            tags: Optional[str] = None,
            groups: Optional[str] = None,
        ) -> str:
            """Create a new note.
            Args:
                title: Title of the note (defaults to "Untitled")
                content: Markdown content (optional)
                tags: Comma-separated list of tags (optional)
                groups: Comma-separated list of groups (optional)
            """
            with timed_operation("nv_create_note") as op:
                try:
                    _validate_input_lengths(title=title, content=content)
                    note_id = self.note_service.create_note(self.user_id, title=title)
                    if content is not None or tags is not None or groups is not None:
                        self.note_service.save_note(
                            self.user_id,
                            note_id,
                            content=content,
                            tags=_labels(tags),
                            groups=_labels(groups),
                        )
                    op["note_id"] = note_id
                    return f"Note created successfully with ID: {note_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_import_markdown")
        def nv_import_markdown(content: str, title: Optional[str] = None) -> str:
            """Import a markdown document as a new note.
            Args:
                content: Markdown text; a YAML frontmatter block may set title, tags and groups
                title: Overrides any title found in the document
            """
            with timed_operation("nv_import_markdown") as op:
                try:
                    _validate_input_lengths(title=title, content=content)
                    note = self.note_service.import_markdown(
                        self.user_id, content, title=title
                    )
                    op["note_id"] = note.id
                    return f"Imported '{note.title}' as note {note.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_get_note")
        def nv_get_note(note_id: str) -> str:
            """Retrieve a note by ID.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("nv_get_note", note_id=note_id) as op:
                try:
                    note = self.note_service.get_note(self.user_id, note_id)
                    op["found"] = True
                    result = f"# {note.title}\n"
                    result += f"ID: {note.id}\n"
                    result += f"Created: {note.created_at.isoformat()}\n"
                    result += f"Updated: {note.updated_at.isoformat()}\n"
                    if note.tags:
                        result += f"Tags: {', '.join(note.tags)}\n"
                    if note.groups:
                        result += f"Groups: {', '.join(note.groups)}\n"
                    if note.is_password_protected:
                        result += "Password protected: yes\n"
                    if note.share_id:
                        result += f"Shared: {self.note_service.share_url(note.share_id)}\n"
                    result += f"\n{note.content}\n"
                    return result
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_save_note")
        def nv_save_note(
            note_id: str,
            title: Optional[str] = None,
            content: Optional[str] = None,
            tags: Optional[str] = None,
            groups: Optional[str] = None,
            password_protected: Optional[bool] = None,
            password: Optional[str] = None,
        ) -> str:
            """Create or update a note. Omitted fields keep their current value.
            Args:
                note_id: The ID of the note
                title: New title
                content: New markdown content (replaces the whole body)
                tags: Comma-separated tags (replaces all tags; "" clears them)
                groups: Comma-separated groups (replaces all groups; "" clears them)
                password_protected: true to protect, false to remove protection
                password: New password for a protected note
            """
            with timed_operation("nv_save_note", note_id=note_id) as op:
                try:
                    _validate_input_lengths(title=title, content=content)
                    note = self.note_service.save_note(
                        self.user_id,
                        note_id,
                        title=title,
                        content=content,
                        tags=_labels(tags),
                        groups=_labels(groups),
                        is_password_protected=password_protected,
                        password=password,
                    )
                    op["note_id"] = note.id
                    return f"Note saved: {note.id} ('{note.title}')"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_delete_note")
        def nv_delete_note(note_id: str) -> str:
            """Delete a note, its media and its share link.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("nv_delete_note", note_id=note_id) as op:
                try:
                    removed = self.note_service.delete_note(self.user_id, note_id)
                    op["removed"] = removed
                    if not removed:
                        return f"Note {note_id} did not exist"
                    return f"Note deleted: {note_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_list_notes")
        def nv_list_notes(tag: Optional[str] = None, group: Optional[str] = None) -> str:
            """List notes, most recently updated first.
            Args:
                tag: Only notes carrying this tag (optional)
                group: Only notes in this group (optional)
            """
            with timed_operation("nv_list_notes") as op:
                try:
                    notes = self.note_service.list_notes(self.user_id)
                    if tag:
                        notes = [n for n in notes if tag in n.tags]
                    if group:
                        notes = [n for n in notes if group in n.groups]
                    op["result_count"] = len(notes)
                    if not notes:
                        return "No notes found."
                    output = f"Found {len(notes)} note(s):\n\n"
                    for i, n in enumerate(notes, 1):
                        flags = []
                        if n.is_password_protected:
                            flags.append("protected")
                        if n.is_shared:
                            flags.append("shared")
                        output += f"{i}. {n.name} (ID: {n.id})"
                        output += f" [{', '.join(flags)}]\n" if flags else "\n"
                        if n.tags:
                            output += f"   Tags: {', '.join(n.tags)}\n"
                        if n.summary:
                            output += f"   {n.summary}\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_search_notes")
        def nv_search_notes(query: str) -> str:
            """Search titles, content, tags and groups (case-insensitive substring).
            Args:
                query: Text to look for
            """
            with timed_operation("nv_search_notes", query=query[:30]) as op:
                try:
                    results = self.search_service.search(self.user_id, query)
                    op["result_count"] = len(results)
                    if not results:
                        return f"No notes match '{query}'."
                    output = f"Found {len(results)} matching note(s):\n\n"
                    for i, r in enumerate(results, 1):
                        output += f"{i}. {r.name} (ID: {r.id})\n"
                        if r.tags:
                            output += f"   Tags: {', '.join(r.tags)}\n"
                        if r.preview:
                            output += f"   {r.preview}\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_list_labels")
        def nv_list_labels() -> str:
            """List every tag and group in use."""
            with timed_operation("nv_list_labels"):
                try:
                    tags = self.note_service.list_tags(self.user_id)
                    groups = self.note_service.list_groups(self.user_id)
                    return (
                        f"Tags: {', '.join(tags) if tags else '(none)'}\n"
                        f"Groups: {', '.join(groups) if groups else '(none)'}"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_share_note")
        def nv_share_note(note_id: str) -> str:
            """Create (or return the existing) public share link for a note.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("nv_share_note", note_id=note_id):
                try:
                    token = self.note_service.create_share(self.user_id, note_id)
                    return f"Share link: {self.note_service.share_url(token)}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_revoke_share")
        def nv_revoke_share(note_id: str) -> str:
            """Revoke a note's share link.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("nv_revoke_share", note_id=note_id):
                try:
                    if self.note_service.revoke_share(self.user_id, note_id):
                        return f"Share link revoked for note {note_id}"
                    return f"Note {note_id} was not shared"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_read_shared")
        def nv_read_shared(token: str, password: Optional[str] = None) -> str:
            """Read a note through its share token.
            Args:
                token: Share token from a share link
                password: Password, when the note is protected
            """
            with timed_operation("nv_read_shared"):
                try:
                    shared = self.note_service.resolve_share(token, password=password)
                    result = f"# {shared.title}\n"
                    if shared.tags:
                        result += f"Tags: {', '.join(shared.tags)}\n"
                    result += f"\n{shared.content}\n"
                    return result
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_export_markdown")
        def nv_export_markdown() -> str:
            """Export every note as markdown with frontmatter."""
            with timed_operation("nv_export_markdown") as op:
                try:
                    files = self.note_service.export_markdown(self.user_id)
                    op["result_count"] = len(files)
                    if not files:
                        return "No notes to export."
                    return "\n".join(
                        f"===== {name} =====\n{markdown}" for name, markdown in files
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_backup")
        def nv_backup(
            action: str = "list",
            label: Optional[str] = None,
            snapshot: Optional[str] = None,
        ) -> str:
            """Manage whole-installation backups (media files are not included).
            Args:
                action: "create", "list" or "restore"
                label: Optional label for a new snapshot
                snapshot: Snapshot file name to restore (from "list")
            """
            with timed_operation("nv_backup", action=action):
                try:
                    if action == "create":
                        path = self.backup_manager.write_snapshot(label=label)
                        return f"Backup created: {path.name}"
                    if action == "list":
                        snapshots = self.backup_manager.list_snapshots()
                        if not snapshots:
                            return "No backups found."
                        return "\n".join(
                            f"{s['name']} ({s['size_bytes']} bytes, {s['created_at']})"
                            for s in snapshots
                        )
                    if action == "restore":
                        if not snapshot:
                            raise ValidationError("snapshot is required", field="snapshot")
                        names = {
                            s["name"]: s["path"]
                            for s in self.backup_manager.list_snapshots()
                        }
                        if snapshot not in names:
                            raise ValidationError(
                                f"Unknown snapshot: {snapshot}", field="snapshot"
                            )
                        result = self.backup_manager.restore_snapshot(names[snapshot])
                        return (
                            f"Restored {snapshot}: {result.accounts_imported} account(s), "
                            f"{result.users_imported} user(s), "
                            f"{result.notes_imported} note(s) added"
                        )
                    raise ValidationError(f"Unknown action: {action}", field="action")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_repair_index")
        def nv_repair_index() -> str:
            """Rebuild the note index from content files if it is damaged."""
            with timed_operation("nv_repair_index"):
                try:
                    quarantined, adopted = self.store.repair_index(self.user_id)
                    output = ""
                    if quarantined:
                        output += f"Damaged index moved aside as {quarantined.name}\n"
                    output += f"Adopted {len(adopted)} unindexed note(s)"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nv_status")
        def nv_status() -> str:
            """Show note counts and operation metrics."""
            with timed_operation("nv_status"):
                try:
                    notes = self.store.list_notes(self.user_id)
                    summary = metrics.get_summary()
                    output = "## Notevault Status\n\n"
                    output += f"User: {self.user_id}\n"
                    output += f"Notes: {len(notes)}\n"
                    output += f"Shared: {sum(1 for n in notes if n.is_shared)}\n"
                    output += f"Users registered: {len(self.store.registry.list_all())}\n"
                    output += f"Backups: {len(self.backup_manager.list_snapshots())}\n"
                    output += (
                        f"Operations: {summary['total_operations']} "
                        f"({summary['total_errors']} errors)\n"
                    )
                    return output
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
