"""SQLite-based project persistence using aiosqlite.

This module provides the ProjectStore class for persisting projects,
messages and fragments to a SQLite database.

Reads log database errors and return ``None`` or an empty list. Writes log
and re-raise: the workflow must know whether the assistant message for a
run was actually stored.

Tables:
    projects: Project metadata and the framework chosen by the first run.
    messages: User and assistant messages per project.
    fragments: One generated artifact per assistant result message.

Usage:
    >>> from models.database import ProjectStore
    >>> store = ProjectStore("./data/codegen.db")
    >>> await store.init()
    >>> project = await store.create_project("Todo App")
"""

import json
import time
import uuid
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from agents.frameworks import Framework
from models.schemas import (
    Fragment,
    Message,
    MessageRole,
    MessageStatus,
    MessageType,
    Project,
)

logger = structlog.get_logger(__name__)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _row_to_fragment(row: aiosqlite.Row) -> Fragment:
    data = dict(row)
    data["files"] = json.loads(data.get("files") or "{}")
    data["metadata"] = json.loads(data.get("metadata") or "{}")
    return Fragment(**data)


class ProjectStore:
    """Async SQLite store for projects, messages and fragments.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the project store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS projects (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        framework TEXT,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS messages (
                        id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        content TEXT NOT NULL,
                        role TEXT NOT NULL,
                        type TEXT NOT NULL,
                        status TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        FOREIGN KEY (project_id) REFERENCES projects(id)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS fragments (
                        id TEXT PRIMARY KEY,
                        message_id TEXT NOT NULL UNIQUE,
                        sandbox_id TEXT,
                        sandbox_url TEXT,
                        title TEXT NOT NULL,
                        files TEXT NOT NULL,
                        framework TEXT NOT NULL,
                        metadata TEXT NOT NULL DEFAULT '{}',
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL,
                        FOREIGN KEY (message_id) REFERENCES messages(id)
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_messages_project_created
                    ON messages(project_id, created_at)
                """)
                await db.commit()
            logger.info("project_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "project_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Projects
    # -----------------------------------------------------------------

    async def create_project(
        self, name: str, framework: Framework | None = None
    ) -> Project:
        """Insert a new project.

        Args:
            name: Display name.
            framework: Optional framework fixed up front.

        Returns:
            The stored Project.
        """
        now = time.time()
        project = Project(
            id=_new_id("proj"),
            name=name,
            framework=framework,
            created_at=now,
            updated_at=now,
        )
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO projects (id, name, framework, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        project.id,
                        project.name,
                        framework.value if framework else None,
                        now,
                        now,
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error("project_create_failed", error=str(e))
            raise
        logger.debug("project_created", project_id=project.id)
        return project

    async def get_project(self, project_id: str) -> Project | None:
        """Retrieve a project by id, or None if missing."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM projects WHERE id = ?",
                    (project_id,),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                return Project(**dict(row))
        except Exception as e:
            logger.error("project_get_failed", project_id=project_id, error=str(e))
            return None

    async def update_project_framework(self, project_id: str, framework: Framework) -> None:
        """Store the framework chosen by a project's first run."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "UPDATE projects SET framework = ?, updated_at = ? WHERE id = ?",
                    (framework.value, time.time(), project_id),
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "project_framework_update_failed",
                project_id=project_id,
                error=str(e),
            )
            raise
        logger.debug("project_framework_updated", project_id=project_id, framework=framework.value)

    # -----------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------

    async def create_message(
        self,
        project_id: str,
        content: str,
        role: MessageRole,
        type: MessageType,
        status: MessageStatus = MessageStatus.COMPLETE,
    ) -> Message:
        """Insert a message.

        Returns:
            The stored Message.
        """
        message = Message(
            id=_new_id("msg"),
            project_id=project_id,
            content=content,
            role=role,
            type=type,
            status=status,
            created_at=time.time(),
        )
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO messages
                        (id, project_id, content, role, type, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        project_id,
                        content,
                        role.value,
                        type.value,
                        status.value,
                        message.created_at,
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error("message_create_failed", project_id=project_id, error=str(e))
            raise
        logger.debug(
            "message_created",
            message_id=message.id,
            project_id=project_id,
            role=role.value,
            type=type.value,
        )
        return message

    async def list_messages(
        self,
        project_id: str,
        limit: int | None = None,
        include_fragments: bool = True,
    ) -> list[Message]:
        """List project messages, oldest first.

        Args:
            project_id: The project to list.
            limit: When set, only the most recent ``limit`` messages.
            include_fragments: Attach each message's fragment.

        Returns:
            Messages in chronological order.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                if limit is None:
                    cursor = await db.execute(
                        "SELECT * FROM messages WHERE project_id = ? ORDER BY created_at ASC",
                        (project_id,),
                    )
                    rows = list(await cursor.fetchall())
                else:
                    cursor = await db.execute(
                        """
                        SELECT * FROM messages WHERE project_id = ?
                        ORDER BY created_at DESC LIMIT ?
                        """,
                        (project_id, limit),
                    )
                    rows = list(reversed(await cursor.fetchall()))

                messages = [Message(**dict(row)) for row in rows]
                if include_fragments and messages:
                    placeholders = ",".join("?" for _ in messages)
                    cursor = await db.execute(
                        f"SELECT * FROM fragments WHERE message_id IN ({placeholders})",
                        [message.id for message in messages],
                    )
                    fragments = {
                        fragment.message_id: fragment
                        for fragment in map(_row_to_fragment, await cursor.fetchall())
                    }
                    for message in messages:
                        message.fragment = fragments.get(message.id)
                return messages
        except Exception as e:
            logger.error("message_list_failed", project_id=project_id, error=str(e))
            return []

    # -----------------------------------------------------------------
    # Fragments
    # -----------------------------------------------------------------

    async def create_or_update_fragment(
        self,
        message_id: str,
        sandbox_id: str | None,
        sandbox_url: str | None,
        title: str,
        files: dict[str, str],
        framework: Framework,
        metadata: dict[str, Any] | None = None,
    ) -> Fragment:
        """Insert the fragment for ``message_id`` or replace its contents.

        Returns:
            The stored Fragment.
        """
        now = time.time()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT id, created_at FROM fragments WHERE message_id = ?",
                    (message_id,),
                )
                existing = await cursor.fetchone()
                fragment_id = existing["id"] if existing else _new_id("frag")
                created_at = existing["created_at"] if existing else now

                await db.execute(
                    """
                    INSERT OR REPLACE INTO fragments
                        (id, message_id, sandbox_id, sandbox_url, title, files,
                         framework, metadata, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        fragment_id,
                        message_id,
                        sandbox_id,
                        sandbox_url,
                        title,
                        json.dumps(files),
                        framework.value,
                        json.dumps(metadata or {}),
                        created_at,
                        now,
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error("fragment_save_failed", message_id=message_id, error=str(e))
            raise

        logger.debug("fragment_saved", fragment_id=fragment_id, files=len(files))
        return Fragment(
            id=fragment_id,
            message_id=message_id,
            sandbox_id=sandbox_id,
            sandbox_url=sandbox_url,
            title=title,
            files=files,
            framework=framework,
            metadata=metadata or {},
            created_at=created_at,
            updated_at=now,
        )

    async def get_fragment(self, fragment_id: str) -> Fragment | None:
        """Retrieve a fragment by id, or None if missing."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM fragments WHERE id = ?",
                    (fragment_id,),
                )
                row = await cursor.fetchone()
                return _row_to_fragment(row) if row else None
        except Exception as e:
            logger.error("fragment_get_failed", fragment_id=fragment_id, error=str(e))
            return None

    async def get_project_id_for_fragment(self, fragment_id: str) -> str | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    SELECT m.project_id FROM fragments f
                    JOIN messages m ON m.id = f.message_id
                    WHERE f.id = ?
                    """,
                    (fragment_id,),
                )
                row = await cursor.fetchone()
                return row[0] if row else None
        except Exception as e:
            logger.error("fragment_project_lookup_failed", fragment_id=fragment_id, error=str(e))
            return None

    async def _update_fragment_columns(self, fragment_id: str, **columns: Any) -> None:
        assignments = ", ".join(f"{name} = ?" for name in columns)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    f"UPDATE fragments SET {assignments}, updated_at = ? WHERE id = ?",
                    (*columns.values(), time.time(), fragment_id),
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "fragment_update_failed",
                fragment_id=fragment_id,
                columns=list(columns),
                error=str(e),
            )
            raise

    async def update_fragment_files(
        self,
        fragment_id: str,
        files: dict[str, str],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Replace a fragment's files, and its metadata when given."""
        if metadata is None:
            await self._update_fragment_columns(fragment_id, files=json.dumps(files))
        else:
            await self._update_fragment_columns(
                fragment_id, files=json.dumps(files), metadata=json.dumps(metadata)
            )

    async def update_fragment_metadata(self, fragment_id: str, metadata: dict[str, Any]) -> None:
        await self._update_fragment_columns(fragment_id, metadata=json.dumps(metadata))

    async def update_fragment_url(
        self, fragment_id: str, sandbox_id: str, sandbox_url: str
    ) -> None:
        """Point a fragment at a (resumed) sandbox."""
        await self._update_fragment_columns(
            fragment_id, sandbox_id=sandbox_id, sandbox_url=sandbox_url
        )
