"""Stored file metadata and the local file-system storage backend."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

import anyio

from .database import Database, _parse_datetime, _serialize_datetime
from .models import StoredFile, utcnow

logger = logging.getLogger("payserver.storage")


@dataclass(frozen=True)
class FilesQuery:
    """Filter for :meth:`StoredFileRepository.get_files`. Empty means no filter."""

    ids: Sequence[str] = field(default_factory=tuple)
    user_ids: Sequence[str] = field(default_factory=tuple)


class StoredFileRepository:
    """Reads and writes rows of the ``stored_files`` table."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def get_files(self, query: Optional[FilesQuery] = None) -> List[StoredFile]:
        query = query or FilesQuery()
        clauses: List[str] = []
        values: List[object] = []
        if query.ids:
            clauses.append(f"id IN ({', '.join('?' for _ in query.ids)})")
            values.extend(query.ids)
        if query.user_ids:
            clauses.append(f"user_id IN ({', '.join('?' for _ in query.user_ids)})")
            values.extend(query.user_ids)

        sql = "SELECT * FROM stored_files"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created"

        with self._database.connection() as conn:
            rows = conn.execute(sql, values).fetchall()
        return [self._row_to_file(row) for row in rows]

    def get_file(self, file_id: str) -> Optional[StoredFile]:
        files = self.get_files(FilesQuery(ids=(file_id,)))
        return files[0] if files else None

    def add_file(self, user_id: str, file_name: str, storage_file_name: str) -> StoredFile:
        stored = StoredFile(
            id=uuid.uuid4().hex,
            user_id=user_id,
            file_name=file_name,
            storage_file_name=storage_file_name,
            created=utcnow(),
        )
        with self._database.connection() as conn, conn:
            conn.execute(
                """
                INSERT INTO stored_files (id, user_id, file_name, storage_file_name, created)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    stored.id,
                    stored.user_id,
                    stored.file_name,
                    stored.storage_file_name,
                    _serialize_datetime(stored.created),
                ),
            )
        return stored

    def remove_file(self, file_id: str) -> bool:
        with self._database.connection() as conn, conn:
            cursor = conn.execute("DELETE FROM stored_files WHERE id = ?", (file_id,))
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_file(row) -> StoredFile:
        return StoredFile(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            file_name=str(row["file_name"]),
            storage_file_name=str(row["storage_file_name"]),
            created=_parse_datetime(str(row["created"])),
        )


class FileService:
    """Stores uploaded blobs under ``storage_dir`` and tracks them in the database."""

    def __init__(self, repository: StoredFileRepository, storage_dir: Path) -> None:
        self._repository = repository
        self._storage_dir = storage_dir

    @property
    def storage_dir(self) -> Path:
        return self._storage_dir

    def path_for(self, stored: StoredFile) -> Path:
        return self._storage_dir / stored.storage_file_name

    def add_file(self, user_id: str, file_name: str, data: bytes) -> StoredFile:
        cleaned_name = Path(file_name).name.strip()
        if not cleaned_name:
            raise ValueError("File name must not be empty")

        storage_file_name = f"{uuid.uuid4().hex}-{cleaned_name}"
        self._storage_dir.mkdir(parents=True, exist_ok=True)
        (self._storage_dir / storage_file_name).write_bytes(data)
        return self._repository.add_file(user_id, cleaned_name, storage_file_name)

    async def remove_file(self, file_id: str, owner_id: str) -> None:
        """Delete a stored file and its blob. Unknown or foreign files are ignored."""

        stored = self._repository.get_file(file_id)
        if stored is None or stored.user_id != owner_id:
            return

        path = self.path_for(stored)
        await anyio.to_thread.run_sync(lambda: path.unlink(missing_ok=True))
        self._repository.remove_file(stored.id)
        logger.info("Removed file %s owned by user %s", stored.id, owner_id)


__all__ = ["FileService", "FilesQuery", "StoredFileRepository"]
