import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

logger = logging.getLogger("tgfilehost.storage")

FILE_KEY_PREFIX = "f:"
MAX_LIST_LIMIT = 1000


class StorageError(RuntimeError):
    """Raised when the metadata store cannot complete an operation."""


class KeyExistsError(StorageError):
    """Raised by :meth:`KeyValueStore.put` when ``overwrite`` is disabled."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Key already exists: {key}")
        self.key = key


def file_key(file_id: str) -> str:
    return f"{FILE_KEY_PREFIX}{file_id}"


@dataclass
class ListResult:
    keys: List[str] = field(default_factory=list)
    cursor: Optional[str] = None
    list_complete: bool = True


class KeyValueStore:
    """String key/value store with prefix listing, persisted in SQLite.

    Listing is ordered by key. ``cursor`` is the last key of the previous page;
    callers that hand it to clients are expected to make it opaque.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._init_db()

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            if conn.in_transaction:
                conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                    """
                )
        except sqlite3.Error as error:
            raise StorageError(f"Cannot open metadata store: {error}") from error

    def get(self, key: str) -> Optional[str]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as error:
            raise StorageError(f"Metadata read failed: {error}") from error
        return row["value"] if row else None

    def put(self, key: str, value: str, *, overwrite: bool = True) -> None:
        statement = (
            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)"
            if overwrite
            else "INSERT INTO kv (key, value) VALUES (?, ?)"
        )
        try:
            with self._connect() as conn:
                conn.execute(statement, (key, value))
        except sqlite3.IntegrityError as error:
            raise KeyExistsError(key) from error
        except sqlite3.Error as error:
            raise StorageError(f"Metadata write failed: {error}") from error

    def delete(self, key: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as error:
            raise StorageError(f"Metadata delete failed: {error}") from error

    def list(self, prefix: str = "", limit: int = MAX_LIST_LIMIT, cursor: Optional[str] = None) -> ListResult:
        limit_value = max(1, min(int(limit), MAX_LIST_LIMIT))
        # Keys are compared with substr() so LIKE wildcards in the prefix stay literal.
        clauses = ["substr(key, 1, ?) = ?"]
        params: List[Any] = [len(prefix), prefix]
        if cursor:
            clauses.append("key > ?")
            params.append(cursor)
        query = f"SELECT key FROM kv WHERE {' AND '.join(clauses)} ORDER BY key ASC LIMIT ?"
        params.append(limit_value + 1)
        try:
            with self._connect() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
        except sqlite3.Error as error:
            raise StorageError(f"Metadata listing failed: {error}") from error

        keys = [row["key"] for row in rows[:limit_value]]
        if len(rows) > limit_value:
            return ListResult(keys=keys, cursor=keys[-1], list_complete=False)
        return ListResult(keys=keys, cursor=None, list_complete=True)


@dataclass(frozen=True)
class FileRecord:
    id: str
    external_file_ref: str
    external_file_path: str
    filename: str = "image"
    mime: str = ""
    size: int = 0
    created_at: int = 0
    source_ip: str = ""
    user_agent: str = ""

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "tg_file_id": self.external_file_ref,
                "tg_file_path": self.external_file_path,
                "filename": self.filename,
                "mime": self.mime,
                "size": self.size,
                "createdAt": self.created_at,
                "ip": self.source_ip,
                "ua": self.user_agent,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "FileRecord":
        """Parse a stored record, raising ``ValueError`` for unusable data."""

        data = json.loads(raw)
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("stored metadata is not a file record")
        try:
            size = int(data.get("size") or 0)
            created_at = int(data.get("createdAt") or 0)
        except (TypeError, ValueError) as error:
            raise ValueError(f"stored metadata has invalid numbers: {error}") from error
        return cls(
            id=str(data["id"]),
            external_file_ref=str(data.get("tg_file_id") or ""),
            external_file_path=str(data.get("tg_file_path") or ""),
            filename=str(data.get("filename") or ""),
            mime=str(data.get("mime") or ""),
            size=size,
            created_at=created_at,
            source_ip=str(data.get("ip") or ""),
            user_agent=str(data.get("ua") or ""),
        )

    def summary(self, url: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "size": self.size,
            "mime": self.mime,
            "createdAt": self.created_at,
            "url": url,
        }


def save_record(store: KeyValueStore, record: FileRecord, *, overwrite: bool = False) -> None:
    store.put(file_key(record.id), record.to_json(), overwrite=overwrite)


def get_record(store: KeyValueStore, file_id: str) -> Optional[FileRecord]:
    """Return the record for *file_id*, or ``None`` when missing or unreadable."""

    raw = store.get(file_key(file_id))
    if raw is None:
        return None
    try:
        return FileRecord.from_json(raw)
    except ValueError as error:
        logger.warning("record_unreadable file_id=%s error=%s", file_id, error)
        return None


def delete_record(store: KeyValueStore, file_id: str) -> None:
    store.delete(file_key(file_id))
